# concessions/views.py

from django.contrib.auth.decorators import login_required
from django.http import JsonResponse
from django.views.decorators.http import require_http_methods
import logging

from academics.utils import get_tenant, get_object_for_branch
from concessions.forms import (
    ConcessionTypeForm, AssignConcessionForm, ApproveConcessionForm, ReasonForm, ApprovalSettingsForm,
)
from concessions.models import ConcessionType, StudentConcession
from concessions.services import (
    ConcessionTypeService, ConcessionService, ApprovalSettingsService, Approver,
)
from students.models import Student
from utils.exceptions import form_errors
from utils.utils import parse_json_body, parse_filters, paginate_queryset, money_str

logger = logging.getLogger(__name__)


def _bound_form(form_class, data):
    form = form_class(data)
    if not form.is_valid():
        raise form_errors(form)
    return form.cleaned_data


# =============================================================================
# SERIALIZERS
# =============================================================================

def serialize_concession_type(concession_type):
    return {
        'id': str(concession_type.pk),
        'name': concession_type.name,
        'description': concession_type.description,
        'type': concession_type.type,
        'value': money_str(concession_type.value),
        'max_value': money_str(concession_type.max_value),
        'fee_term_amounts': concession_type.fee_term_amounts or {},
        'applied_fee_heads': [str(pk) for pk in concession_type.applied_fee_heads.values_list('pk', flat=True)],
        'applied_fee_terms': [str(pk) for pk in concession_type.applied_fee_terms.values_list('pk', flat=True)],
        'applicable_student_types': concession_type.applicable_student_types or [],
        'eligibility_criteria': concession_type.eligibility_criteria,
        'required_documents': concession_type.required_documents or [],
        'auto_approval': concession_type.auto_approval,
        'is_active': concession_type.is_active,
    }


def serialize_concession(concession):
    student = concession.student
    return {
        'id': str(concession.pk),
        'student_id': str(student.pk),
        'student_name': student.get_full_name(),
        'admission_number': student.admission_number,
        'concession_type_id': str(concession.concession_type_id),
        'concession_type_name': concession.concession_type.name,
        'type': concession.concession_type.type,
        'value': money_str(concession.effective_value),
        'custom_value': money_str(concession.custom_value),
        'status': concession.status,
        'approval_level': concession.approval_level,
        'reason': concession.reason,
        'notes': concession.notes,
        'valid_from': concession.valid_from,
        'valid_until': concession.valid_until,
        'approved_by': concession.approved_by,
        'approved_at': concession.approved_at,
        'rejection_reason': concession.rejection_reason,
        'suspension_reason': concession.suspension_reason,
    }


def serialize_history(entry):
    return {
        'action': entry.action,
        'old_status': entry.old_status,
        'new_status': entry.new_status,
        'old_value': entry.old_value,
        'new_value': entry.new_value,
        'reason': entry.reason,
        'performed_by': entry.performed_by,
        'performed_at': entry.performed_at,
    }


def serialize_approval_settings(instance):
    data = {'is_configured': instance.is_configured}
    for field in ApprovalSettingsService.FIELDS:
        value = getattr(instance, field)
        data[field] = money_str(value) if field in ApprovalSettingsService.DECIMAL_FIELDS else value
    return data


# =============================================================================
# CONCESSION TYPES
# =============================================================================

@login_required
@require_http_methods(["GET"])
def concession_type_list(request):
    branch, session = get_tenant(request)
    concession_types = ConcessionType.objects.for_tenant(branch, session).prefetch_related(
        'applied_fee_heads', 'applied_fee_terms'
    )
    if request.GET.get('active') == 'true':
        concession_types = concession_types.filter(is_active=True)
    return JsonResponse({
        'success': True,
        'concession_types': [serialize_concession_type(t) for t in concession_types],
    })


@login_required
@require_http_methods(["POST"])
def concession_type_create(request):
    data = parse_json_body(request)
    branch, session = get_tenant(request, data)
    data.setdefault('is_active', True)
    cleaned = _bound_form(ConcessionTypeForm, data)
    concession_type = ConcessionTypeService.create_concession_type(
        branch, session, {k: v for k, v in cleaned.items() if k in data}
    )
    return JsonResponse({'success': True, 'concession_type': serialize_concession_type(concession_type)}, status=201)


@login_required
@require_http_methods(["POST"])
def concession_type_edit(request, pk):
    data = parse_json_body(request)
    concession_type = get_object_for_branch(request, ConcessionType.objects, pk, data)
    current = serialize_concession_type(concession_type)
    cleaned = _bound_form(ConcessionTypeForm, dict(current, **data))
    concession_type = ConcessionTypeService.update_concession_type(
        concession_type, {k: v for k, v in cleaned.items() if k in data}
    )
    return JsonResponse({'success': True, 'concession_type': serialize_concession_type(concession_type)})


@login_required
@require_http_methods(["POST"])
def concession_type_delete(request, pk):
    concession_type = get_object_for_branch(request, ConcessionType.objects, pk, parse_json_body(request))
    ConcessionTypeService.delete_concession_type(concession_type)
    return JsonResponse({'success': True})


# =============================================================================
# STUDENT CONCESSIONS
# =============================================================================

@login_required
@require_http_methods(["GET"])
def student_concession_list(request):
    branch, session = get_tenant(request)
    filters = parse_filters(request, ['status', 'student_id', 'concession_type_id'])

    concessions = StudentConcession.objects.for_tenant(branch, session).select_related(
        'student', 'concession_type'
    ).order_by('-created_at')
    if filters['status']:
        concessions = concessions.filter(status=filters['status'].upper())
    if filters['student_id']:
        concessions = concessions.filter(student_id=filters['student_id'])
    if filters['concession_type_id']:
        concessions = concessions.filter(concession_type_id=filters['concession_type_id'])

    page_obj, paginator = paginate_queryset(request, concessions, per_page=25)
    return JsonResponse({
        'success': True,
        'concessions': [serialize_concession(c) for c in page_obj],
        'pagination': {
            'current_page': page_obj.number,
            'total_pages': paginator.num_pages,
            'total_count': paginator.count,
        },
    })


@login_required
@require_http_methods(["POST"])
def concession_assign(request):
    data = parse_json_body(request)
    branch, session = get_tenant(request, data)
    cleaned = _bound_form(AssignConcessionForm, data)

    student = Student.objects.get_for_tenant(cleaned['student_id'], branch, None, label="Student")
    concession_type = ConcessionType.objects.get_for_tenant(
        cleaned['concession_type_id'], branch, session, label="Concession type"
    )
    concession = ConcessionService.assign_concession(
        student,
        concession_type,
        branch,
        session,
        custom_value=cleaned['custom_value'],
        reason=cleaned['reason'],
        notes=cleaned['notes'],
        valid_from=cleaned['valid_from'],
        valid_until=cleaned['valid_until'],
        performed_by=str(request.user.pk),
    )
    return JsonResponse({'success': True, 'concession': serialize_concession(concession)}, status=201)


@login_required
@require_http_methods(["POST"])
def concession_approve(request, pk):
    data = parse_json_body(request)
    concession = get_object_for_branch(request, StudentConcession.objects, pk, data)
    cleaned = _bound_form(ApproveConcessionForm, data)
    concession = ConcessionService.approve_concession(
        concession, Approver.from_user(request.user), notes=cleaned['notes']
    )
    return JsonResponse({'success': True, 'concession': serialize_concession(concession)})


@login_required
@require_http_methods(["POST"])
def concession_reject(request, pk):
    data = parse_json_body(request)
    concession = get_object_for_branch(request, StudentConcession.objects, pk, data)
    cleaned = _bound_form(ReasonForm, data)
    concession = ConcessionService.reject_concession(concession, cleaned['reason'], performed_by=str(request.user.pk))
    return JsonResponse({'success': True, 'concession': serialize_concession(concession)})


@login_required
@require_http_methods(["POST"])
def concession_suspend(request, pk):
    data = parse_json_body(request)
    concession = get_object_for_branch(request, StudentConcession.objects, pk, data)
    cleaned = _bound_form(ReasonForm, data)
    concession = ConcessionService.suspend_concession(concession, cleaned['reason'], performed_by=str(request.user.pk))
    return JsonResponse({'success': True, 'concession': serialize_concession(concession)})


@login_required
@require_http_methods(["GET"])
def concession_history(request, pk):
    concession = get_object_for_branch(
        request, StudentConcession.objects.select_related('student', 'concession_type'), pk
    )
    history = ConcessionService.get_concession_history(concession)
    return JsonResponse({
        'success': True,
        'concession': serialize_concession(concession),
        'history': [serialize_history(entry) for entry in history],
    })


# =============================================================================
# APPROVAL SETTINGS
# =============================================================================

@login_required
@require_http_methods(["GET", "POST"])
def approval_settings(request):
    if request.method == "GET":
        branch, session = get_tenant(request)
        instance = ApprovalSettingsService.get_approval_settings(branch, session)
        return JsonResponse({'success': True, 'settings': serialize_approval_settings(instance)})

    data = parse_json_body(request)
    branch, session = get_tenant(request, data)
    cleaned = _bound_form(ApprovalSettingsForm, data)
    instance = ApprovalSettingsService.save_approval_settings(
        branch, session, {k: v for k, v in cleaned.items() if k in data}
    )
    return JsonResponse({'success': True, 'settings': serialize_approval_settings(instance)})
