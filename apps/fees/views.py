# fees/views.py

from django.contrib.auth.decorators import login_required
from django.http import JsonResponse
from django.views.decorators.http import require_http_methods
import logging

from academics.models import Section
from academics.utils import get_tenant, get_object_for_branch
from fees.exports import payment_history_response
from fees.forms import (
    FeeHeadForm, FeeTermForm, FeeTermReorderForm, FeeTermMoveForm,
    SectionFeesForm, CopySectionFeesForm, ManualCollectionForm, CollectionUpdateForm,
)
from fees.ledger import (
    StudentLedgerService, payment_history, serialize_fee_detail, serialize_collection,
)
from fees.models import FeeHead, FeeTerm, FeeCollection
from fees.services import FeeHeadService, FeeTermService, ClasswiseFeeService, FeeCollectionService
from students.models import Student
from utils.exceptions import form_errors, ValidationError
from utils.utils import parse_json_body, parse_filters, paginate_queryset, money_str

logger = logging.getLogger(__name__)


def _bound_form(form_class, data):
    form = form_class(data)
    if not form.is_valid():
        raise form_errors(form)
    return form.cleaned_data


def _get_section(pk, branch, session):
    section = Section.objects.select_related('school_class').filter(pk=pk).first()
    if section is None or not section.belongs_to(branch, session):
        raise ValidationError("Section not found or does not belong to this branch and session")
    return section


def serialize_fee_head(fee_head):
    return {
        'id': str(fee_head.pk),
        'name': fee_head.name,
        'description': fee_head.description,
        'student_type': fee_head.student_type,
        'is_system_defined': fee_head.is_system_defined,
        'is_active': fee_head.is_active,
    }


def serialize_fee_term(fee_term):
    return {
        'id': str(fee_term.pk),
        'name': fee_term.name,
        'description': fee_term.description,
        'start_date': fee_term.start_date,
        'end_date': fee_term.end_date,
        'due_date': fee_term.due_date,
        'order': fee_term.order,
        'is_active': fee_term.is_active,
        'fee_head_ids': [str(link.fee_head_id) for link in fee_term.head_links.all()],
    }


# =============================================================================
# FEE HEADS
# =============================================================================

@login_required
@require_http_methods(["GET"])
def fee_head_list(request):
    branch, session = get_tenant(request)
    fee_heads = FeeHead.objects.for_tenant(branch, session).order_by('name')
    if request.GET.get('active') == 'true':
        fee_heads = fee_heads.active()
    return JsonResponse({'success': True, 'fee_heads': [serialize_fee_head(h) for h in fee_heads]})


@login_required
@require_http_methods(["POST"])
def fee_head_create(request):
    data = parse_json_body(request)
    branch, session = get_tenant(request, data)
    data.setdefault('is_active', True)
    cleaned = _bound_form(FeeHeadForm, data)
    fee_head = FeeHeadService.create_fee_head(branch, session, cleaned)
    return JsonResponse({'success': True, 'fee_head': serialize_fee_head(fee_head)}, status=201)


@login_required
@require_http_methods(["POST"])
def fee_head_edit(request, pk):
    data = parse_json_body(request)
    fee_head = get_object_for_branch(request, FeeHead.objects, pk, data)
    current = serialize_fee_head(fee_head)
    cleaned = _bound_form(FeeHeadForm, dict(current, **data))
    fee_head = FeeHeadService.update_fee_head(fee_head, {k: v for k, v in cleaned.items() if k in data})
    return JsonResponse({'success': True, 'fee_head': serialize_fee_head(fee_head)})


@login_required
@require_http_methods(["POST"])
def fee_head_delete(request, pk):
    fee_head = get_object_for_branch(request, FeeHead.objects, pk, parse_json_body(request))
    FeeHeadService.delete_fee_head(fee_head)
    return JsonResponse({'success': True})


# =============================================================================
# FEE TERMS
# =============================================================================

@login_required
@require_http_methods(["GET"])
def fee_term_list(request):
    branch, session = get_tenant(request)
    fee_terms = FeeTerm.objects.for_tenant(branch, session).prefetch_related('head_links').order_by('order', 'start_date')
    return JsonResponse({'success': True, 'fee_terms': [serialize_fee_term(t) for t in fee_terms]})


@login_required
@require_http_methods(["POST"])
def fee_term_create(request):
    data = parse_json_body(request)
    branch, session = get_tenant(request, data)
    cleaned = _bound_form(FeeTermForm, data)
    fee_term = FeeTermService.create_fee_term(branch, session, cleaned)
    return JsonResponse({'success': True, 'fee_term': serialize_fee_term(fee_term)}, status=201)


@login_required
@require_http_methods(["POST"])
def fee_term_edit(request, pk):
    data = parse_json_body(request)
    fee_term = get_object_for_branch(request, FeeTerm.objects, pk, data)
    current = serialize_fee_term(fee_term)
    cleaned = _bound_form(FeeTermForm, dict(current, **data))
    fee_term = FeeTermService.update_fee_term(fee_term, {k: v for k, v in cleaned.items() if k in data})
    return JsonResponse({'success': True, 'fee_term': serialize_fee_term(fee_term)})


@login_required
@require_http_methods(["POST"])
def fee_term_delete(request, pk):
    fee_term = get_object_for_branch(request, FeeTerm.objects, pk, parse_json_body(request))
    FeeTermService.delete_fee_term(fee_term)
    return JsonResponse({'success': True})


@login_required
@require_http_methods(["POST"])
def fee_term_reorder(request):
    data = parse_json_body(request)
    branch, session = get_tenant(request, data)
    cleaned = _bound_form(FeeTermReorderForm, data)
    terms = FeeTermService.reorder_fee_terms(branch, session, cleaned['fee_term_ids'])
    return JsonResponse({'success': True, 'fee_term_ids': [str(t.pk) for t in terms]})


@login_required
@require_http_methods(["POST"])
def fee_term_move(request, pk):
    data = parse_json_body(request)
    fee_term = get_object_for_branch(request, FeeTerm.objects, pk, data)
    cleaned = _bound_form(FeeTermMoveForm, data)
    terms = FeeTermService.move_fee_term(fee_term, cleaned['direction'])
    return JsonResponse({'success': True, 'fee_term_ids': [str(t.pk) for t in terms]})


# =============================================================================
# CLASSWISE FEES
# =============================================================================

@login_required
@require_http_methods(["GET"])
def section_fees(request, section_pk):
    branch, session = get_tenant(request)
    section = _get_section(section_pk, branch, session)
    fee_term = None
    if request.GET.get('fee_term_id'):
        fee_term = FeeTerm.objects.get_for_tenant(request.GET['fee_term_id'], branch, session, label="Fee term")
    slab = ClasswiseFeeService.get_section_fees(section, fee_term)
    return JsonResponse({
        'success': True,
        'fees': [
            {
                'id': str(fee.pk),
                'fee_term_id': str(fee.fee_term_id),
                'fee_term_name': fee.fee_term.name,
                'fee_head_id': str(fee.fee_head_id),
                'fee_head_name': fee.fee_head.name,
                'amount': money_str(fee.amount),
            }
            for fee in slab
        ],
    })


@login_required
@require_http_methods(["POST"])
def section_fees_set(request):
    data = parse_json_body(request)
    branch, session = get_tenant(request, data)
    cleaned = _bound_form(SectionFeesForm, data)
    section = _get_section(cleaned['section_id'], branch, session)
    fee_term = FeeTerm.objects.get_for_tenant(cleaned['fee_term_id'], branch, session, label="Fee term")
    slab = ClasswiseFeeService.set_section_fees(section, fee_term, cleaned['fees'])
    return JsonResponse({'success': True, 'count': len(slab)})


@login_required
@require_http_methods(["POST"])
def section_fees_copy(request):
    data = parse_json_body(request)
    branch, session = get_tenant(request, data)
    cleaned = _bound_form(CopySectionFeesForm, data)
    from_section = _get_section(cleaned['from_section_id'], branch, session)
    to_section = _get_section(cleaned['to_section_id'], branch, session)
    fee_term = FeeTerm.objects.get_for_tenant(cleaned['fee_term_id'], branch, session, label="Fee term")
    slab = ClasswiseFeeService.copy_section_fees(from_section, to_section, fee_term)
    return JsonResponse({'success': True, 'count': len(slab)})


# =============================================================================
# STUDENT LEDGER
# =============================================================================

@login_required
@require_http_methods(["GET"])
def student_fee_details(request, student_pk):
    branch, session = get_tenant(request)
    student = Student.objects.get_for_tenant(student_pk, branch, None, label="Student")
    fee_term = None
    if request.GET.get('fee_term_id'):
        fee_term = FeeTerm.objects.get_for_tenant(request.GET['fee_term_id'], branch, session, label="Fee term")
    details = StudentLedgerService.get_student_fee_details(student, fee_term)
    summary = StudentLedgerService.summarize(details)
    return JsonResponse({
        'success': True,
        'fee_details': [serialize_fee_detail(row) for row in details],
        'summary': {key: money_str(value) for key, value in summary.items()},
    })


@login_required
@require_http_methods(["GET"])
def outstanding_fees(request):
    branch, session = get_tenant(request)
    section = fee_term = None
    if request.GET.get('section_id'):
        section = _get_section(request.GET['section_id'], branch, session)
    if request.GET.get('fee_term_id'):
        fee_term = FeeTerm.objects.get_for_tenant(request.GET['fee_term_id'], branch, session, label="Fee term")
    results = StudentLedgerService.get_outstanding_fees(branch, session, section=section, fee_term=fee_term)
    return JsonResponse({
        'success': True,
        'students': [
            {
                'student_id': str(entry['student'].pk),
                'student_name': entry['student'].get_full_name(),
                'admission_number': entry['student'].admission_number,
                'outstanding_amount': money_str(entry['summary']['outstanding_amount']),
                'has_overdue': entry['has_overdue'],
                'lines': [serialize_fee_detail(row) for row in entry['lines']],
            }
            for entry in results
        ],
    })


# =============================================================================
# COLLECTIONS
# =============================================================================

@login_required
@require_http_methods(["POST"])
def collection_create(request):
    data = parse_json_body(request)
    branch, session = get_tenant(request, data)
    cleaned = _bound_form(ManualCollectionForm, data)
    student = Student.objects.get_for_tenant(cleaned['student_id'], branch, None, label="Student")
    fee_term = FeeTerm.objects.get_for_tenant(cleaned['fee_term_id'], branch, session, label="Fee term")
    collection = FeeCollectionService.record_manual_collection(
        student=student,
        fee_term=fee_term,
        payment_mode=cleaned['payment_mode'],
        items=cleaned['items'],
        payment_date=cleaned['payment_date'],
        transaction_reference=cleaned['transaction_reference'],
        notes=cleaned['notes'],
    )
    return JsonResponse({'success': True, 'collection': serialize_collection(collection)}, status=201)


@login_required
@require_http_methods(["POST"])
def collection_bulk_create(request):
    data = parse_json_body(request)
    branch, session = get_tenant(request, data)
    entries = data.get('collections')
    if not isinstance(entries, list):
        raise ValidationError("collections must be a list")

    prepared = []
    for index, entry in enumerate(entries):
        form = ManualCollectionForm(entry if isinstance(entry, dict) else {})
        if not form.is_valid():
            error = form_errors(form)
            raise ValidationError(f"Entry {index + 1}: {error.message}", details=error.details)
        cleaned = form.cleaned_data
        prepared.append({
            'student': Student.objects.get_for_tenant(cleaned['student_id'], branch, None, label="Student"),
            'fee_term': FeeTerm.objects.get_for_tenant(cleaned['fee_term_id'], branch, session, label="Fee term"),
            'payment_mode': cleaned['payment_mode'],
            'items': cleaned['items'],
            'payment_date': cleaned['payment_date'],
            'transaction_reference': cleaned['transaction_reference'],
            'notes': cleaned['notes'],
        })

    collections = FeeCollectionService.record_bulk_collections(prepared)
    return JsonResponse({
        'success': True,
        'receipt_numbers': [c.receipt_number for c in collections],
    }, status=201)


@login_required
@require_http_methods(["POST"])
def collection_edit(request, pk):
    data = parse_json_body(request)
    collection = get_object_for_branch(request, FeeCollection.objects, pk, data)
    cleaned = _bound_form(CollectionUpdateForm, data)
    collection = FeeCollectionService.update_collection(
        collection, {k: v for k, v in cleaned.items() if k in data}
    )
    return JsonResponse({'success': True, 'collection': serialize_collection(collection)})


@login_required
@require_http_methods(["POST"])
def collection_delete(request, pk):
    collection = get_object_for_branch(request, FeeCollection.objects, pk, parse_json_body(request))
    FeeCollectionService.delete_collection(collection)
    return JsonResponse({'success': True})


HISTORY_FILTERS = ['student', 'fee_term', 'gateway', 'payment_mode', 'status', 'date_from', 'date_to', 'search']


@login_required
@require_http_methods(["GET"])
def collection_history(request):
    branch, session = get_tenant(request)
    filters = parse_filters(request, HISTORY_FILTERS)
    collections = payment_history(branch, session, filters)
    page_obj, paginator = paginate_queryset(request, collections, per_page=25)
    return JsonResponse({
        'success': True,
        'collections': [serialize_collection(c) for c in page_obj],
        'pagination': {
            'current_page': page_obj.number,
            'total_pages': paginator.num_pages,
            'total_count': paginator.count,
            'has_next': page_obj.has_next(),
            'has_previous': page_obj.has_previous(),
        },
    })


@login_required
@require_http_methods(["GET"])
def collection_history_export(request):
    branch, session = get_tenant(request)
    filters = parse_filters(request, HISTORY_FILTERS)
    collections = payment_history(branch, session, filters)
    return payment_history_response(collections, filters=dict(filters, branch=branch.name, session=session.name))
