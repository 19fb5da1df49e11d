# payments/views.py

from django.contrib.auth.decorators import login_required
from django.db.models import Q
from django.http import JsonResponse
from django.shortcuts import get_object_or_404
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_http_methods
import logging

from academics.utils import get_tenant, get_branch, get_object_for_branch
from fees.ledger import serialize_fee_detail
from fees.models import FeeTerm
from payments.forms import (
    PaymentRequestForm, CancelPaymentRequestForm, VerifyCheckoutForm,
    PaymentLinkForm, ResolveExceptionForm,
)
from payments.models import PaymentRequest, PaymentLink, ReconciliationException
from payments.reconciliation import ReconciliationService, serialize_exception
from payments.services import (
    PaymentRequestService, PaymentLinkService, advance_transaction_on_webhook,
    transaction_monitor, serialize_transaction,
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
# PAYMENT REQUESTS
# =============================================================================

@login_required
@require_http_methods(["POST"])
def payment_request_create(request):
    data = parse_json_body(request)
    branch, session = get_tenant(request, data)
    cleaned = _bound_form(PaymentRequestForm, data)

    student = Student.objects.get_for_tenant(cleaned['student_id'], branch, None, label="Student")
    fee_term = FeeTerm.objects.get_for_tenant(cleaned['fee_term_id'], branch, session, label="Fee term")

    result = PaymentRequestService.create_payment_request(
        student=student,
        branch=branch,
        session=session,
        fee_term=fee_term,
        fees=cleaned['fees'],
        buyer_name=cleaned['buyer_name'],
        buyer_phone=cleaned['buyer_phone'],
        buyer_email=cleaned['buyer_email'],
        purpose=cleaned['purpose'],
        description=cleaned['description'],
        expiry_hours=cleaned['expiry_hours'],
        currency=cleaned['currency'] or None,
        gateway=cleaned['gateway'] or None,
    )
    return JsonResponse({'success': True, **result}, status=201)


@login_required
@require_http_methods(["GET"])
def payment_request_detail(request, pk):
    payment_request = get_object_for_branch(request, PaymentRequest.objects, pk)
    return JsonResponse({'success': True, 'payment_request': PaymentRequestService.check_payment_status(payment_request)})


@login_required
@require_http_methods(["POST"])
def payment_request_cancel(request, pk):
    data = parse_json_body(request)
    payment_request = get_object_for_branch(request, PaymentRequest.objects, pk, data)
    cleaned = _bound_form(CancelPaymentRequestForm, data)
    payment_request = PaymentRequestService.cancel_payment_request(payment_request, reason=cleaned['reason'])
    return JsonResponse({'success': True, 'status': payment_request.status})


@login_required
@require_http_methods(["POST"])
def verify_checkout(request):
    cleaned = _bound_form(VerifyCheckoutForm, parse_json_body(request))
    result = PaymentRequestService.verify_checkout_payment(
        cleaned['order_id'], cleaned['payment_id'], cleaned['signature'], gateway=cleaned['gateway'] or None
    )
    return JsonResponse({'success': True, **result})


# =============================================================================
# WEBHOOKS
# =============================================================================

@csrf_exempt
@require_http_methods(["POST"])
def gateway_webhook(request, gateway):
    """
    Gateway callback endpoint. Unauthenticated: trust comes from the
    signature check inside WebhookProcessor.
    """
    outcome = advance_transaction_on_webhook(gateway, request.body, request.headers)
    return JsonResponse({'success': True, **outcome})


# =============================================================================
# PAYMENT LINKS
# =============================================================================

@login_required
@require_http_methods(["POST"])
def payment_link_create(request):
    data = parse_json_body(request)
    branch, session = get_tenant(request, data)
    cleaned = _bound_form(PaymentLinkForm, data)
    student = Student.objects.get_for_tenant(cleaned['student_id'], branch, None, label="Student")
    link = PaymentLinkService.create_payment_link(student, branch, session, expiry_days=cleaned['expiry_days'])
    return JsonResponse({
        'success': True,
        'id': str(link.pk),
        'token': link.token,
        'url': request.build_absolute_uri(link.get_absolute_url()),
        'expires_at': link.expires_at,
    }, status=201)


@require_http_methods(["GET"])
def payment_link_detail(request, token):
    """Public: lists whatever the student owes right now."""
    link, unpaid = PaymentLinkService.open_payment_link(token)
    student = link.student
    return JsonResponse({
        'success': True,
        'student': {
            'id': str(student.pk),
            'name': student.get_full_name(),
            'admission_number': student.admission_number,
        },
        'branch': link.branch.name,
        'expires_at': link.expires_at,
        'fee_terms': [
            {
                'fee_term_id': term['fee_term_id'],
                'fee_term_name': term['fee_term_name'],
                'due_date': term['due_date'],
                'outstanding_amount': money_str(term['outstanding_amount']),
                'lines': [serialize_fee_detail(row) for row in term['lines']],
            }
            for term in unpaid
        ],
    })


@login_required
@require_http_methods(["POST"])
def payment_link_deactivate(request, pk):
    link = get_object_for_branch(request, PaymentLink.objects, pk, parse_json_body(request))
    PaymentLinkService.deactivate_payment_link(link)
    return JsonResponse({'success': True})


# =============================================================================
# MONITOR & RECONCILIATION
# =============================================================================

@login_required
@require_http_methods(["GET"])
def transaction_monitor_view(request):
    branch, session = get_tenant(request)
    filters = parse_filters(request, ['gateway', 'status', 'date_from', 'date_to', 'search'])
    transactions, totals = transaction_monitor(branch, session, filters)
    page_obj, paginator = paginate_queryset(request, transactions, per_page=25)
    return JsonResponse({
        'success': True,
        'transactions': [serialize_transaction(txn) for txn in page_obj],
        'stats': dict(totals, success_amount=money_str(totals['success_amount'])),
        'pagination': {
            'current_page': page_obj.number,
            'total_pages': paginator.num_pages,
            'total_count': paginator.count,
        },
    })


@login_required
@require_http_methods(["GET"])
def reconciliation_exception_list(request):
    filters = parse_filters(request, ['status', 'kind', 'gateway'])
    status = (filters['status'] or 'OPEN').upper()
    exceptions = ReconciliationService.list_exceptions(
        status=None if status == 'ALL' else status, kind=filters['kind'], gateway=filters['gateway']
    )
    page_obj, paginator = paginate_queryset(request, exceptions, per_page=25)
    return JsonResponse({
        'success': True,
        'exceptions': [serialize_exception(e) for e in page_obj],
        'total_count': paginator.count,
    })


@login_required
@require_http_methods(["POST"])
def reconciliation_scan(request):
    branch, session = get_tenant(request, parse_json_body(request))
    opened = ReconciliationService.scan(branch=branch, session=session)
    return JsonResponse({'success': True, 'opened': opened})


@login_required
@require_http_methods(["POST"])
def reconciliation_exception_resolve(request, pk):
    data = parse_json_body(request)
    branch = get_branch(request, data)
    # orphan payments have no transaction and so no branch
    exception = get_object_or_404(
        ReconciliationException.objects.filter(
            Q(gateway_transaction__isnull=True) | Q(gateway_transaction__payment_request__branch=branch)
        ),
        pk=pk,
    )
    cleaned = _bound_form(ResolveExceptionForm, data)
    exception, collection = ReconciliationService.resolve_exception(
        exception,
        resolved_by=request.user.pk,
        note=cleaned['note'],
        create_collection=cleaned['create_collection'],
    )
    return JsonResponse({
        'success': True,
        'exception': serialize_exception(exception),
        'receipt_number': collection.receipt_number if collection else None,
    })
