# payments/services.py

"""
Online Payment Operations

- PaymentRequestService: create / cancel / verify / status / expiry sweep
- WebhookProcessor: turns a verified gateway callback into a state change
  and, on capture, the one FeeCollection for that transaction
- PaymentLinkService: token links that list a student's unpaid terms
- transaction_monitor: listing and totals for the gateway monitor

State machine for PaymentRequest and PaymentGatewayTransaction:

    PENDING -> INITIATED -> SUCCESS | FAILED | CANCELLED | EXPIRED

PENDING rows exist only between the local insert and the gateway reply.
Rows that reach a terminal status are never written again.
"""

import json
from datetime import timedelta
from decimal import Decimal

import pycountry
from django.conf import settings
from django.db import transaction
from django.db.models import Q, F, Count, Sum
from django.http import QueryDict
from django.urls import reverse
from django.utils import timezone
import logging

from fees.ledger import StudentLedgerService
from fees.models import FeeCollection
from fees.utils import resolve_fee_heads, validate_student_for_tenant, validate_fee_term_for_tenant
from payments.gateways import get_gateway
from payments.gateways.events import PaymentCaptured
from payments.models import (
    PaymentRequest, PaymentGatewayTransaction, PaymentWebhookLog, PaymentLink,
    PENDING, INITIATED, SUCCESS, FAILED, CANCELLED, EXPIRED,
    OPEN_STATUSES, TERMINAL_STATUSES,
)
from payments.reconciliation import ReconciliationService
from utils.exceptions import (
    ScholarpayError, ValidationError, ConflictError, NotFoundError,
    PreconditionError, ExternalServiceError,
)
from utils.log import get_payment_logger
from utils.utils import to_decimal, quantize_money, money_str

logger = logging.getLogger(__name__)

MIN_EXPIRY_HOURS = 1
MAX_EXPIRY_HOURS = 72
REDACTED_HEADERS = ('authorization', 'cookie', 'proxy-authorization')


def validate_currency(code):
    """ISO 4217 alpha-3 code, upper-cased."""
    code = (code or '').strip().upper()
    if len(code) != 3 or pycountry.currencies.get(alpha_3=code) is None:
        raise ValidationError(f"Unknown currency code: {code or 'empty'}")
    return code


# =============================================================================
# PAYMENT REQUEST SERVICE
# =============================================================================

class PaymentRequestService:

    @staticmethod
    def _build_fee_lines(student, fee_term, fees, branch, session):
        """
        Snapshot the requested lines with the catalog amount and concession
        the student currently has on each. Returns (lines, total).
        """
        if not fees:
            raise ValidationError("At least one fee is required")

        head_ids = [str(fee.get('fee_head_id') or '') for fee in fees]
        if '' in head_ids:
            raise ValidationError("Each fee needs a fee_head_id")
        if len(set(head_ids)) != len(head_ids):
            raise ValidationError("Each fee head can only appear once in a payment request")
        heads = resolve_fee_heads(head_ids, branch, session)

        breakdown = StudentLedgerService.line_breakdowns(student, fee_term)
        lines = []
        total = Decimal('0.00')
        for fee in fees:
            head_id = str(fee['fee_head_id'])
            amount = quantize_money(to_decimal(fee.get('amount'), 'amount'))
            if amount <= 0:
                raise ValidationError("Each fee amount must be greater than zero")
            line = breakdown.get((head_id, str(fee_term.pk)))
            lines.append({
                'fee_head_id': head_id,
                'fee_head_name': heads[head_id].name,
                'amount': money_str(amount),
                'original_amount': money_str(line.original_amount if line else amount),
                'concession_amount': money_str(line.concession_amount if line else 0),
            })
            total += amount

        if total <= 0:
            raise ValidationError("Total amount must be greater than zero")
        return lines, total

    @staticmethod
    def _order_metadata(payment_request, txn, gateway):
        student = payment_request.student
        return_url = settings.APP_BASE_URL.rstrip('/') + reverse('payments:gateway_webhook', args=[gateway.name])
        return {
            'currency': payment_request.currency,
            'purpose': payment_request.purpose,
            'merchant_name': payment_request.branch.name,
            'buyer_name': payment_request.buyer_name,
            'buyer_email': payment_request.buyer_email,
            'buyer_phone': payment_request.buyer_phone,
            'payment_request_id': str(payment_request.pk),
            'student_id': str(student.pk),
            'success_url': return_url,
            'failure_url': return_url,
            'notes': {
                'payment_request_id': str(payment_request.pk),
                'transaction_id': str(txn.pk),
                'student_id': str(student.pk),
                'admission_number': student.admission_number,
                'fee_term_id': str(payment_request.fee_term_id),
                'branch_code': payment_request.branch.code,
            },
        }

    @staticmethod
    @transaction.atomic
    def _mark_failed(payment_request, txn, reason):
        request = PaymentRequest.objects.select_for_update().get(pk=payment_request.pk)
        locked_txn = PaymentGatewayTransaction.objects.select_for_update().get(pk=txn.pk)
        if locked_txn.status in OPEN_STATUSES:
            locked_txn.status = FAILED
            locked_txn.failure_reason = reason
            locked_txn.save(update_fields=['status', 'failure_reason'])
        if request.status in OPEN_STATUSES:
            request.status = FAILED
            request.failure_reason = reason
            request.save(update_fields=['status', 'failure_reason'])
        return request, locked_txn

    @staticmethod
    def create_payment_request(student, branch, session, fee_term, fees, buyer_name, buyer_phone,
                               buyer_email='', purpose='', description='', expiry_hours=None,
                               currency=None, gateway=None):
        """
        Create a payment request and its gateway order.

        Everything is validated before the first write. The PENDING pair is
        committed before the gateway is called so a failed call leaves an
        auditable FAILED pair behind rather than nothing.

        Returns {'payment_request_id', 'transaction_id', 'checkout_payload',
        'expires_at', 'gateway'}.
        """
        if session.branch_id != branch.pk:
            raise ValidationError("Academic session does not belong to this branch")
        validate_student_for_tenant(student, branch, session)
        validate_fee_term_for_tenant(fee_term, branch, session)
        if not fee_term.is_active:
            raise ValidationError("Fee term is not active")

        if expiry_hours is None:
            expiry_hours = settings.PAYMENT_DEFAULT_EXPIRY_HOURS
        try:
            expiry_hours = int(expiry_hours)
        except (TypeError, ValueError):
            raise ValidationError("expiry_hours must be a whole number")
        if not MIN_EXPIRY_HOURS <= expiry_hours <= MAX_EXPIRY_HOURS:
            raise ValidationError(f"expiry_hours must be between {MIN_EXPIRY_HOURS} and {MAX_EXPIRY_HOURS}")

        buyer_name = (buyer_name or '').strip()
        buyer_phone = (buyer_phone or '').strip()
        if not buyer_name:
            raise ValidationError("Buyer name is required")
        if len(buyer_phone) < 10:
            raise ValidationError("Buyer phone must have at least 10 digits")

        currency = validate_currency(currency or settings.PAYMENT_DEFAULT_CURRENCY)
        lines, total = PaymentRequestService._build_fee_lines(student, fee_term, fees, branch, session)

        if gateway is None or isinstance(gateway, str):
            gateway = get_gateway(gateway)
        if not gateway.is_configured():
            raise PreconditionError(f"{gateway.display_name} payment gateway is not configured")

        expires_at = timezone.now() + timedelta(hours=expiry_hours)
        with transaction.atomic():
            payment_request = PaymentRequest.objects.create(
                branch=branch,
                session=session,
                student=student,
                fee_term=fee_term,
                buyer_name=buyer_name,
                buyer_email=buyer_email or '',
                buyer_phone=buyer_phone,
                purpose=purpose or f"{fee_term.name} fees",
                description=description or '',
                amount=total,
                currency=currency,
                fees=lines,
                gateway=gateway.name,
                status=PENDING,
                expires_at=expires_at,
            )
            txn = PaymentGatewayTransaction.objects.create(
                payment_request=payment_request,
                gateway=gateway.name,
                gateway_transaction_id=gateway.generate_receipt_id(),
                amount=total,
                currency=currency,
                status=PENDING,
                expires_at=expires_at,
            )

        plog = get_payment_logger(logger, payment_request=payment_request, transaction=txn, gateway=gateway.name)
        plog.info(f"Created payment request for {total} {currency} ({len(lines)} line(s))")

        try:
            order = gateway.create_order(total, txn.gateway_transaction_id,
                                         PaymentRequestService._order_metadata(payment_request, txn, gateway))
        except ScholarpayError as e:
            plog.error(f"Gateway order creation failed: {e.message}")
            PaymentRequestService._mark_failed(payment_request, txn, e.message)
            if isinstance(e, ExternalServiceError):
                raise
            raise ExternalServiceError(e.message, details=e.details)
        except Exception as e:
            plog.exception("Unexpected error creating gateway order")
            PaymentRequestService._mark_failed(payment_request, txn, str(e) or e.__class__.__name__)
            raise ExternalServiceError("Payment gateway error, please try again")

        checkout = dict(order.checkout)
        checkout.update({
            'gateway': gateway.name,
            'payment_request_id': str(payment_request.pk),
            'transaction_reference': txn.gateway_transaction_id,
        })

        with transaction.atomic():
            payment_request = PaymentRequest.objects.select_for_update().get(pk=payment_request.pk)
            txn = PaymentGatewayTransaction.objects.select_for_update().get(pk=txn.pk)
            payment_request.status = INITIATED
            payment_request.gateway_order_id = order.id
            payment_request.checkout_payload = checkout
            payment_request.save(update_fields=['status', 'gateway_order_id', 'checkout_payload'])
            txn.status = INITIATED
            txn.gateway_order_id = order.id
            txn.gateway_response = order.raw
            txn.save(update_fields=['status', 'gateway_order_id', 'gateway_response'])

        plog.info(f"Gateway order {order.id} initiated")
        return {
            'payment_request_id': str(payment_request.pk),
            'transaction_id': str(txn.pk),
            'checkout_payload': checkout,
            'expires_at': expires_at,
            'gateway': gateway.name,
        }

    @staticmethod
    @transaction.atomic
    def cancel_payment_request(payment_request, reason=''):
        """
        Cancel a PENDING or INITIATED request and every open transaction
        under it in one transaction.
        """
        payment_request = PaymentRequest.objects.select_for_update().get(pk=payment_request.pk)
        status = payment_request.effective_status
        if status not in OPEN_STATUSES:
            raise ConflictError(f"Cannot cancel a payment request that is {status.lower()}")

        now = timezone.now()
        transactions = list(
            PaymentGatewayTransaction.objects.select_for_update().filter(
                payment_request=payment_request, status__in=OPEN_STATUSES
            )
        )
        for txn in transactions:
            txn.status = CANCELLED
            txn.failure_reason = reason or 'Cancelled'
            txn.save(update_fields=['status', 'failure_reason'])

        payment_request.status = CANCELLED
        payment_request.cancelled_at = now
        payment_request.cancel_reason = (reason or '')[:255]
        payment_request.save(update_fields=['status', 'cancelled_at', 'cancel_reason'])

        get_payment_logger(logger, payment_request=payment_request).info(
            f"Cancelled payment request and {len(transactions)} transaction(s)"
        )
        return payment_request

    @staticmethod
    def verify_checkout_payment(order_id, payment_id, signature, gateway=None):
        """
        Check the signature the checkout hands back to the browser. Nothing
        changes here: only the webhook moves money.
        """
        if not (order_id and payment_id and signature):
            raise ValidationError("order_id, payment_id and signature are required")
        if gateway is None or isinstance(gateway, str):
            gateway = get_gateway(gateway)

        txn = PaymentGatewayTransaction.objects.filter(
            gateway=gateway.name, gateway_order_id=order_id
        ).select_related('payment_request').first()
        if txn is None:
            raise NotFoundError("No payment found for this order")

        plog = get_payment_logger(logger, transaction=txn, gateway=gateway.name)
        if not gateway.verify_signature(order_id, payment_id, signature):
            plog.warning(f"Checkout signature did not verify for payment {payment_id}")
            raise ExternalServiceError("Payment signature verification failed")

        plog.info(f"Checkout signature verified for payment {payment_id}")
        return {
            'verified': True,
            'payment_request_id': str(txn.payment_request_id),
            'status': txn.payment_request.effective_status,
        }

    @staticmethod
    def check_payment_status(payment_request):
        payment_request = PaymentRequest.objects.select_related('student', 'fee_term').get(pk=payment_request.pk)
        transactions = list(payment_request.transactions.order_by('created_at'))
        collection = FeeCollection.objects.filter(
            gateway_transaction__payment_request=payment_request
        ).first()
        data = serialize_payment_request(payment_request)
        data['transactions'] = [serialize_transaction(txn) for txn in transactions]
        data['receipt_number'] = collection.receipt_number if collection else None
        data['fee_collection_id'] = str(collection.pk) if collection else None
        return data

    @staticmethod
    def expire_stale_requests(now=None):
        """
        Persist EXPIRED on open requests and transactions past expires_at.
        Readers already see them as expired; this makes storage agree.
        Returns (requests_expired, transactions_expired).
        """
        now = now or timezone.now()
        stale_ids = list(
            PaymentRequest.objects.filter(status__in=OPEN_STATUSES, expires_at__lte=now).values_list('pk', flat=True)
        )
        expired_requests = 0
        expired_transactions = 0

        for pk in stale_ids:
            with transaction.atomic():
                payment_request = PaymentRequest.objects.select_for_update().get(pk=pk)
                if payment_request.status not in OPEN_STATUSES or payment_request.expires_at > now:
                    continue
                transactions = list(
                    PaymentGatewayTransaction.objects.select_for_update().filter(
                        payment_request=payment_request, status__in=OPEN_STATUSES
                    )
                )
                for txn in transactions:
                    txn.status = EXPIRED
                    txn.save(update_fields=['status'])
                payment_request.status = EXPIRED
                payment_request.save(update_fields=['status'])
                expired_requests += 1
                expired_transactions += len(transactions)

        # transactions whose own expiry passed under a still-open request
        for pk in PaymentGatewayTransaction.objects.filter(
            status__in=OPEN_STATUSES, expires_at__lte=now
        ).values_list('pk', flat=True):
            with transaction.atomic():
                txn = PaymentGatewayTransaction.objects.select_for_update().get(pk=pk)
                if txn.status in OPEN_STATUSES:
                    txn.status = EXPIRED
                    txn.save(update_fields=['status'])
                    expired_transactions += 1

        if expired_requests or expired_transactions:
            logger.info(f"Expired {expired_requests} payment request(s) and {expired_transactions} transaction(s)")
        return expired_requests, expired_transactions


# =============================================================================
# WEBHOOK PROCESSING
# =============================================================================

class WebhookProcessor:
    """
    Applies gateway callbacks. Every delivery is logged before anything
    else; the state change itself runs under a row lock on the
    transaction so concurrent deliveries serialise.
    """

    def __init__(self, gateway):
        self.gateway = gateway

    @classmethod
    def for_gateway(cls, name):
        return cls(get_gateway(name))

    @staticmethod
    def _decode_payload(raw_body):
        try:
            text = raw_body.decode('utf-8') if isinstance(raw_body, bytes) else raw_body
        except UnicodeDecodeError:
            return {'undecodable': True}
        try:
            data = json.loads(text)
            return data if isinstance(data, dict) else {'body': data}
        except ValueError:
            return QueryDict(text).dict()

    @staticmethod
    def _safe_headers(headers):
        return {
            str(key): str(value) for key, value in (headers or {}).items()
            if str(key).lower() not in REDACTED_HEADERS
        }

    def process(self, raw_body, headers):
        """
        Verify, parse and apply one delivery. Returns a dict describing the
        outcome. Raises ExternalServiceError on a bad signature and
        WebhookPayloadError on an unrecognised body.
        """
        log = PaymentWebhookLog.objects.create(
            gateway=self.gateway.name,
            headers=self._safe_headers(headers),
            payload=self._decode_payload(raw_body),
        )
        plog = get_payment_logger(logger, gateway=self.gateway.name)

        try:
            log.signature_valid = self.gateway.verify_webhook(raw_body, headers)
            if not log.signature_valid:
                plog.warning(f"Rejected webhook {log.pk}: signature did not verify")
                raise ExternalServiceError("Webhook signature verification failed")

            event = self.gateway.parse_webhook(raw_body, headers)
            log.event = event.event_name
            outcome = self.apply(event, log)
        except ScholarpayError as e:
            log.processing_error = e.message
            log.save(update_fields=['signature_valid', 'event', 'processing_error', 'transaction'])
            raise
        except Exception as e:
            log.processing_error = str(e) or e.__class__.__name__
            log.save(update_fields=['signature_valid', 'event', 'processing_error', 'transaction'])
            raise

        log.processed = True
        log.save(update_fields=['signature_valid', 'event', 'processed', 'transaction'])
        outcome['webhook_log_id'] = str(log.pk)
        return outcome

    def _lock_transaction(self, event):
        lookup = Q()
        if event.order_id:
            lookup |= Q(gateway_order_id=event.order_id) | Q(gateway_transaction_id=event.order_id)
        if event.transaction_ref:
            lookup |= Q(gateway_transaction_id=event.transaction_ref)
        if not lookup:
            return None
        return PaymentGatewayTransaction.objects.select_for_update().filter(
            lookup, gateway=self.gateway.name
        ).order_by('-created_at').first()

    @transaction.atomic
    def apply(self, event, log=None):
        txn = self._lock_transaction(event)
        if log is not None and txn is not None:
            log.transaction = txn

        if not event.changes_state:
            get_payment_logger(logger, transaction=txn, gateway=self.gateway.name).info(
                f"Informational event {event.event_name}, no state change"
            )
            return {'action': 'ignored', 'event': event.kind}

        if txn is None:
            if isinstance(event, PaymentCaptured):
                reference = event.payment_id or event.order_id
                ReconciliationService.open_exception(
                    'ORPHAN_PAYMENT', self.gateway.name,
                    reference=reference,
                    detail=f"Captured payment {event.payment_id or '-'} for unknown order {event.order_id or '-'}",
                    received_amount=event.amount,
                )
                return {'action': 'orphan', 'event': event.kind}
            logger.warning(f"{self.gateway.display_name} {event.event_name} for unknown order {event.order_id}")
            return {'action': 'ignored', 'event': event.kind}

        plog = get_payment_logger(logger, transaction=txn, gateway=self.gateway.name)
        if isinstance(event, PaymentCaptured):
            return self._apply_capture(txn, event, plog)
        return self._apply_failure(txn, event, plog)

    def _apply_capture(self, txn, event, plog):
        if txn.status == SUCCESS:
            collection = FeeCollection.objects.filter(gateway_transaction=txn).first()
            plog.info("Duplicate capture delivery, nothing to do")
            return {
                'action': 'duplicate',
                'event': event.kind,
                'receipt_number': collection.receipt_number if collection else None,
            }

        if txn.status in TERMINAL_STATUSES:
            ReconciliationService.open_exception(
                'LATE_PAYMENT', txn.gateway,
                gateway_transaction=txn,
                detail=f"Payment {event.payment_id or '-'} captured after the transaction was {txn.status}",
                expected_amount=txn.amount,
                received_amount=event.amount,
            )
            plog.warning(f"Capture arrived for a {txn.status} transaction")
            return {'action': 'late_payment', 'event': event.kind}

        now = timezone.now()
        payment_request = PaymentRequest.objects.select_for_update().get(pk=txn.payment_request_id)
        received = quantize_money(event.amount) if event.amount is not None else txn.amount
        currency = (event.currency or txn.currency).upper()
        matches = received == txn.amount and currency == txn.currency

        txn.status = SUCCESS
        txn.paid_at = now
        txn.gateway_payment_id = event.payment_id or txn.gateway_payment_id
        txn.webhook_data = event.raw
        txn.save(update_fields=['status', 'paid_at', 'gateway_payment_id', 'webhook_data'])

        if payment_request.status != SUCCESS:
            payment_request.status = SUCCESS
            payment_request.completed_at = now
            payment_request.failure_reason = ''
            payment_request.save(update_fields=['status', 'completed_at', 'failure_reason'])

        if not matches:
            ReconciliationService.open_exception(
                'AMOUNT_MISMATCH', txn.gateway,
                gateway_transaction=txn,
                detail=f"Gateway settled {received} {currency}, requested {txn.amount} {txn.currency}",
                expected_amount=txn.amount,
                received_amount=received,
            )
            plog.warning(f"Captured {received} {currency} against {txn.amount} {txn.currency}; collection held")
            return {'action': 'amount_mismatch', 'event': event.kind}

        from fees.services import FeeCollectionService
        try:
            with transaction.atomic():
                collection = FeeCollectionService.record_gateway_collection(txn)
        except Exception as e:
            # the money moved, so the SUCCESS transition stands
            reason = getattr(e, 'message', None) or str(e) or e.__class__.__name__
            ReconciliationService.open_exception(
                'MISSING_COLLECTION', txn.gateway,
                gateway_transaction=txn,
                detail=f"Collection could not be written: {reason}",
                expected_amount=txn.amount,
                received_amount=received,
            )
            plog.exception(f"Payment captured but collection failed: {reason}")
            return {'action': 'collection_failed', 'event': event.kind, 'error': reason}

        plog.info(f"Payment captured, collection {collection.receipt_number}")
        return {
            'action': 'captured',
            'event': event.kind,
            'receipt_number': collection.receipt_number,
            'fee_collection_id': str(collection.pk),
        }

    def _apply_failure(self, txn, event, plog):
        if txn.status in TERMINAL_STATUSES:
            plog.info(f"Failure event for a {txn.status} transaction ignored")
            return {'action': 'ignored', 'event': event.kind}

        txn.status = FAILED
        txn.failure_reason = event.failure_reason
        txn.webhook_data = event.raw
        txn.gateway_payment_id = event.payment_id or txn.gateway_payment_id
        txn.save(update_fields=['status', 'failure_reason', 'webhook_data', 'gateway_payment_id'])

        payment_request = PaymentRequest.objects.select_for_update().get(pk=txn.payment_request_id)
        if payment_request.status in OPEN_STATUSES:
            payment_request.status = FAILED
            payment_request.failure_reason = event.failure_reason
            payment_request.save(update_fields=['status', 'failure_reason'])

        plog.info(f"Payment failed: {event.failure_reason}")
        return {'action': 'failed', 'event': event.kind, 'failure_reason': event.failure_reason}


def advance_transaction_on_webhook(gateway, raw_body, headers):
    """Entry point for gateway callbacks: `gateway` is the provider name from the URL."""
    return WebhookProcessor.for_gateway(gateway).process(raw_body, headers)


# =============================================================================
# PAYMENT LINKS
# =============================================================================

class PaymentLinkService:

    @staticmethod
    def create_payment_link(student, branch, session, expiry_days=None):
        validate_student_for_tenant(student, branch, session)
        days = settings.PAYMENT_LINK_EXPIRY_DAYS if expiry_days is None else expiry_days
        try:
            days = int(days)
        except (TypeError, ValueError):
            raise ValidationError("expiry_days must be a whole number")
        if not 1 <= days <= 90:
            raise ValidationError("expiry_days must be between 1 and 90")

        link = PaymentLink.objects.create(
            student=student,
            branch=branch,
            session=session,
            expires_at=timezone.now() + timedelta(days=days),
        )
        logger.info(f"Created payment link {link.pk} for student {student.admission_number}")
        return link

    @staticmethod
    def open_payment_link(token, today=None):
        """
        Resolve a token to the student's currently unpaid terms. The list is
        worked out now, not when the link was made.
        """
        link = PaymentLink.objects.select_related('student', 'branch', 'session').filter(token=token).first()
        if link is None:
            raise NotFoundError("Payment link not found")
        if not link.is_valid:
            raise ConflictError("This payment link has expired")

        PaymentLink.objects.filter(pk=link.pk).update(
            access_count=F('access_count') + 1,
            last_accessed_at=timezone.now(),
        )
        unpaid = StudentLedgerService.get_unpaid_fee_terms(link.student, today=today)
        return link, unpaid

    @staticmethod
    def deactivate_payment_link(link):
        if not link.is_active:
            raise ConflictError("Payment link is already inactive")
        link.is_active = False
        link.save(update_fields=['is_active'])
        return link


# =============================================================================
# MONITOR
# =============================================================================

def transaction_monitor(branch, session, filters=None):
    """
    Gateway transactions for the monitor page with totals. filters may hold
    gateway, status (EXPIRED includes open rows past their expiry),
    date_from, date_to and search.
    """
    filters = filters or {}
    qs = PaymentGatewayTransaction.objects.filter(
        payment_request__branch=branch,
        payment_request__session=session,
    ).select_related('payment_request', 'payment_request__student')

    if filters.get('gateway'):
        qs = qs.filter(gateway=filters['gateway'].lower())
    status = (filters.get('status') or '').upper()
    if status == EXPIRED:
        qs = qs.filter(Q(status=EXPIRED) | Q(status__in=OPEN_STATUSES, expires_at__lte=timezone.now()))
    elif status in OPEN_STATUSES:
        qs = qs.filter(status=status).filter(Q(expires_at__isnull=True) | Q(expires_at__gt=timezone.now()))
    elif status:
        qs = qs.filter(status=status)
    if filters.get('date_from'):
        qs = qs.filter(created_at__date__gte=filters['date_from'])
    if filters.get('date_to'):
        qs = qs.filter(created_at__date__lte=filters['date_to'])
    if filters.get('search'):
        term = filters['search']
        qs = qs.filter(
            Q(gateway_transaction_id__icontains=term)
            | Q(gateway_order_id__icontains=term)
            | Q(gateway_payment_id__icontains=term)
            | Q(payment_request__student__admission_number__icontains=term)
            | Q(payment_request__buyer_name__icontains=term)
        )

    totals = qs.aggregate(
        count=Count('id'),
        success_count=Count('id', filter=Q(status=SUCCESS)),
        failed_count=Count('id', filter=Q(status=FAILED)),
        success_amount=Sum('amount', filter=Q(status=SUCCESS)),
    )
    totals['success_amount'] = totals['success_amount'] or Decimal('0.00')
    return qs.order_by('-created_at'), totals


# =============================================================================
# SERIALIZATION
# =============================================================================

def serialize_payment_request(payment_request):
    return {
        'id': str(payment_request.pk),
        'student_id': str(payment_request.student_id),
        'fee_term_id': str(payment_request.fee_term_id),
        'buyer_name': payment_request.buyer_name,
        'buyer_email': payment_request.buyer_email,
        'buyer_phone': payment_request.buyer_phone,
        'purpose': payment_request.purpose,
        'amount': money_str(payment_request.amount),
        'currency': payment_request.currency,
        'fees': payment_request.fees,
        'gateway': payment_request.gateway,
        'status': payment_request.effective_status,
        'expires_at': payment_request.expires_at.isoformat(),
        'gateway_order_id': payment_request.gateway_order_id,
        'failure_reason': payment_request.failure_reason,
        'completed_at': payment_request.completed_at.isoformat() if payment_request.completed_at else None,
        'created_at': payment_request.created_at.isoformat(),
    }


def serialize_transaction(txn):
    return {
        'id': str(txn.pk),
        'payment_request_id': str(txn.payment_request_id),
        'gateway': txn.gateway,
        'transaction_reference': txn.gateway_transaction_id,
        'gateway_order_id': txn.gateway_order_id,
        'gateway_payment_id': txn.gateway_payment_id,
        'amount': money_str(txn.amount),
        'currency': txn.currency,
        'status': txn.effective_status,
        'failure_reason': txn.failure_reason,
        'paid_at': txn.paid_at.isoformat() if txn.paid_at else None,
        'created_at': txn.created_at.isoformat(),
    }
