# payments/tests/test_webhooks.py

import json
from datetime import timedelta
from decimal import Decimal

import pytest
from django.utils import timezone

from fees.models import FeeCollection, FeeHead
from payments.gateways.events import PaymentCaptured, WebhookPayloadError
from payments.gateways.razorpay import hmac_sha256
from payments.models import (
    PaymentRequest, PaymentGatewayTransaction, PaymentWebhookLog, ReconciliationException,
)
from payments.services import PaymentRequestService
from utils.exceptions import ExternalServiceError

from conftest import WEBHOOK_SECRET

pytestmark = pytest.mark.django_db


class TestCapture:

    def test_capture_writes_one_collection(self, processor, signed_event, initiated):
        body, headers = signed_event('payment.captured', initiated.gateway_order_id)
        outcome = processor.process(body, headers)

        assert outcome['action'] == 'captured'
        initiated.refresh_from_db()
        assert initiated.status == 'SUCCESS'
        assert initiated.gateway_payment_id == 'pay_TEST0001'
        assert initiated.paid_at is not None
        assert initiated.payment_request.status == 'SUCCESS'

        collection = FeeCollection.objects.get(gateway_transaction=initiated)
        assert collection.receipt_number == outcome['receipt_number']
        assert collection.receipt_number.startswith('RCPPS/FIN/2025-26/')
        assert collection.total_amount == Decimal('12000.00')
        assert collection.payment_mode == 'Online'
        assert collection.transaction_reference == 'pay_TEST0001'
        assert collection.items.count() == 2

        log = PaymentWebhookLog.objects.get(pk=outcome['webhook_log_id'])
        assert log.processed
        assert log.signature_valid
        assert log.transaction_id == initiated.pk
        assert log.event == 'payment.captured'

    def test_redelivery_is_idempotent(self, processor, signed_event, initiated):
        body, headers = signed_event('payment.captured', initiated.gateway_order_id)
        first = processor.process(body, headers)
        second = processor.process(body, headers)

        assert second['action'] == 'duplicate'
        assert second['receipt_number'] == first['receipt_number']
        assert FeeCollection.objects.filter(gateway_transaction=initiated).count() == 1
        assert PaymentWebhookLog.objects.count() == 2

    def test_capture_after_expiry_time_is_accepted(self, processor, signed_event, initiated):
        PaymentGatewayTransaction.objects.filter(pk=initiated.pk).update(
            expires_at=timezone.now() - timedelta(minutes=5)
        )
        body, headers = signed_event('payment.captured', initiated.gateway_order_id)
        assert processor.process(body, headers)['action'] == 'captured'

    def test_collection_feeds_the_ledger(self, processor, signed_event, initiated, student):
        from fees.ledger import StudentLedgerService

        body, headers = signed_event('payment.captured', initiated.gateway_order_id)
        processor.process(body, headers)
        summary = StudentLedgerService.summarize(StudentLedgerService.get_student_fee_details(student))
        assert summary['outstanding_amount'] == Decimal('0.00')


class TestFailure:

    def test_failure_closes_request(self, processor, signed_event, initiated):
        body, headers = signed_event(
            'payment.failed', initiated.gateway_order_id, error_description='Insufficient funds'
        )
        outcome = processor.process(body, headers)

        assert outcome['action'] == 'failed'
        initiated.refresh_from_db()
        assert initiated.status == 'FAILED'
        assert initiated.failure_reason == 'Insufficient funds'
        assert PaymentRequest.objects.get(pk=initiated.payment_request_id).status == 'FAILED'
        assert FeeCollection.objects.count() == 0

    def test_failure_after_success_is_ignored(self, processor, signed_event, initiated):
        body, headers = signed_event('payment.captured', initiated.gateway_order_id)
        processor.process(body, headers)
        body, headers = signed_event('payment.failed', initiated.gateway_order_id)
        assert processor.process(body, headers)['action'] == 'ignored'
        initiated.refresh_from_db()
        assert initiated.status == 'SUCCESS'


class TestExceptionsOpenedByWebhooks:

    def test_capture_after_cancel_is_late_payment(self, processor, signed_event, initiated):
        PaymentRequestService.cancel_payment_request(initiated.payment_request)
        body, headers = signed_event('payment.captured', initiated.gateway_order_id)
        outcome = processor.process(body, headers)

        assert outcome['action'] == 'late_payment'
        initiated.refresh_from_db()
        assert initiated.status == 'CANCELLED'
        exception = ReconciliationException.objects.get()
        assert exception.kind == 'LATE_PAYMENT'
        assert exception.gateway_transaction_id == initiated.pk
        assert FeeCollection.objects.count() == 0

    def test_unknown_order_is_orphan(self, processor, signed_event, initiated):
        body, headers = signed_event('payment.captured', 'order_UNKNOWN', payment_id='pay_STRAY')
        assert processor.process(body, headers)['action'] == 'orphan'
        processor.process(body, headers)

        exception = ReconciliationException.objects.get()
        assert exception.kind == 'ORPHAN_PAYMENT'
        assert exception.gateway_reference == 'pay_STRAY'
        assert exception.gateway_transaction is None

    def test_amount_mismatch_holds_collection(self, processor, signed_event, initiated):
        body, headers = signed_event('payment.captured', initiated.gateway_order_id, amount=Decimal('11000.00'))
        outcome = processor.process(body, headers)

        assert outcome['action'] == 'amount_mismatch'
        initiated.refresh_from_db()
        assert initiated.status == 'SUCCESS'
        exception = ReconciliationException.objects.get()
        assert exception.kind == 'AMOUNT_MISMATCH'
        assert exception.expected_amount == Decimal('12000.00')
        assert exception.received_amount == Decimal('11000.00')
        assert FeeCollection.objects.count() == 0

    def test_failed_collection_write_is_missing_collection(self, processor, signed_event, student, branch,
                                                            session, fee_term, fake_gateway):
        exam = FeeHead.objects.create(branch=branch, session=session, name='Exam')
        result = PaymentRequestService.create_payment_request(
            student=student, branch=branch, session=session, fee_term=fee_term,
            fees=[{'fee_head_id': exam.pk, 'amount': '500.00'}],
            buyer_name='Ravi Rao', buyer_phone='9876543210', gateway=fake_gateway,
        )
        txn = PaymentGatewayTransaction.objects.get(pk=result['transaction_id'])
        FeeHead.objects.filter(pk=exam.pk).delete()

        body, headers = signed_event('payment.captured', txn.gateway_order_id, amount=Decimal('500.00'))
        outcome = processor.process(body, headers)

        assert outcome['action'] == 'collection_failed'
        txn.refresh_from_db()
        assert txn.status == 'SUCCESS'
        assert txn.payment_request.status == 'SUCCESS'
        assert FeeCollection.objects.count() == 0
        exception = ReconciliationException.objects.get()
        assert exception.kind == 'MISSING_COLLECTION'
        assert exception.gateway_transaction_id == txn.pk
        assert 'no longer exist' in exception.detail
        assert PaymentWebhookLog.objects.get().processed

    def test_capture_without_currency_uses_transaction_currency(self, processor, initiated):
        PaymentGatewayTransaction.objects.filter(pk=initiated.pk).update(currency='USD')
        event = PaymentCaptured(
            'razorpay', 'payment.success', order_id=initiated.gateway_order_id,
            payment_id='E2500001', amount=Decimal('12000.00'), currency='',
        )
        assert processor.apply(event)['action'] == 'captured'
        assert ReconciliationException.objects.count() == 0

    def test_currency_mismatch(self, processor, signed_event, initiated):
        body, headers = signed_event('payment.captured', initiated.gateway_order_id, currency='USD')
        assert processor.process(body, headers)['action'] == 'amount_mismatch'


class TestRejectedDeliveries:

    def test_bad_signature_is_logged_and_rejected(self, processor, signed_event, initiated):
        body, _ = signed_event('payment.captured', initiated.gateway_order_id)
        with pytest.raises(ExternalServiceError):
            processor.process(body, {'X-Razorpay-Signature': 'forged'})

        log = PaymentWebhookLog.objects.get()
        assert log.signature_valid is False
        assert not log.processed
        assert 'signature' in log.processing_error
        initiated.refresh_from_db()
        assert initiated.status == 'INITIATED'

    def test_unsupported_event_is_logged(self, processor, razorpay):
        body = json.dumps({'event': 'refund.processed', 'payload': {}}).encode('utf-8')
        headers = {'X-Razorpay-Signature': hmac_sha256(WEBHOOK_SECRET, body)}
        with pytest.raises(WebhookPayloadError):
            processor.process(body, headers)

        log = PaymentWebhookLog.objects.get()
        assert log.signature_valid is True
        assert 'refund.processed' in log.processing_error

    def test_informational_event_changes_nothing(self, processor, initiated):
        body = json.dumps({
            'event': 'order.paid',
            'payload': {'order': {'entity': {
                'id': initiated.gateway_order_id, 'amount': 1200000, 'amount_paid': 1200000, 'currency': 'INR',
            }}},
        }).encode('utf-8')
        headers = {'X-Razorpay-Signature': hmac_sha256(WEBHOOK_SECRET, body)}
        outcome = processor.process(body, headers)

        assert outcome['action'] == 'ignored'
        initiated.refresh_from_db()
        assert initiated.status == 'INITIATED'

    def test_sensitive_headers_not_stored(self, processor, signed_event, initiated):
        body, headers = signed_event('payment.captured', initiated.gateway_order_id)
        headers['Authorization'] = 'Bearer secret'
        processor.process(body, headers)
        assert 'Authorization' not in PaymentWebhookLog.objects.get().headers
