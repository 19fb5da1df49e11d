# payments/tests/test_services.py

from datetime import timedelta
from decimal import Decimal

import pytest
from django.utils import timezone

from fees.models import FeeCollection
from payments.models import PaymentRequest, PaymentGatewayTransaction, PaymentLink
from payments.services import (
    PaymentRequestService, PaymentLinkService, transaction_monitor, validate_currency,
)
from utils.exceptions import (
    ValidationError, ConflictError, NotFoundError, PreconditionError, ExternalServiceError,
)

from conftest import FakeGateway

pytestmark = pytest.mark.django_db


@pytest.fixture
def create_request(student, branch, session, fee_term, tuition, transport, slab, fake_gateway):
    def create(gateway=None, fees=None, **kwargs):
        kwargs.setdefault('buyer_name', 'Ravi Rao')
        kwargs.setdefault('buyer_phone', '9876543210')
        return PaymentRequestService.create_payment_request(
            student=student,
            branch=branch,
            session=session,
            fee_term=fee_term,
            fees=fees or [
                {'fee_head_id': tuition.pk, 'amount': '10000.00'},
                {'fee_head_id': transport.pk, 'amount': '2000.00'},
            ],
            gateway=gateway or fake_gateway,
            **kwargs
        )
    return create


class TestCreatePaymentRequest:

    def test_initiated_with_checkout(self, create_request, fake_gateway):
        result = create_request()

        payment_request = PaymentRequest.objects.get(pk=result['payment_request_id'])
        txn = PaymentGatewayTransaction.objects.get(pk=result['transaction_id'])
        assert payment_request.status == 'INITIATED'
        assert payment_request.amount == Decimal('12000.00')
        assert txn.status == 'INITIATED'
        assert txn.gateway_order_id == payment_request.gateway_order_id
        assert result['checkout_payload']['transaction_reference'] == txn.gateway_transaction_id

        amount, receipt_id, metadata = fake_gateway.orders[0]
        assert amount == Decimal('12000.00')
        assert receipt_id == txn.gateway_transaction_id
        assert metadata['notes']['admission_number'] == 'PS-0001'

    def test_fee_lines_snapshot_concession(self, create_request, student, branch, session, tuition):
        from concessions.services import ConcessionTypeService, ConcessionService

        concession_type = ConcessionTypeService.create_concession_type(branch, session, {
            'name': 'Sibling', 'type': 'PERCENTAGE', 'value': Decimal('10'), 'auto_approval': True,
        })
        ConcessionService.assign_concession(student, concession_type, branch, session)

        result = create_request(fees=[{'fee_head_id': tuition.pk, 'amount': '9000.00'}])
        line = PaymentRequest.objects.get(pk=result['payment_request_id']).fees[0]
        assert line['fee_head_name'] == 'Tuition'
        assert line['original_amount'] == '10000.00'
        assert line['concession_amount'] == '1000.00'
        assert line['amount'] == '9000.00'

    def test_gateway_failure_leaves_failed_pair(self, create_request, failing_gateway):
        with pytest.raises(ExternalServiceError):
            create_request(gateway=failing_gateway)

        payment_request = PaymentRequest.objects.get()
        txn = payment_request.transactions.get()
        assert payment_request.status == 'FAILED'
        assert txn.status == 'FAILED'
        assert 'Bad request' in txn.failure_reason

    def test_unexpected_gateway_error_is_wrapped(self, create_request):
        with pytest.raises(ExternalServiceError):
            create_request(gateway=FakeGateway(fail_with=RuntimeError('socket closed')))
        assert PaymentRequest.objects.get().status == 'FAILED'

    def test_unconfigured_gateway(self, create_request):
        with pytest.raises(PreconditionError):
            create_request(gateway=FakeGateway(configured=False))
        assert PaymentRequest.objects.count() == 0

    @pytest.mark.parametrize('kwargs', [
        {'buyer_name': '  '},
        {'buyer_phone': '12345'},
        {'expiry_hours': 0},
        {'expiry_hours': 73},
        {'currency': 'XYZ'},
    ])
    def test_rejected_before_any_write(self, create_request, kwargs):
        with pytest.raises(ValidationError):
            create_request(**kwargs)
        assert PaymentRequest.objects.count() == 0

    def test_duplicate_fee_head(self, create_request, tuition):
        with pytest.raises(ValidationError):
            create_request(fees=[
                {'fee_head_id': tuition.pk, 'amount': '1'},
                {'fee_head_id': tuition.pk, 'amount': '2'},
            ])

    def test_non_positive_amount(self, create_request, tuition):
        with pytest.raises(ValidationError):
            create_request(fees=[{'fee_head_id': tuition.pk, 'amount': '0'}])

    def test_student_of_other_branch(self, create_request, student, other_branch):
        student.branch = other_branch
        student.save()
        with pytest.raises(ValidationError):
            create_request()

    def test_currency_is_normalised(self):
        assert validate_currency(' inr ') == 'INR'


class TestCancelAndExpire:

    def test_cancel_closes_open_transactions(self, create_request):
        result = create_request()
        payment_request = PaymentRequest.objects.get(pk=result['payment_request_id'])

        payment_request = PaymentRequestService.cancel_payment_request(payment_request, reason='Parent paid cash')
        assert payment_request.status == 'CANCELLED'
        assert payment_request.cancel_reason == 'Parent paid cash'
        assert payment_request.transactions.get().status == 'CANCELLED'

        with pytest.raises(ConflictError):
            PaymentRequestService.cancel_payment_request(payment_request)

    def test_cannot_cancel_expired(self, create_request):
        result = create_request()
        PaymentRequest.objects.filter(pk=result['payment_request_id']).update(
            expires_at=timezone.now() - timedelta(minutes=1)
        )
        payment_request = PaymentRequest.objects.get(pk=result['payment_request_id'])
        assert payment_request.effective_status == 'EXPIRED'
        with pytest.raises(ConflictError):
            PaymentRequestService.cancel_payment_request(payment_request)

    def test_cannot_cancel_paid_request(self, processor, signed_event, initiated):
        body, headers = signed_event('payment.captured', initiated.gateway_order_id)
        processor.process(body, headers)
        payment_request = PaymentRequest.objects.get(pk=initiated.payment_request_id)

        with pytest.raises(ConflictError):
            PaymentRequestService.cancel_payment_request(payment_request, reason='Changed mind')

        payment_request.refresh_from_db()
        initiated.refresh_from_db()
        assert payment_request.status == 'SUCCESS'
        assert payment_request.cancel_reason == ''
        assert initiated.status == 'SUCCESS'
        assert FeeCollection.objects.filter(gateway_transaction=initiated).count() == 1

    def test_sweep_persists_expiry(self, create_request):
        stale = create_request()
        fresh = create_request()
        PaymentRequest.objects.filter(pk=stale['payment_request_id']).update(
            expires_at=timezone.now() - timedelta(minutes=1)
        )

        assert PaymentRequestService.expire_stale_requests() == (1, 1)
        assert PaymentRequest.objects.get(pk=stale['payment_request_id']).status == 'EXPIRED'
        assert PaymentRequest.objects.get(pk=fresh['payment_request_id']).status == 'INITIATED'
        assert PaymentRequestService.expire_stale_requests() == (0, 0)

    def test_terminal_transaction_is_frozen(self, create_request):
        result = create_request()
        PaymentRequestService.cancel_payment_request(PaymentRequest.objects.get(pk=result['payment_request_id']))
        txn = PaymentGatewayTransaction.objects.get(pk=result['transaction_id'])
        txn.status = 'SUCCESS'
        with pytest.raises(ConflictError):
            txn.save()

    def test_fee_lines_cannot_change(self, create_request):
        payment_request = PaymentRequest.objects.get(pk=create_request()['payment_request_id'])
        payment_request.fees = []
        with pytest.raises(ConflictError):
            payment_request.save()


class TestVerifyCheckout:

    def test_good_signature(self, create_request, fake_gateway):
        result = create_request()
        order_id = result['checkout_payload']['order_id']
        verified = PaymentRequestService.verify_checkout_payment(order_id, 'pay_1', 'good', gateway=fake_gateway)
        assert verified['verified'] is True
        # verification alone never completes the payment
        assert verified['status'] == 'INITIATED'

    def test_bad_signature(self, create_request, fake_gateway):
        order_id = create_request()['checkout_payload']['order_id']
        with pytest.raises(ExternalServiceError):
            PaymentRequestService.verify_checkout_payment(order_id, 'pay_1', 'forged', gateway=fake_gateway)

    def test_unknown_order(self, fake_gateway):
        with pytest.raises(NotFoundError):
            PaymentRequestService.verify_checkout_payment('order_NOPE', 'pay_1', 'good', gateway=fake_gateway)

    def test_status_report(self, create_request):
        result = create_request()
        status = PaymentRequestService.check_payment_status(PaymentRequest.objects.get(pk=result['payment_request_id']))
        assert status['status'] == 'INITIATED'
        assert len(status['transactions']) == 1
        assert status['receipt_number'] is None


class TestPaymentLinks:

    def test_open_lists_unpaid_terms_and_counts(self, student, branch, session, slab):
        link = PaymentLinkService.create_payment_link(student, branch, session)
        found, unpaid = PaymentLinkService.open_payment_link(link.token)
        assert found.pk == link.pk
        assert unpaid[0]['outstanding_amount'] == Decimal('12000.00')

        PaymentLinkService.open_payment_link(link.token)
        link.refresh_from_db()
        assert link.access_count == 2
        assert link.last_accessed_at is not None

    def test_expired_link(self, student, branch, session):
        link = PaymentLinkService.create_payment_link(student, branch, session)
        PaymentLink.objects.filter(pk=link.pk).update(expires_at=timezone.now() - timedelta(seconds=1))
        with pytest.raises(ConflictError):
            PaymentLinkService.open_payment_link(link.token)

    def test_deactivated_link(self, student, branch, session):
        link = PaymentLinkService.create_payment_link(student, branch, session)
        PaymentLinkService.deactivate_payment_link(link)
        with pytest.raises(ConflictError):
            PaymentLinkService.open_payment_link(link.token)
        with pytest.raises(ConflictError):
            PaymentLinkService.deactivate_payment_link(link)

    def test_unknown_token(self):
        with pytest.raises(NotFoundError):
            PaymentLinkService.open_payment_link('missing')

    def test_expiry_days_bounds(self, student, branch, session):
        with pytest.raises(ValidationError):
            PaymentLinkService.create_payment_link(student, branch, session, expiry_days=91)


class TestTransactionMonitor:

    def test_totals_and_expired_filter(self, create_request, branch, session):
        first = create_request()
        create_request()
        PaymentGatewayTransaction.objects.filter(pk=first['transaction_id']).update(
            expires_at=timezone.now() - timedelta(minutes=1)
        )

        transactions, totals = transaction_monitor(branch, session)
        assert totals['count'] == 2
        assert totals['success_amount'] == Decimal('0.00')

        expired, _ = transaction_monitor(branch, session, {'status': 'expired'})
        assert [str(t.pk) for t in expired] == [first['transaction_id']]

        initiated, _ = transaction_monitor(branch, session, {'status': 'INITIATED'})
        assert initiated.count() == 1

    def test_search_by_admission_number(self, create_request, branch, session):
        create_request()
        found, _ = transaction_monitor(branch, session, {'search': 'PS-0001'})
        assert found.count() == 1
        found, _ = transaction_monitor(branch, session, {'search': 'PS-9999'})
        assert found.count() == 0
