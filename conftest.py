# conftest.py

import itertools
import json
from datetime import date
from decimal import Decimal

import pytest

from academics.models import Branch, AcademicSession, Class, Section
from fees.services import FeeHeadService, FeeTermService, ClasswiseFeeService
from payments.gateways.base import PaymentGateway, GatewayOrder
from payments.gateways.razorpay import RazorpayGateway, hmac_sha256, to_paise
from payments.models import PaymentGatewayTransaction
from payments.services import PaymentRequestService, WebhookProcessor
from students.models import Student
from utils.exceptions import ExternalServiceError

WEBHOOK_SECRET = 'whsec_test'
KEY_SECRET = 'rzp_secret_test'


# =============================================================================
# TENANCY
# =============================================================================

@pytest.fixture
def branch(db):
    return Branch.objects.create(name="Pine Street", code="PS")


@pytest.fixture
def session(branch):
    return AcademicSession.objects.create(
        branch=branch, name="2025-26", start_date=date(2025, 4, 1), end_date=date(2026, 3, 31)
    )


@pytest.fixture
def other_branch(db):
    return Branch.objects.create(name="Lake View", code="LV")


@pytest.fixture
def other_session(other_branch):
    return AcademicSession.objects.create(
        branch=other_branch, name="2025-26", start_date=date(2025, 4, 1), end_date=date(2026, 3, 31)
    )


@pytest.fixture
def school_class(branch, session):
    return Class.objects.create(branch=branch, academic_session=session, name="Grade 5")


@pytest.fixture
def section(school_class):
    return Section.objects.create(school_class=school_class, name="A")


@pytest.fixture
def section_b(school_class):
    return Section.objects.create(school_class=school_class, name="B")


@pytest.fixture
def student(branch, section):
    return Student.objects.create(
        admission_number="PS-0001",
        first_name="Asha",
        last_name="Rao",
        branch=branch,
        section=section,
        student_type='OLD_STUDENT',
    )


@pytest.fixture
def user(django_user_model):
    return django_user_model.objects.create_user(username='accountant', password='pass-1234')


@pytest.fixture
def api_client(client, user):
    client.force_login(user)
    return client


# =============================================================================
# FEE CATALOG
# =============================================================================

@pytest.fixture
def tuition(branch, session):
    return FeeHeadService.create_fee_head(branch, session, {'name': 'Tuition'})


@pytest.fixture
def transport(branch, session):
    return FeeHeadService.create_fee_head(branch, session, {'name': 'Transport'})


@pytest.fixture
def fee_term(branch, session, tuition, transport):
    return FeeTermService.create_fee_term(branch, session, {
        'name': 'Term 1',
        'start_date': date(2025, 4, 1),
        'end_date': date(2025, 9, 30),
        'due_date': date(2025, 4, 15),
        'fee_head_ids': [tuition.pk, transport.pk],
    })


@pytest.fixture
def slab(section, fee_term, tuition, transport):
    """Tuition 10000 and Transport 2000 for section A, Term 1."""
    return ClasswiseFeeService.set_section_fees(section, fee_term, [
        {'fee_head_id': tuition.pk, 'amount': '10000.00'},
        {'fee_head_id': transport.pk, 'amount': '2000.00'},
    ])


# =============================================================================
# GATEWAYS
# =============================================================================

class FakeGateway(PaymentGateway):
    """Records create_order calls; optionally fails them."""

    name = 'razorpay'
    display_name = 'Razorpay'
    _ids = itertools.count(1)

    def __init__(self, fail_with=None, configured=True):
        super().__init__()
        self.fail_with = fail_with
        self.configured = configured
        self.orders = []

    def is_configured(self):
        return self.configured

    def create_order(self, amount, receipt_id, metadata):
        self.orders.append((amount, receipt_id, metadata))
        if self.fail_with is not None:
            raise self.fail_with
        order_id = f"order_FAKE{next(self._ids):05d}"
        return GatewayOrder(
            id=order_id,
            amount=amount,
            currency=metadata.get('currency', 'INR'),
            checkout={'order_id': order_id, 'amount': to_paise(amount)},
            raw={'id': order_id, 'status': 'created'},
        )

    def verify_signature(self, order_id, payment_id, signature):
        return signature == 'good'


@pytest.fixture
def fake_gateway():
    return FakeGateway()


@pytest.fixture
def failing_gateway():
    return FakeGateway(fail_with=ExternalServiceError("Razorpay error: Bad request"))


@pytest.fixture
def razorpay(settings):
    settings.RAZORPAY_KEY_ID = 'rzp_test_key'
    settings.RAZORPAY_KEY_SECRET = KEY_SECRET
    settings.RAZORPAY_WEBHOOK_SECRET = WEBHOOK_SECRET
    return RazorpayGateway()


def razorpay_payment_event(event, order_id, payment_id='pay_TEST0001', amount=Decimal('12000.00'),
                           currency='INR', **entity):
    """Build a signed Razorpay payment webhook: (raw_body, headers)."""
    payment = {
        'id': payment_id,
        'order_id': order_id,
        'amount': to_paise(amount),
        'currency': currency,
        'status': 'captured' if event != 'payment.failed' else 'failed',
    }
    payment.update(entity)
    body = json.dumps({
        'entity': 'event',
        'event': event,
        'payload': {'payment': {'entity': payment}},
    }).encode('utf-8')
    headers = {'X-Razorpay-Signature': hmac_sha256(WEBHOOK_SECRET, body)}
    return body, headers


@pytest.fixture
def signed_event(razorpay):
    return razorpay_payment_event


@pytest.fixture
def processor(razorpay):
    return WebhookProcessor(razorpay)


# =============================================================================
# PAYMENT REQUESTS
# =============================================================================

@pytest.fixture
def initiated(student, branch, session, fee_term, tuition, transport, slab, fake_gateway):
    """Gateway transaction of an INITIATED request for the full Term 1 slab (12000.00)."""
    result = PaymentRequestService.create_payment_request(
        student=student, branch=branch, session=session, fee_term=fee_term,
        fees=[
            {'fee_head_id': tuition.pk, 'amount': '10000.00'},
            {'fee_head_id': transport.pk, 'amount': '2000.00'},
        ],
        buyer_name='Ravi Rao', buyer_phone='9876543210', gateway=fake_gateway,
    )
    return PaymentGatewayTransaction.objects.get(pk=result['transaction_id'])
