# payments/tests/test_gateways.py

import hashlib
import json
from decimal import Decimal
from unittest.mock import Mock

import pytest
import requests
from urllib.parse import urlencode

from payments.gateways import get_gateway, RazorpayGateway, EasebuzzGateway
from payments.gateways.events import PaymentCaptured, PaymentFailed, PaymentPending, OrderPaid, WebhookPayloadError
from payments.gateways.razorpay import to_paise, from_paise, hmac_sha256
from utils.exceptions import ValidationError, PreconditionError, ExternalServiceError

from conftest import razorpay_payment_event, KEY_SECRET, WEBHOOK_SECRET


def http_returning(status_code, body):
    http = Mock()
    http.post.return_value = Mock(status_code=status_code, json=Mock(return_value=body))
    return http


class TestGatewayRegistry:

    def test_unknown_gateway(self):
        with pytest.raises(ValidationError):
            get_gateway('paypal')

    def test_named_gateway(self, settings):
        settings.EASEBUZZ_MERCHANT_KEY = 'K'
        settings.EASEBUZZ_MERCHANT_SALT = 'S'
        assert isinstance(get_gateway('EASEBUZZ'), EasebuzzGateway)

    def test_receipt_id_format(self):
        receipt = RazorpayGateway.generate_receipt_id('TEST')
        prefix, timestamp, suffix = receipt.split('_')
        assert prefix == 'TEST'
        assert timestamp.isdigit()
        assert len(suffix) == 4


# =============================================================================
# RAZORPAY
# =============================================================================

class TestRazorpayAmounts:

    def test_paise_conversion(self):
        assert to_paise(Decimal('12000.50')) == 1200050
        assert to_paise('0.01') == 1
        assert from_paise(1200050) == Decimal('12000.50')


class TestRazorpaySignatures:

    def test_checkout_signature(self, razorpay):
        signature = hmac_sha256(KEY_SECRET, 'order_1|pay_1')
        assert razorpay.verify_signature('order_1', 'pay_1', signature)
        assert not razorpay.verify_signature('order_1', 'pay_2', signature)
        assert not razorpay.verify_signature('order_1', 'pay_1', '')

    def test_webhook_signature_over_raw_body(self, razorpay):
        body, headers = razorpay_payment_event('payment.captured', 'order_1')
        assert razorpay.verify_webhook(body, headers)
        assert razorpay.verify_webhook(body, {'x-razorpay-signature': headers['X-Razorpay-Signature']})
        assert not razorpay.verify_webhook(body + b' ', headers)
        assert not razorpay.verify_webhook(body, {})

    def test_webhook_needs_secret(self, razorpay):
        body, headers = razorpay_payment_event('payment.captured', 'order_1')
        razorpay.webhook_secret = ''
        assert not razorpay.verify_webhook(body, headers)


class TestRazorpayParsing:

    def test_captured(self, razorpay):
        body, headers = razorpay_payment_event('payment.captured', 'order_1', amount=Decimal('250.75'))
        event = razorpay.parse_webhook(body, headers)
        assert isinstance(event, PaymentCaptured)
        assert event.order_id == 'order_1'
        assert event.payment_id == 'pay_TEST0001'
        assert event.amount == Decimal('250.75')

    def test_authorized_counts_as_capture(self, razorpay):
        body, headers = razorpay_payment_event('payment.authorized', 'order_1')
        assert isinstance(razorpay.parse_webhook(body, headers), PaymentCaptured)

    def test_failed_carries_reason(self, razorpay):
        body, headers = razorpay_payment_event(
            'payment.failed', 'order_1', error_description='Card declined by bank'
        )
        event = razorpay.parse_webhook(body, headers)
        assert isinstance(event, PaymentFailed)
        assert event.failure_reason == 'Card declined by bank'

    def test_order_paid_is_informational(self, razorpay):
        body = json.dumps({
            'event': 'order.paid',
            'payload': {
                'order': {'entity': {'id': 'order_1', 'amount': 100, 'amount_paid': 100,
                                     'currency': 'INR', 'receipt': 'SCHOLAR_1_AAAA'}},
                'payment': {'entity': {'id': 'pay_1'}},
            },
        }).encode('utf-8')
        event = razorpay.parse_webhook(body, {})
        assert isinstance(event, OrderPaid)
        assert not event.changes_state
        assert event.transaction_ref == 'SCHOLAR_1_AAAA'
        assert event.amount == Decimal('1.00')

    def test_unsupported_event(self, razorpay):
        body = json.dumps({'event': 'refund.created', 'payload': {}}).encode('utf-8')
        with pytest.raises(WebhookPayloadError):
            razorpay.parse_webhook(body, {})

    def test_entity_missing_fields(self, razorpay):
        body = json.dumps({
            'event': 'payment.captured',
            'payload': {'payment': {'entity': {'id': 'pay_1', 'currency': 'INR'}}},
        }).encode('utf-8')
        with pytest.raises(WebhookPayloadError) as exc:
            razorpay.parse_webhook(body, {})
        assert 'order_id' in exc.value.message

    def test_body_not_json(self, razorpay):
        with pytest.raises(WebhookPayloadError):
            razorpay.parse_webhook(b'not json', {})


class TestRazorpayOrders:

    def test_create_order(self, settings):
        http = http_returning(200, {'id': 'order_ABC', 'amount': 1200000, 'currency': 'INR', 'status': 'created'})
        gateway = RazorpayGateway(key_id='rzp_test_key', key_secret=KEY_SECRET, webhook_secret=WEBHOOK_SECRET, http=http)

        order = gateway.create_order(Decimal('12000.00'), 'SCHOLAR_1_ABCD', {
            'purpose': 'Term 1 fees',
            'buyer_name': 'Ravi Rao',
            'notes': {'student_id': 'abc', 'empty': ''},
        })

        assert order.id == 'order_ABC'
        assert order.amount == Decimal('12000.00')
        assert order.checkout['key'] == 'rzp_test_key'
        assert order.checkout['prefill']['name'] == 'Ravi Rao'

        args, kwargs = http.post.call_args
        assert args[0] == 'https://api.razorpay.com/v1/orders'
        assert kwargs['json']['amount'] == 1200000
        assert kwargs['json']['receipt'] == 'SCHOLAR_1_ABCD'
        assert kwargs['json']['notes'] == {'student_id': 'abc'}
        assert kwargs['auth'] == ('rzp_test_key', KEY_SECRET)

    def test_api_error_is_external(self):
        http = http_returning(400, {'error': {'code': 'BAD_REQUEST_ERROR', 'description': 'amount too small'}})
        gateway = RazorpayGateway(key_id='k', key_secret='s', webhook_secret='w', http=http)
        with pytest.raises(ExternalServiceError) as exc:
            gateway.create_order(Decimal('1'), 'R1', {})
        assert 'amount too small' in exc.value.message

    def test_network_error_is_external(self):
        http = Mock()
        http.post.side_effect = requests.ConnectionError('refused')
        gateway = RazorpayGateway(key_id='k', key_secret='s', webhook_secret='w', http=http)
        with pytest.raises(ExternalServiceError):
            gateway.create_order(Decimal('1'), 'R1', {})

    def test_not_configured(self):
        gateway = RazorpayGateway(key_id='', key_secret='', webhook_secret='', http=Mock())
        with pytest.raises(PreconditionError):
            gateway.create_order(Decimal('1'), 'R1', {})


# =============================================================================
# EASEBUZZ
# =============================================================================

@pytest.fixture
def easebuzz():
    return EasebuzzGateway(merchant_key='EBKEY', merchant_salt='EBSALT', env='test', http=Mock())


def callback(gateway, **overrides):
    params = {
        'key': 'EBKEY',
        'txnid': 'SCHOLAR_1_ABCD',
        'amount': '12000.00',
        'productinfo': 'Term 1 fees',
        'firstname': 'Ravi',
        'email': 'ravi@example.com',
        'status': 'success',
        'easepayid': 'E2500001',
        'udf1': 'req-1',
        'udf2': 'student-1',
    }
    params.update(overrides)
    params['hash'] = gateway.response_hash(params)
    return params


class TestEasebuzzHashes:

    def test_request_hash_layout(self, easebuzz):
        params = {'txnid': 'T1', 'amount': '10.00', 'productinfo': 'Fees', 'firstname': 'Ravi',
                  'email': 'r@example.com', 'udf1': 'a'}
        expected = hashlib.sha512(b'EBKEY|T1|10.00|Fees|Ravi|r@example.com|a' + b'|' * 10 + b'EBSALT').hexdigest()
        assert easebuzz.request_hash(params) == expected

    def test_response_hash_layout(self, easebuzz):
        params = {'status': 'success', 'udf1': 'a', 'email': 'r@example.com', 'firstname': 'Ravi',
                  'productinfo': 'Fees', 'amount': '10.00', 'txnid': 'T1'}
        expected = hashlib.sha512(
            b'EBSALT|success' + b'|' * 10 + b'a|r@example.com|Ravi|Fees|10.00|T1|EBKEY'
        ).hexdigest()
        assert easebuzz.response_hash(params) == expected

    def test_verify_params(self, easebuzz):
        params = callback(easebuzz)
        assert easebuzz.verify_params(params)
        params['amount'] = '1.00'
        assert not easebuzz.verify_params(params)

    def test_verify_webhook_form_body(self, easebuzz):
        body = urlencode(callback(easebuzz)).encode('utf-8')
        assert easebuzz.verify_webhook(body, {})

    def test_checkout_triple_never_verifies(self, easebuzz):
        assert not easebuzz.verify_signature('T1', 'E1', 'anything')


class TestEasebuzzParsing:

    def test_success(self, easebuzz):
        event = easebuzz.parse_params(callback(easebuzz))
        assert isinstance(event, PaymentCaptured)
        assert event.order_id == 'SCHOLAR_1_ABCD'
        assert event.payment_id == 'E2500001'
        assert event.amount == Decimal('12000.00')
        assert event.currency == ''

    def test_failure(self, easebuzz):
        event = easebuzz.parse_params(callback(easebuzz, status='failure', error_Message='Bank declined'))
        assert isinstance(event, PaymentFailed)
        assert event.failure_reason == 'Bank declined'

    def test_other_status_is_pending(self, easebuzz):
        event = easebuzz.parse_params(callback(easebuzz, status='userCancelled'))
        assert isinstance(event, PaymentPending)
        assert not event.changes_state

    def test_missing_txnid(self, easebuzz):
        params = callback(easebuzz)
        del params['txnid']
        with pytest.raises(WebhookPayloadError):
            easebuzz.parse_params(params)


class TestEasebuzzOrders:

    def test_create_order(self):
        http = http_returning(200, {'status': 1, 'data': 'ACCESSKEY123'})
        gateway = EasebuzzGateway(merchant_key='EBKEY', merchant_salt='EBSALT', env='test', http=http)

        order = gateway.create_order(Decimal('500'), 'SCHOLAR_1_ABCD', {
            'buyer_name': 'Ravi', 'buyer_email': 'r@example.com', 'buyer_phone': '9876543210',
        })

        assert order.id == 'SCHOLAR_1_ABCD'
        assert order.checkout['payment_url'] == 'https://testpay.easebuzz.in/pay/ACCESSKEY123'
        args, kwargs = http.post.call_args
        assert args[0] == 'https://testpay.easebuzz.in/payment/initiateLink'
        assert kwargs['data']['amount'] == '500.00'
        assert kwargs['data']['hash'] == gateway.request_hash(kwargs['data'])

    def test_refused(self):
        http = http_returning(200, {'status': 0, 'error_desc': 'Invalid hash'})
        gateway = EasebuzzGateway(merchant_key='EBKEY', merchant_salt='EBSALT', env='test', http=http)
        with pytest.raises(ExternalServiceError) as exc:
            gateway.create_order(Decimal('500'), 'T1', {})
        assert 'Invalid hash' in exc.value.message

    def test_production_base_url(self):
        gateway = EasebuzzGateway(merchant_key='K', merchant_salt='S', env='production', http=Mock())
        assert gateway.base_url == 'https://pay.easebuzz.in'
