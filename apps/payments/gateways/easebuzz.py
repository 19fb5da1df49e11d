# payments/gateways/easebuzz.py

"""
Easebuzz hosted-checkout client.

Orders are created through initiateLink (form-encoded) and the payer is sent
to {base}/pay/{access_key}. Easebuzz has no separate order id: our txnid is
used for both. Callbacks are form-encoded and carry a reverse sha512 hash.
"""

import hashlib
import hmac
import logging
from decimal import Decimal

from django.conf import settings
from django.http import QueryDict

from payments.gateways.base import PaymentGateway, GatewayOrder
from payments.gateways.events import (
    PaymentCaptured, PaymentFailed, PaymentPending, WebhookPayloadError,
    EasebuzzCallbackForm, clean_payload,
)
from utils.exceptions import PreconditionError, ExternalServiceError

logger = logging.getLogger(__name__)

BASE_URLS = {
    'production': 'https://pay.easebuzz.in',
    'sandbox': 'https://testpay.easebuzz.in',
}
UDF_FIELDS = ('udf1', 'udf2', 'udf3', 'udf4', 'udf5')


def sha512(value):
    return hashlib.sha512(value.encode('utf-8')).hexdigest()


def format_amount(amount):
    return f"{Decimal(amount).quantize(Decimal('0.01'))}"


class EasebuzzGateway(PaymentGateway):
    name = 'easebuzz'
    display_name = 'Easebuzz'

    def __init__(self, merchant_key=None, merchant_salt=None, env=None, **kwargs):
        super().__init__(**kwargs)
        self.merchant_key = merchant_key if merchant_key is not None else settings.EASEBUZZ_MERCHANT_KEY
        self.merchant_salt = merchant_salt if merchant_salt is not None else settings.EASEBUZZ_MERCHANT_SALT
        self.env = env or settings.EASEBUZZ_ENV
        self.base_url = BASE_URLS['production'] if self.env == 'production' else BASE_URLS['sandbox']

    def is_configured(self):
        return bool(self.merchant_key and self.merchant_salt)

    # -------------------------------------------------------------------------
    # HASHES
    # -------------------------------------------------------------------------

    def request_hash(self, params):
        udfs = '|'.join(params.get(f, '') or '' for f in UDF_FIELDS)
        return sha512(
            f"{self.merchant_key}|{params['txnid']}|{params['amount']}|{params['productinfo']}|"
            f"{params['firstname']}|{params['email']}|{udfs}||||||{self.merchant_salt}"
        )

    def response_hash(self, params):
        udfs = '|'.join(params.get(f, '') or '' for f in reversed(UDF_FIELDS))
        return sha512(
            f"{self.merchant_salt}|{params.get('status', '')}||||||{udfs}|"
            f"{params.get('email', '')}|{params.get('firstname', '')}|{params.get('productinfo', '')}|"
            f"{params.get('amount', '')}|{params.get('txnid', '')}|{self.merchant_key}"
        )

    # -------------------------------------------------------------------------
    # ORDERS
    # -------------------------------------------------------------------------

    def _error_message(self, body):
        if isinstance(body, dict):
            return body.get('error_desc') or body.get('data') or body.get('msg')
        return None

    def create_order(self, amount, receipt_id, metadata):
        if not self.is_configured():
            raise PreconditionError("Easebuzz is not configured")

        metadata = metadata or {}
        params = {
            'key': self.merchant_key,
            'txnid': receipt_id,
            'amount': format_amount(amount),
            'productinfo': metadata.get('purpose', '') or 'Fee Payment',
            'firstname': metadata.get('buyer_name', ''),
            'email': metadata.get('buyer_email', ''),
            'phone': metadata.get('buyer_phone', ''),
            'surl': metadata.get('success_url', ''),
            'furl': metadata.get('failure_url', ''),
            'udf1': metadata.get('payment_request_id', ''),
            'udf2': metadata.get('student_id', ''),
            'udf3': '',
            'udf4': '',
            'udf5': '',
        }
        params['hash'] = self.request_hash(params)

        body = self._post(f"{self.base_url}/payment/initiateLink", data=params)
        if str(body.get('status')) != '1' or not body.get('data'):
            message = self._error_message(body) or 'Unknown error'
            logger.error(f"Easebuzz initiateLink refused txnid {receipt_id}: {message}")
            raise ExternalServiceError(f"Easebuzz error: {message}")

        access_key = body['data']
        logger.info(f"Created Easebuzz checkout for txnid {receipt_id}")
        return GatewayOrder(
            id=receipt_id,
            amount=Decimal(params['amount']),
            currency=metadata.get('currency', 'INR'),
            checkout={
                'access_key': access_key,
                'payment_url': f"{self.base_url}/pay/{access_key}",
                'txnid': receipt_id,
                'amount': params['amount'],
            },
            raw=body,
        )

    # -------------------------------------------------------------------------
    # VERIFICATION
    # -------------------------------------------------------------------------

    def _decode(self, raw_body):
        if isinstance(raw_body, bytes):
            raw_body = raw_body.decode('utf-8')
        return QueryDict(raw_body).dict()

    def verify_signature(self, order_id, payment_id, signature):
        """
        Easebuzz signs the whole callback rather than an order/payment pair,
        so checkout verification goes through verify_webhook with the
        posted fields. A bare triple can never be verified.
        """
        return False

    def verify_params(self, params):
        received = params.get('hash') or ''
        if not (self.merchant_salt and received):
            return False
        return hmac.compare_digest(self.response_hash(params), received)

    def verify_webhook(self, raw_body, headers):
        try:
            params = self._decode(raw_body)
        except UnicodeDecodeError:
            return False
        return self.verify_params(params)

    def parse_webhook(self, raw_body, headers):
        try:
            params = self._decode(raw_body)
        except UnicodeDecodeError:
            raise WebhookPayloadError("Webhook body is not valid form data")
        return self.parse_params(params)

    def parse_params(self, params):
        data = clean_payload(EasebuzzCallbackForm, params, "Easebuzz callback")
        status = data['status'].lower()
        common = {
            'order_id': data['txnid'],
            'transaction_ref': data['txnid'],
            'payment_id': data.get('easepayid') or data.get('mihpayid') or '',
            'amount': data['amount'],
            # callbacks carry no currency; the transaction's own currency applies
            'currency': '',
            'raw': params,
        }
        event_name = f"payment.{status}"
        if status == 'success':
            return PaymentCaptured(self.name, event_name, **common)
        if status in ('failure', 'error'):
            reason = data.get('error_Message') or params.get('error') or 'Payment failed'
            return PaymentFailed(self.name, event_name, failure_reason=reason, **common)
        return PaymentPending(self.name, event_name, **common)
