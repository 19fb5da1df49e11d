# payments/gateways/razorpay.py

"""
Razorpay Orders API client.

Amounts travel in paise. Checkout signatures are HMAC-SHA256 over
"order_id|payment_id" with the key secret; webhook signatures are
HMAC-SHA256 over the raw body with the webhook secret, sent in the
X-Razorpay-Signature header.
"""

import hashlib
import hmac
import json
import logging
from decimal import Decimal

from django.conf import settings

from payments.gateways.base import PaymentGateway, GatewayOrder
from payments.gateways.events import (
    PaymentCaptured, PaymentFailed, OrderPaid, WebhookPayloadError,
    RazorpayPaymentEntityForm, RazorpayOrderEntityForm, clean_payload,
)
from utils.exceptions import PreconditionError

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = 'X-Razorpay-Signature'
CAPTURE_EVENTS = ('payment.captured', 'payment.authorized')
MAX_NOTES = 15


def to_paise(amount):
    return int((Decimal(amount) * 100).quantize(Decimal('1')))


def from_paise(paise):
    return (Decimal(paise) / 100).quantize(Decimal('0.01'))


def hmac_sha256(secret, message):
    if isinstance(message, str):
        message = message.encode('utf-8')
    return hmac.new(secret.encode('utf-8'), message, hashlib.sha256).hexdigest()


class RazorpayGateway(PaymentGateway):
    name = 'razorpay'
    display_name = 'Razorpay'
    API_BASE = 'https://api.razorpay.com/v1'

    def __init__(self, key_id=None, key_secret=None, webhook_secret=None, **kwargs):
        super().__init__(**kwargs)
        self.key_id = key_id if key_id is not None else settings.RAZORPAY_KEY_ID
        self.key_secret = key_secret if key_secret is not None else settings.RAZORPAY_KEY_SECRET
        self.webhook_secret = webhook_secret if webhook_secret is not None else settings.RAZORPAY_WEBHOOK_SECRET

    def is_configured(self):
        return bool(self.key_id and self.key_secret)

    def _error_message(self, body):
        error = body.get('error') if isinstance(body, dict) else None
        if isinstance(error, dict):
            return error.get('description') or error.get('code')
        return None

    def create_order(self, amount, receipt_id, metadata):
        if not self.is_configured():
            raise PreconditionError("Razorpay is not configured")

        metadata = metadata or {}
        notes = {
            k: str(v)[:256] for k, v in list(metadata.get('notes', {}).items())[:MAX_NOTES]
            if v not in (None, '')
        }
        payload = {
            'amount': to_paise(amount),
            'currency': metadata.get('currency', 'INR'),
            'receipt': receipt_id,
            'notes': notes,
        }
        body = self._post(f"{self.API_BASE}/orders", json=payload, auth=(self.key_id, self.key_secret))

        order_id = body.get('id')
        if not order_id:
            raise WebhookPayloadError("Razorpay order response did not include an order id")

        logger.info(f"Created Razorpay order {order_id} for receipt {receipt_id}")
        return GatewayOrder(
            id=order_id,
            amount=from_paise(body.get('amount', payload['amount'])),
            currency=body.get('currency', payload['currency']),
            checkout={
                'key': self.key_id,
                'order_id': order_id,
                'amount': body.get('amount', payload['amount']),
                'currency': body.get('currency', payload['currency']),
                'name': metadata.get('merchant_name', ''),
                'description': metadata.get('purpose', ''),
                'prefill': {
                    'name': metadata.get('buyer_name', ''),
                    'email': metadata.get('buyer_email', ''),
                    'contact': metadata.get('buyer_phone', ''),
                },
                'notes': notes,
            },
            raw=body,
        )

    def verify_signature(self, order_id, payment_id, signature):
        if not (self.key_secret and order_id and payment_id and signature):
            return False
        expected = hmac_sha256(self.key_secret, f"{order_id}|{payment_id}")
        return hmac.compare_digest(expected, signature)

    def verify_webhook(self, raw_body, headers):
        signature = self.header(headers, SIGNATURE_HEADER)
        if not (self.webhook_secret and signature):
            return False
        expected = hmac_sha256(self.webhook_secret, raw_body)
        return hmac.compare_digest(expected, signature)

    def parse_webhook(self, raw_body, headers):
        try:
            body = json.loads(raw_body)
        except (ValueError, UnicodeDecodeError):
            raise WebhookPayloadError("Webhook body is not valid JSON")
        if not isinstance(body, dict):
            raise WebhookPayloadError("Webhook body must be a JSON object")

        event_name = body.get('event')
        payload = body.get('payload') or {}
        payment_entity = (payload.get('payment') or {}).get('entity')

        if event_name in CAPTURE_EVENTS or event_name == 'payment.failed':
            entity = clean_payload(RazorpayPaymentEntityForm, payment_entity, "Payment entity")
            common = {
                'order_id': entity['order_id'],
                'payment_id': entity['id'],
                'amount': from_paise(entity['amount']),
                'currency': entity['currency'],
                'raw': body,
            }
            if event_name == 'payment.failed':
                reason = entity.get('error_description') or entity.get('error_reason') or 'Payment failed'
                return PaymentFailed(self.name, event_name, failure_reason=reason, **common)
            return PaymentCaptured(self.name, event_name, **common)

        if event_name == 'order.paid':
            order = clean_payload(RazorpayOrderEntityForm, (payload.get('order') or {}).get('entity'), "Order entity")
            payment_id = payment_entity.get('id', '') if isinstance(payment_entity, dict) else ''
            paid = order.get('amount_paid')
            return OrderPaid(
                self.name, event_name,
                order_id=order['id'],
                transaction_ref=order.get('receipt') or '',
                payment_id=payment_id,
                amount=from_paise(paid if paid is not None else order['amount']),
                currency=order['currency'],
                raw=body,
            )

        raise WebhookPayloadError(f"Unsupported Razorpay event: {event_name or 'missing'}")
