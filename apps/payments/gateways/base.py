# payments/gateways/base.py

"""
Payment gateway contract.

Every provider implements the same interface so the payment services never
branch on which gateway is active.
"""

import random
import string
import time
import logging

import requests
from django.conf import settings

from utils.exceptions import ExternalServiceError

logger = logging.getLogger(__name__)


class GatewayOrder:
    """What a gateway returned for a newly created order."""

    def __init__(self, id, amount, currency, checkout=None, raw=None):
        self.id = id
        self.amount = amount
        self.currency = currency
        self.checkout = checkout or {}
        self.raw = raw or {}

    def __repr__(self):
        return f"GatewayOrder(id={self.id!r}, amount={self.amount}, currency={self.currency!r})"


class PaymentGateway:
    """
    Interface implemented by every provider.

    create_order(amount, receipt_id, metadata) -> GatewayOrder
    verify_signature(order_id, payment_id, signature) -> bool
    verify_webhook(raw_body, headers) -> bool
    parse_webhook(raw_body, headers) -> GatewayEvent
    is_configured() -> bool
    """

    name = None
    display_name = None

    def __init__(self, timeout=None, http=None):
        self.timeout = timeout or getattr(settings, 'PAYMENT_GATEWAY_TIMEOUT', 15)
        self.http = http or requests.Session()

    def is_configured(self):
        raise NotImplementedError

    def create_order(self, amount, receipt_id, metadata):
        raise NotImplementedError

    def verify_signature(self, order_id, payment_id, signature):
        raise NotImplementedError

    def verify_webhook(self, raw_body, headers):
        raise NotImplementedError

    def parse_webhook(self, raw_body, headers):
        raise NotImplementedError

    # -------------------------------------------------------------------------
    # SHARED HELPERS
    # -------------------------------------------------------------------------

    @staticmethod
    def generate_receipt_id(prefix=None):
        """SCHOLAR_1718000000000_AB12 style id sent to the gateway as receipt/txnid."""
        prefix = prefix or getattr(settings, 'PAYMENT_RECEIPT_ID_PREFIX', 'SCHOLAR')
        timestamp = int(time.time() * 1000)
        suffix = ''.join(random.choices(string.ascii_uppercase + string.digits, k=4))
        return f"{prefix}_{timestamp}_{suffix}"

    @staticmethod
    def header(headers, name):
        """Case-insensitive header lookup on a plain dict or Django HttpHeaders."""
        name = name.lower()
        for key, value in (headers or {}).items():
            if key.lower() == name:
                return value
        return None

    def _post(self, url, **kwargs):
        """POST and return the decoded JSON body, mapping transport errors."""
        kwargs.setdefault('timeout', self.timeout)
        try:
            response = self.http.post(url, **kwargs)
        except requests.RequestException as e:
            logger.error(f"{self.display_name} request to {url} failed: {e}")
            raise ExternalServiceError(f"Could not reach {self.display_name}. Please try again.")

        try:
            body = response.json()
        except ValueError:
            body = {}

        if response.status_code >= 400:
            message = self._error_message(body) or f"HTTP {response.status_code}"
            logger.error(f"{self.display_name} rejected request: {response.status_code} {message}")
            raise ExternalServiceError(f"{self.display_name} error: {message}", details={'status_code': response.status_code})
        return body

    def _error_message(self, body):
        return None
