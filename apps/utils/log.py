# utils/log.py

"""
Logging helpers.

CorrelationIdFilter tags every record with the current request's
correlation id so the console formatter can print it.

PaymentLoggerAdapter carries payment identifiers explicitly. Services build
one per operation and pass it down instead of reading ambient state, so a
webhook, a sweep and an HTTP request all log the same ids for the same
payment.
"""

import logging

from utils.context import get_correlation_id


class CorrelationIdFilter(logging.Filter):
    def filter(self, record):
        if not hasattr(record, 'correlation_id'):
            record.correlation_id = get_correlation_id() or '-'
        return True


class PaymentLoggerAdapter(logging.LoggerAdapter):
    """
    Prefixes messages with the payment request / transaction ids and puts
    them on the record as extra attributes for structured handlers.
    """

    def process(self, msg, kwargs):
        extra = dict(self.extra)
        extra.update(kwargs.get('extra') or {})
        kwargs['extra'] = extra

        tags = []
        for key in ('payment_request_id', 'transaction_id', 'gateway'):
            value = extra.get(key)
            if value:
                tags.append(f"{key}={value}")
        if tags:
            msg = f"[{' '.join(tags)}] {msg}"
        return msg, kwargs


def get_payment_logger(logger, payment_request=None, transaction=None, gateway=None):
    extra = {}
    if payment_request is not None:
        extra['payment_request_id'] = str(payment_request.pk)
    if transaction is not None:
        extra['transaction_id'] = str(transaction.pk)
        if payment_request is None and transaction.payment_request_id:
            extra['payment_request_id'] = str(transaction.payment_request_id)
    if gateway:
        extra['gateway'] = gateway
    return PaymentLoggerAdapter(logger, extra)
