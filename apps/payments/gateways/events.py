# payments/gateways/events.py

"""
Typed gateway events.

Webhook bodies are parsed into exactly one of these classes before any
state change happens. Each gateway validates the raw fields with a Django
form first; a body that matches no known variant is rejected.
"""

from decimal import Decimal
from django import forms

from utils.exceptions import ValidationError


class WebhookPayloadError(ValidationError):
    """The webhook body is not a shape we understand."""


class GatewayEvent:
    """Base for every event variant. `kind` tags the variant."""

    kind = None
    changes_state = False

    def __init__(self, gateway, event_name, order_id='', transaction_ref='', payment_id='',
                 amount=None, currency='', raw=None):
        self.gateway = gateway
        self.event_name = event_name
        self.order_id = order_id or ''
        self.transaction_ref = transaction_ref or ''
        self.payment_id = payment_id or ''
        self.amount = amount
        self.currency = currency or ''
        self.raw = raw or {}

    def __repr__(self):
        return (
            f"{self.__class__.__name__}(gateway={self.gateway!r}, order_id={self.order_id!r}, "
            f"payment_id={self.payment_id!r}, amount={self.amount})"
        )


class PaymentCaptured(GatewayEvent):
    kind = 'payment.captured'
    changes_state = True


class PaymentFailed(GatewayEvent):
    kind = 'payment.failed'
    changes_state = True

    def __init__(self, *args, failure_reason='', **kwargs):
        super().__init__(*args, **kwargs)
        self.failure_reason = failure_reason or 'Payment failed'


class OrderPaid(GatewayEvent):
    """Informational: the order is settled; the payment event does the work."""

    kind = 'order.paid'


class PaymentPending(GatewayEvent):
    """Informational: the gateway reports a non-final status."""

    kind = 'payment.pending'


# =============================================================================
# PAYLOAD FORMS
# =============================================================================

class RazorpayPaymentEntityForm(forms.Form):
    id = forms.CharField(max_length=100)
    order_id = forms.CharField(max_length=100)
    amount = forms.IntegerField(min_value=0)
    currency = forms.CharField(max_length=3)
    status = forms.CharField(max_length=30)
    error_description = forms.CharField(required=False)
    error_reason = forms.CharField(required=False)


class RazorpayOrderEntityForm(forms.Form):
    id = forms.CharField(max_length=100)
    amount_paid = forms.IntegerField(min_value=0, required=False)
    amount = forms.IntegerField(min_value=0)
    currency = forms.CharField(max_length=3)
    receipt = forms.CharField(max_length=100, required=False)


class EasebuzzCallbackForm(forms.Form):
    txnid = forms.CharField(max_length=100)
    status = forms.CharField(max_length=30)
    amount = forms.DecimalField(max_digits=12, decimal_places=2, min_value=Decimal('0'))
    hash = forms.CharField(max_length=256)
    key = forms.CharField(max_length=100)
    easepayid = forms.CharField(max_length=100, required=False)
    mihpayid = forms.CharField(max_length=100, required=False)
    bank_ref_num = forms.CharField(max_length=100, required=False)
    mode = forms.CharField(max_length=50, required=False)
    productinfo = forms.CharField(required=False)
    firstname = forms.CharField(required=False)
    email = forms.CharField(required=False)
    udf1 = forms.CharField(required=False)
    udf2 = forms.CharField(required=False)
    udf3 = forms.CharField(required=False)
    udf4 = forms.CharField(required=False)
    udf5 = forms.CharField(required=False)
    error_Message = forms.CharField(required=False)


def clean_payload(form_class, data, label):
    """Validate a dict with a form, raising WebhookPayloadError on failure."""
    if not isinstance(data, dict):
        raise WebhookPayloadError(f"{label} is missing or malformed")
    form = form_class(data)
    if not form.is_valid():
        fields = ', '.join(sorted(form.errors.keys()))
        raise WebhookPayloadError(f"{label} is invalid: {fields}", details=form.errors.get_json_data())
    return form.cleaned_data
