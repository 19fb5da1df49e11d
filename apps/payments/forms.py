# payments/forms.py

from django import forms
from django.conf import settings

from payments.models import GATEWAY_CHOICES
from payments.services import MIN_EXPIRY_HOURS, MAX_EXPIRY_HOURS
from utils.forms import JSONListField, PhoneNumberField


class PaymentRequestForm(forms.Form):
    student_id = forms.UUIDField()
    fee_term_id = forms.UUIDField()
    fees = JSONListField(required_keys=('fee_head_id', 'amount'), item_label='fee')
    buyer_name = forms.CharField(max_length=150)
    buyer_email = forms.EmailField(required=False)
    buyer_phone = PhoneNumberField(min_length=10)
    purpose = forms.CharField(max_length=200, required=False)
    description = forms.CharField(required=False)
    expiry_hours = forms.IntegerField(min_value=MIN_EXPIRY_HOURS, max_value=MAX_EXPIRY_HOURS, required=False)
    currency = forms.CharField(min_length=3, max_length=3, required=False)
    gateway = forms.ChoiceField(choices=GATEWAY_CHOICES, required=False)

    def clean_expiry_hours(self):
        value = self.cleaned_data.get('expiry_hours')
        return settings.PAYMENT_DEFAULT_EXPIRY_HOURS if value is None else value


class CancelPaymentRequestForm(forms.Form):
    reason = forms.CharField(max_length=255, required=False)


class VerifyCheckoutForm(forms.Form):
    order_id = forms.CharField(max_length=100)
    payment_id = forms.CharField(max_length=100)
    signature = forms.CharField(max_length=256)
    gateway = forms.ChoiceField(choices=GATEWAY_CHOICES, required=False)


class PaymentLinkForm(forms.Form):
    student_id = forms.UUIDField()
    expiry_days = forms.IntegerField(min_value=1, max_value=90, required=False)


class ResolveExceptionForm(forms.Form):
    note = forms.CharField()
    create_collection = forms.BooleanField(required=False)
