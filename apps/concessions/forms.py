# concessions/forms.py

from django import forms

from concessions.models import ConcessionType, ConcessionApprovalSettings
from utils.forms import MoneyField, UUIDListField


STUDENT_TYPE_CHOICES = ConcessionType.STUDENT_TYPE_CHOICES + [('BOTH', 'Both')]


class ConcessionTypeForm(forms.Form):
    name = forms.CharField(max_length=100)
    description = forms.CharField(required=False)
    type = forms.ChoiceField(choices=ConcessionType.TYPE_CHOICES)
    value = MoneyField()
    max_value = MoneyField(required=False)
    fee_term_amounts = forms.JSONField(required=False)
    applied_fee_heads = UUIDListField(required=False)
    applied_fee_terms = UUIDListField(required=False)
    applicable_student_types = forms.MultipleChoiceField(choices=STUDENT_TYPE_CHOICES, required=False)
    eligibility_criteria = forms.CharField(required=False)
    required_documents = forms.JSONField(required=False)
    auto_approval = forms.BooleanField(required=False)
    is_active = forms.BooleanField(required=False)

    def clean_fee_term_amounts(self):
        value = self.cleaned_data.get('fee_term_amounts') or {}
        if not isinstance(value, dict):
            raise forms.ValidationError('Per-term amounts must map fee term ids to amounts.')
        return value

    def clean_required_documents(self):
        value = self.cleaned_data.get('required_documents') or []
        if not isinstance(value, list):
            raise forms.ValidationError('Enter a list of documents.')
        return value


class AssignConcessionForm(forms.Form):
    student_id = forms.UUIDField()
    concession_type_id = forms.UUIDField()
    custom_value = MoneyField(required=False)
    reason = forms.CharField(required=False)
    notes = forms.CharField(required=False)
    valid_from = forms.DateTimeField(required=False)
    valid_until = forms.DateTimeField(required=False)

    def clean(self):
        cleaned_data = super().clean()
        start = cleaned_data.get('valid_from')
        end = cleaned_data.get('valid_until')
        if start and end and end <= start:
            self.add_error('valid_until', 'Valid until must be after valid from.')
        return cleaned_data


class ApproveConcessionForm(forms.Form):
    notes = forms.CharField(required=False)


class ReasonForm(forms.Form):
    reason = forms.CharField()


class ApprovalSettingsForm(forms.Form):
    approval_type = forms.ChoiceField(choices=ConcessionApprovalSettings.APPROVAL_TYPE_CHOICES, required=False)
    authorization_type = forms.ChoiceField(
        choices=ConcessionApprovalSettings.AUTHORIZATION_TYPE_CHOICES, required=False
    )
    approval_roles = forms.JSONField(required=False)
    second_approval_roles = forms.JSONField(required=False)
    approval_individuals = forms.JSONField(required=False)
    second_approval_individuals = forms.JSONField(required=False)
    auto_approve_below = MoneyField(required=False)
    max_approval_amount = MoneyField(required=False)
    escalation_threshold = MoneyField(required=False)
    approval_timeout_days = forms.IntegerField(min_value=1, max_value=30, required=False)
    require_document_verification = forms.BooleanField(required=False)
    allow_self_approval = forms.BooleanField(required=False)
    notification_enabled = forms.BooleanField(required=False)
    require_reason = forms.BooleanField(required=False)

    LIST_FIELDS = ['approval_roles', 'second_approval_roles', 'approval_individuals', 'second_approval_individuals']

    def clean(self):
        cleaned_data = super().clean()
        for field in self.LIST_FIELDS:
            value = cleaned_data.get(field) or []
            if not isinstance(value, list):
                self.add_error(field, 'Enter a list.')
                continue
            cleaned_data[field] = [str(item).strip() for item in value if str(item).strip()]
        return cleaned_data
