# fees/forms.py

from django import forms

from fees.models import FeeHead, FeeCollection
from utils.forms import JSONListField, UUIDListField, DateRangeFormMixin


class FeeHeadForm(forms.Form):
    name = forms.CharField(max_length=100)
    description = forms.CharField(required=False)
    student_type = forms.ChoiceField(choices=FeeHead.STUDENT_TYPE_CHOICES, required=False)
    is_active = forms.BooleanField(required=False, initial=True)

    def clean_student_type(self):
        return self.cleaned_data.get('student_type') or 'BOTH'


class FeeTermForm(DateRangeFormMixin, forms.Form):
    name = forms.CharField(max_length=100)
    description = forms.CharField(required=False)
    start_date = forms.DateField()
    end_date = forms.DateField()
    due_date = forms.DateField()
    fee_head_ids = UUIDListField(required=False)
    order = forms.IntegerField(min_value=0, required=False)


class FeeTermReorderForm(forms.Form):
    fee_term_ids = UUIDListField()


class FeeTermMoveForm(forms.Form):
    direction = forms.ChoiceField(choices=[('up', 'Up'), ('down', 'Down')])


class SectionFeesForm(forms.Form):
    section_id = forms.UUIDField()
    fee_term_id = forms.UUIDField()
    fees = JSONListField(required_keys=('fee_head_id',), item_label='fee', required=False)


class CopySectionFeesForm(forms.Form):
    from_section_id = forms.UUIDField()
    to_section_id = forms.UUIDField()
    fee_term_id = forms.UUIDField()


class ManualCollectionForm(forms.Form):
    student_id = forms.UUIDField()
    fee_term_id = forms.UUIDField()
    payment_mode = forms.ChoiceField(choices=FeeCollection.PAYMENT_MODE_CHOICES)
    items = JSONListField(required_keys=('fee_head_id', 'amount'), item_label='item')
    payment_date = forms.DateTimeField(required=False)
    transaction_reference = forms.CharField(max_length=100, required=False)
    notes = forms.CharField(required=False)


class CollectionUpdateForm(forms.Form):
    payment_mode = forms.ChoiceField(choices=FeeCollection.PAYMENT_MODE_CHOICES, required=False)
    payment_date = forms.DateTimeField(required=False)
    transaction_reference = forms.CharField(max_length=100, required=False)
    notes = forms.CharField(required=False)
    items = JSONListField(required_keys=('fee_head_id', 'amount'), item_label='item', required=False)
