# utils/forms.py

"""
Shared form fields and validation helpers.

Views validate JSON bodies through plain Django forms; services then check
the domain rules (tenancy, state transitions).
"""

from django import forms
from django.core.exceptions import ValidationError
from decimal import Decimal, InvalidOperation
import re
import logging

logger = logging.getLogger(__name__)


# =============================================================================
# CUSTOM FORM FIELDS
# =============================================================================

class MoneyField(forms.DecimalField):
    """Custom field for money amounts with proper validation"""

    def __init__(self, *args, **kwargs):
        kwargs.setdefault('max_digits', 12)
        kwargs.setdefault('decimal_places', 2)
        kwargs.setdefault('min_value', Decimal('0.00'))
        super().__init__(*args, **kwargs)

    def clean(self, value):
        """Clean and validate money value"""
        if value in self.empty_values:
            return super().clean(value)

        # Remove currency symbols and commas
        if isinstance(value, str):
            value = re.sub(r'[^\d.-]', '', value)

        try:
            value = Decimal(str(value))
        except (ValueError, InvalidOperation):
            raise ValidationError('Enter a valid amount.')

        return super().clean(value)


class PhoneNumberField(forms.CharField):
    """Custom field for phone numbers with validation"""

    def __init__(self, *args, **kwargs):
        kwargs.setdefault('max_length', 20)
        super().__init__(*args, **kwargs)

    def clean(self, value):
        """Clean and validate phone number"""
        value = super().clean(value)

        if value in self.empty_values:
            return value

        # Remove spaces and special characters except +
        cleaned = re.sub(r'[^\d+]', '', value)

        if not re.match(r'^\+?\d{10,15}$', cleaned):
            raise ValidationError('Enter a valid phone number with at least 10 digits.')

        return cleaned


class JSONListField(forms.Field):
    """
    A list of objects from a JSON body. `required_keys` must be present and
    non-empty on every item.
    """

    def __init__(self, *args, required_keys=(), item_label='item', **kwargs):
        self.required_keys = tuple(required_keys)
        self.item_label = item_label
        super().__init__(*args, **kwargs)

    def to_python(self, value):
        if value in self.empty_values or value == []:
            return []
        if not isinstance(value, list):
            raise ValidationError('Enter a list.')
        for item in value:
            if not isinstance(item, dict):
                raise ValidationError(f'Each {self.item_label} must be an object.')
            missing = [key for key in self.required_keys if item.get(key) in (None, '')]
            if missing:
                raise ValidationError(f"Each {self.item_label} needs: {', '.join(missing)}.")
        return value

    def validate(self, value):
        if self.required and not value:
            raise ValidationError(f'At least one {self.item_label} is required.')


class UUIDListField(forms.Field):
    """A JSON list of ids, returned as strings."""

    def to_python(self, value):
        if value in self.empty_values or value == []:
            return []
        if not isinstance(value, list):
            raise ValidationError('Enter a list of ids.')
        field = forms.UUIDField()
        return [str(field.clean(item)) for item in value]

    def validate(self, value):
        if self.required and not value:
            raise ValidationError('At least one id is required.')


# =============================================================================
# FORM MIXINS
# =============================================================================

class DateRangeFormMixin:
    """start_date must come before end_date when both are given."""

    start_field = 'start_date'
    end_field = 'end_date'

    def clean(self):
        cleaned_data = super().clean()
        start = cleaned_data.get(self.start_field)
        end = cleaned_data.get(self.end_field)
        if start and end and end <= start:
            self.add_error(self.end_field, 'End date must be after start date.')
        return cleaned_data

