# utils/utils.py

import json
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from django.core.paginator import Paginator, EmptyPage, PageNotAnInteger

from utils.exceptions import ValidationError

TWO_PLACES = Decimal('0.01')


# =============================================================================
# CORE UTILITY HELPER FUNCTIONS
# =============================================================================

def paginate_queryset(request, queryset, per_page=20):
    paginator = Paginator(queryset, per_page)
    page = request.GET.get('page', 1)
    try:
        page_obj = paginator.page(page)
    except PageNotAnInteger:
        page_obj = paginator.page(1)
    except EmptyPage:
        page_obj = paginator.page(paginator.num_pages)
    return page_obj, paginator


def parse_filters(request, filter_keys):
    """
    Extract filter values from request.GET.
    filter_keys: list of filter names to extract
    Returns dict: {key: value or None}
    """
    filters = {}
    for key in filter_keys:
        value = request.GET.get(key, '').strip()
        filters[key] = value if value else None
    return filters


def parse_json_body(request):
    """Decode a JSON object body or raise ValidationError."""
    if not request.body:
        return {}
    try:
        data = json.loads(request.body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise ValidationError("Invalid JSON data.")
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object.")
    return data


# =============================================================================
# MONEY HELPERS
# =============================================================================

def quantize_money(value):
    return Decimal(value).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def to_decimal(value, field_name='amount'):
    """Parse a JSON number/string into a Decimal, never via float arithmetic."""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool) or value is None:
        raise ValidationError(f"{field_name} must be a number")
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field_name} must be a number")


def money_str(value):
    """Serialise a Decimal amount for JSON responses."""
    if value is None:
        return None
    return str(quantize_money(value))
