# fees/utils.py

"""
Fee Management Utility Functions

Contains:
- Receipt number generation
- Fee line validation helpers shared by manual and gateway collections
"""

from django.conf import settings
from django.db import transaction
from django.db.models.functions import Length
import logging

from utils.exceptions import ValidationError

logger = logging.getLogger(__name__)

RECEIPT_COUNTER_KEY = 'FIN'


# =============================================================================
# REFERENCE NUMBER GENERATION
# =============================================================================

def format_receipt_number(branch, session, number):
    prefix = getattr(settings, 'FEE_RECEIPT_PREFIX', 'RCP')
    return f"{prefix}{branch.code}/{RECEIPT_COUNTER_KEY}/{session.name}/{number:06d}"


def highest_issued_number(branch, session):
    """Largest numeric suffix among receipts already written for the branch and session."""
    from fees.models import FeeCollection

    stem = format_receipt_number(branch, session, 0)[:-6]
    latest = (
        FeeCollection.objects.filter(receipt_number__startswith=stem)
        .annotate(receipt_length=Length('receipt_number'))
        .order_by('-receipt_length', '-receipt_number')
        .values_list('receipt_number', flat=True)
        .first()
    )
    suffix = latest[len(stem):] if latest else ''
    return int(suffix) if suffix.isdigit() else 0


def generate_receipt_number(branch, session):
    """
    Reserve the next receipt number for a branch and session.

    The counter row is locked for the rest of the enclosing transaction, so
    concurrent collections in the same branch queue behind each other
    instead of reading the same count. Call this inside the atomic block
    that writes the FeeCollection so a rollback also releases the number.
    Receipts written outside the counter (imported history, a reset
    counter) are skipped over.

    Format: RCPPS/FIN/2025-26/000001
    """
    from fees.models import ReceiptCounter

    with transaction.atomic():
        counter, created = ReceiptCounter.objects.select_for_update().get_or_create(
            branch=branch,
            session=session,
            prefix=RECEIPT_COUNTER_KEY,
            defaults={'last_number': 0},
        )
        counter.last_number = max(counter.last_number, highest_issued_number(branch, session)) + 1
        counter.save(update_fields=['last_number'])

    receipt_number = format_receipt_number(branch, session, counter.last_number)
    logger.debug(f"Reserved receipt number {receipt_number}")
    return receipt_number


# =============================================================================
# VALIDATION UTILITIES
# =============================================================================

def resolve_fee_heads(fee_head_ids, branch, session):
    """
    Load fee heads by id and insist every one is active and belongs to the
    branch and session. Returns {id_str: FeeHead}.
    """
    from fees.models import FeeHead

    wanted = {str(pk) for pk in fee_head_ids}
    if not wanted:
        return {}

    try:
        heads = FeeHead.objects.for_tenant(branch, session).active().filter(pk__in=wanted)
        found = {str(head.pk): head for head in heads}
    except (ValueError, TypeError):
        raise ValidationError("Invalid fee head id")

    missing = wanted - set(found)
    if missing:
        raise ValidationError(
            "One or more fee heads are not active or do not belong to this branch and session",
            details={'fee_head_ids': sorted(missing)}
        )
    return found


def validate_student_for_tenant(student, branch, session, require_enrollment=True):
    if student.branch_id != getattr(branch, 'pk', branch):
        raise ValidationError("Student does not belong to this branch")
    if not student.is_active:
        raise ValidationError("Student is not active")
    if require_enrollment and not student.is_enrolled_in(session):
        raise ValidationError("Student is not enrolled in this academic session")


def validate_fee_term_for_tenant(fee_term, branch, session):
    if fee_term.branch_id != getattr(branch, 'pk', branch) or fee_term.session_id != getattr(session, 'pk', session):
        raise ValidationError("Fee term does not belong to this branch and session")
