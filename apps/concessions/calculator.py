# concessions/calculator.py

"""
Concession calculation.

Given a student's approved, currently valid concessions and one fee line
(fee head + fee term + original amount), work out how much to take off.

Stacking policy: every applicable concession is computed independently
against the original amount, the results are added together, and only the
total is capped at the original amount. Two 60% concessions therefore
waive the whole line rather than compounding to 84%.
"""

from decimal import Decimal
from django.utils import timezone

from utils.utils import quantize_money

ZERO = Decimal('0.00')


class ConcessionResult:
    """Outcome for one fee line."""

    def __init__(self, original_amount, concession_amount, applied):
        self.original_amount = original_amount
        self.concession_amount = concession_amount
        self.final_amount = max(ZERO, original_amount - concession_amount)
        self.applied = applied

    def __repr__(self):
        return (
            f"ConcessionResult(original={self.original_amount}, "
            f"concession={self.concession_amount}, final={self.final_amount})"
        )


class ConcessionCalculator:

    @staticmethod
    def active_concessions(student, on=None):
        """
        Approved concessions of a student valid at `on` (default now), with
        their types and allow-lists prefetched for repeated calculation.
        """
        from concessions.models import StudentConcession
        from django.db.models import Q

        on = on or timezone.now()
        return list(
            StudentConcession.objects.filter(
                student=student,
                status='APPROVED',
                concession_type__is_active=True,
                valid_from__lte=on,
            ).filter(
                Q(valid_until__isnull=True) | Q(valid_until__gte=on)
            ).select_related('concession_type').prefetch_related(
                'concession_type__applied_fee_heads',
                'concession_type__applied_fee_terms',
            )
        )

    @staticmethod
    def is_applicable(concession, fee_head_id, fee_term_id):
        concession_type = concession.concession_type
        head_ids = {str(h.pk) for h in concession_type.applied_fee_heads.all()}
        term_ids = {str(t.pk) for t in concession_type.applied_fee_terms.all()}
        if head_ids and str(fee_head_id) not in head_ids:
            return False
        if term_ids and str(fee_term_id) not in term_ids:
            return False
        return True

    @staticmethod
    def raw_amount(concession, original_amount, fee_term_id):
        """Concession amount for one concession before stacking."""
        concession_type = concession.concession_type

        if concession_type.type == 'PERCENTAGE':
            value = concession.effective_value
            return quantize_money(original_amount * value / Decimal('100')), value

        # FIXED: a student-specific override wins, then the per-term amount,
        # then the flat value
        if concession.custom_value is not None:
            value = concession.custom_value
        else:
            term_amounts = concession_type.fee_term_amounts or {}
            if str(fee_term_id) in term_amounts:
                value = Decimal(str(term_amounts[str(fee_term_id)]))
            else:
                value = concession_type.value
        return quantize_money(min(value, original_amount)), value

    @classmethod
    def calculate(cls, original_amount, concessions, fee_head_id, fee_term_id):
        original_amount = quantize_money(original_amount)
        applied = []
        total = ZERO

        for concession in concessions:
            if not cls.is_applicable(concession, fee_head_id, fee_term_id):
                continue
            amount, value = cls.raw_amount(concession, original_amount, fee_term_id)
            total += amount
            applied.append({
                'id': str(concession.pk),
                'name': concession.concession_type.name,
                'type': concession.concession_type.type,
                'value': value,
                'amount': amount,
                'reason': concession.reason,
            })

        total = min(total, original_amount)
        return ConcessionResult(original_amount, total, applied)
