# concessions/tests/test_calculator.py

from datetime import timedelta
from decimal import Decimal

import pytest
from django.utils import timezone

from concessions.calculator import ConcessionCalculator
from concessions.models import ConcessionType, StudentConcession

pytestmark = pytest.mark.django_db


@pytest.fixture
def make_concession(student, branch, session):
    def make(name, type, value, custom_value=None, heads=(), terms=(), fee_term_amounts=None, **extra):
        concession_type = ConcessionType.objects.create(
            branch=branch, session=session, name=name, type=type, value=Decimal(value),
            fee_term_amounts=fee_term_amounts or {},
        )
        concession_type.applied_fee_heads.set(heads)
        concession_type.applied_fee_terms.set(terms)
        extra.setdefault('status', 'APPROVED')
        return StudentConcession.objects.create(
            student=student, concession_type=concession_type, branch=branch, session=session,
            custom_value=Decimal(custom_value) if custom_value is not None else None, **extra
        )
    return make


def calculate(student, original, fee_head, fee_term):
    concessions = ConcessionCalculator.active_concessions(student)
    return ConcessionCalculator.calculate(Decimal(original), concessions, fee_head.pk, fee_term.pk)


class TestConcessionCalculator:

    def test_percentage(self, make_concession, student, tuition, fee_term):
        make_concession('Sibling', 'PERCENTAGE', '10')
        result = calculate(student, '10000', tuition, fee_term)
        assert result.concession_amount == Decimal('1000.00')
        assert result.final_amount == Decimal('9000.00')

    def test_fixed_is_capped_at_line_amount(self, make_concession, student, tuition, fee_term):
        make_concession('Scholarship', 'FIXED', '15000')
        result = calculate(student, '10000', tuition, fee_term)
        assert result.concession_amount == Decimal('10000.00')
        assert result.final_amount == Decimal('0.00')

    def test_stacked_concessions_add_against_original(self, make_concession, student, tuition, fee_term):
        make_concession('Merit', 'PERCENTAGE', '60')
        make_concession('Staff ward', 'PERCENTAGE', '60')
        result = calculate(student, '1000', tuition, fee_term)
        assert result.concession_amount == Decimal('1000.00')
        assert len(result.applied) == 2

    def test_fixed_precedence_custom_then_term_then_flat(self, make_concession, student, tuition, fee_term):
        make_concession('Per term', 'FIXED', '500', fee_term_amounts={str(fee_term.pk): '750'})
        assert calculate(student, '10000', tuition, fee_term).concession_amount == Decimal('750.00')

        StudentConcession.objects.update(custom_value=Decimal('300'))
        assert calculate(student, '10000', tuition, fee_term).concession_amount == Decimal('300.00')

    def test_allow_lists_limit_heads(self, make_concession, student, tuition, transport, fee_term):
        make_concession('Tuition only', 'PERCENTAGE', '50', heads=[tuition])
        assert calculate(student, '2000', transport, fee_term).concession_amount == Decimal('0.00')
        assert calculate(student, '2000', tuition, fee_term).concession_amount == Decimal('1000.00')

    def test_pending_and_expired_concessions_ignored(self, make_concession, student, tuition, fee_term):
        make_concession('Pending', 'PERCENTAGE', '10', status='PENDING')
        make_concession('Lapsed', 'PERCENTAGE', '10', valid_until=timezone.now() - timedelta(seconds=1),
                        valid_from=timezone.now() - timedelta(days=30))
        make_concession('Future', 'PERCENTAGE', '10', valid_from=timezone.now() + timedelta(days=1))
        result = calculate(student, '1000', tuition, fee_term)
        assert result.concession_amount == Decimal('0.00')
        assert result.applied == []

    def test_inactive_type_ignored(self, make_concession, student, tuition, fee_term):
        concession = make_concession('Retired', 'PERCENTAGE', '10')
        ConcessionType.objects.filter(pk=concession.concession_type_id).update(is_active=False)
        assert calculate(student, '1000', tuition, fee_term).concession_amount == Decimal('0.00')

    def test_percentage_rounds_half_up(self, make_concession, student, tuition, fee_term):
        make_concession('Odd', 'PERCENTAGE', '12.5')
        result = calculate(student, '100.10', tuition, fee_term)
        assert result.concession_amount == Decimal('12.51')
