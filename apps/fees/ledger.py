# fees/ledger.py

"""
Student fee ledger.

Projects the fee catalog, the concession engine and the collection ledger
into one row per (fee head, fee term) for a student:

    effective   = max(0, original - concession)
    outstanding = max(0, effective - paid)

paid sums FeeCollectionItem amounts of COMPLETED collections regardless of
source. A gateway payment only counts once it has produced its own
FeeCollection, and it can only ever produce one, so manual and gateway
money are never added twice.
"""

from decimal import Decimal
from django.db.models import Sum, Q
from django.utils import timezone
import logging

from concessions.calculator import ConcessionCalculator
from fees.models import ClasswiseFee, FeeCollection, FeeCollectionItem
from utils.utils import quantize_money, money_str

logger = logging.getLogger(__name__)

ZERO = Decimal('0.00')

STATUS_PAID = 'Paid'
STATUS_PARTIAL = 'Partially Paid'
STATUS_OVERDUE = 'Overdue'
STATUS_PENDING = 'Pending'


def fee_status(paid_amount, outstanding_amount, due_date, today):
    if outstanding_amount <= ZERO:
        return STATUS_PAID
    if paid_amount > ZERO:
        return STATUS_PARTIAL
    if due_date and due_date < today:
        return STATUS_OVERDUE
    return STATUS_PENDING


class StudentLedgerService:

    @staticmethod
    def _slab(student, fee_term=None):
        if student.section_id is None:
            return []
        qs = ClasswiseFee.objects.filter(
            section_id=student.section_id,
            fee_head__is_active=True,
            fee_term__is_active=True,
        ).filter(
            Q(fee_head__student_type='BOTH') | Q(fee_head__student_type=student.student_type)
        ).select_related('fee_head', 'fee_term').order_by('fee_term__order', 'fee_term__start_date', 'fee_head__name')
        if fee_term is not None:
            qs = qs.filter(fee_term=fee_term)
        return list(qs)

    @staticmethod
    def paid_amounts(student, fee_term=None):
        """{(fee_head_id, fee_term_id): paid} over completed collections."""
        qs = FeeCollectionItem.objects.filter(
            fee_collection__student=student,
            fee_collection__status='COMPLETED',
        )
        if fee_term is not None:
            qs = qs.filter(fee_term=fee_term)
        rows = qs.values('fee_head_id', 'fee_term_id').annotate(paid=Sum('amount'))
        return {
            (str(row['fee_head_id']), str(row['fee_term_id'])): row['paid'] or ZERO
            for row in rows
        }

    @staticmethod
    def line_breakdowns(student, fee_term=None, on=None):
        """{(fee_head_id, fee_term_id): ConcessionResult} for the student's slab."""
        concessions = ConcessionCalculator.active_concessions(student, on=on)
        return {
            (str(fee.fee_head_id), str(fee.fee_term_id)): ConcessionCalculator.calculate(
                fee.amount, concessions, fee.fee_head_id, fee.fee_term_id
            )
            for fee in StudentLedgerService._slab(student, fee_term)
        }

    @staticmethod
    def get_student_fee_details(student, fee_term=None, today=None):
        """
        One row per slab entry for the student's section with original,
        concession, effective, paid and outstanding amounts and a status
        label.
        """
        today = today or timezone.localdate()
        slab = StudentLedgerService._slab(student, fee_term)
        if not slab:
            return []

        concessions = ConcessionCalculator.active_concessions(student)
        paid = StudentLedgerService.paid_amounts(student, fee_term)

        details = []
        for fee in slab:
            result = ConcessionCalculator.calculate(fee.amount, concessions, fee.fee_head_id, fee.fee_term_id)
            paid_amount = quantize_money(paid.get((str(fee.fee_head_id), str(fee.fee_term_id)), ZERO))
            outstanding = max(ZERO, result.final_amount - paid_amount)
            details.append({
                'id': f"{fee.section_id}-{fee.fee_term_id}-{fee.fee_head_id}",
                'fee_head_id': str(fee.fee_head_id),
                'fee_head_name': fee.fee_head.name,
                'fee_term_id': str(fee.fee_term_id),
                'fee_term_name': fee.fee_term.name,
                'due_date': fee.fee_term.due_date,
                'original_amount': result.original_amount,
                'concession_amount': result.concession_amount,
                'effective_amount': result.final_amount,
                'paid_amount': paid_amount,
                'outstanding_amount': outstanding,
                'status': fee_status(paid_amount, outstanding, fee.fee_term.due_date, today),
                'applied_concessions': result.applied,
            })
        return details

    @staticmethod
    def summarize(details):
        summary = {
            'original_amount': ZERO,
            'concession_amount': ZERO,
            'effective_amount': ZERO,
            'paid_amount': ZERO,
            'outstanding_amount': ZERO,
        }
        for row in details:
            for key in summary:
                summary[key] += row[key]
        return summary

    @staticmethod
    def get_unpaid_fee_terms(student, today=None):
        """
        Terms with something still outstanding, grouped with their lines.
        Evaluated at call time, which is what payment links show.
        """
        terms = {}
        for row in StudentLedgerService.get_student_fee_details(student, today=today):
            if row['outstanding_amount'] <= ZERO:
                continue
            term = terms.setdefault(row['fee_term_id'], {
                'fee_term_id': row['fee_term_id'],
                'fee_term_name': row['fee_term_name'],
                'due_date': row['due_date'],
                'outstanding_amount': ZERO,
                'lines': [],
            })
            term['outstanding_amount'] += row['outstanding_amount']
            term['lines'].append(row)
        return list(terms.values())


    @staticmethod
    def get_outstanding_fees(branch, session, section=None, fee_term=None, today=None):
        """
        Students of a branch+session with money still owed, largest first.
        Each entry carries the student's totals and the owing lines.
        """
        from students.models import Student

        students = Student.objects.filter(
            branch=branch,
            is_active=True,
            section__school_class__academic_session=session,
        ).select_related('section', 'section__school_class')
        if section is not None:
            students = students.filter(section=section)

        results = []
        for student in students:
            details = StudentLedgerService.get_student_fee_details(student, fee_term=fee_term, today=today)
            owing = [row for row in details if row['outstanding_amount'] > ZERO]
            if not owing:
                continue
            results.append({
                'student': student,
                'summary': StudentLedgerService.summarize(details),
                'lines': owing,
                'has_overdue': any(row['status'] == STATUS_OVERDUE for row in owing),
            })

        results.sort(key=lambda entry: entry['summary']['outstanding_amount'], reverse=True)
        logger.debug(f"{len(results)} students with outstanding fees in branch {branch.pk}")
        return results


# =============================================================================
# PAYMENT HISTORY
# =============================================================================

def payment_history(branch, session, filters=None):
    """
    Manual and gateway collections in one list. filters may hold student,
    fee_term, gateway ('MANUAL' for counter payments), payment_mode,
    status, date_from, date_to and search (receipt / admission number).
    """
    filters = filters or {}
    qs = FeeCollection.objects.for_tenant(branch, session).select_related(
        'student', 'fee_term', 'gateway_transaction'
    ).prefetch_related('items__fee_head')

    if filters.get('student'):
        qs = qs.filter(student_id=filters['student'])
    if filters.get('fee_term'):
        qs = qs.filter(fee_term_id=filters['fee_term'])
    gateway = filters.get('gateway')
    if gateway:
        if gateway.upper() == 'MANUAL':
            qs = qs.filter(gateway_transaction__isnull=True)
        else:
            qs = qs.filter(gateway=gateway.lower())
    if filters.get('payment_mode'):
        qs = qs.filter(payment_mode=filters['payment_mode'])
    if filters.get('status'):
        qs = qs.filter(status=filters['status'])
    if filters.get('date_from'):
        qs = qs.filter(payment_date__date__gte=filters['date_from'])
    if filters.get('date_to'):
        qs = qs.filter(payment_date__date__lte=filters['date_to'])
    if filters.get('search'):
        term = filters['search']
        qs = qs.filter(
            Q(receipt_number__icontains=term)
            | Q(student__admission_number__icontains=term)
            | Q(student__first_name__icontains=term)
            | Q(transaction_reference__icontains=term)
        )
    return qs.order_by('-payment_date')


# =============================================================================
# SERIALIZATION
# =============================================================================

def serialize_fee_detail(row):
    data = dict(row)
    for key in ('original_amount', 'concession_amount', 'effective_amount', 'paid_amount', 'outstanding_amount'):
        data[key] = money_str(row[key])
    data['due_date'] = row['due_date'].isoformat() if row['due_date'] else None
    data['applied_concessions'] = [
        dict(c, value=str(c['value']), amount=money_str(c['amount'])) for c in row['applied_concessions']
    ]
    return data


def serialize_collection(collection):
    return {
        'id': str(collection.pk),
        'receipt_number': collection.receipt_number,
        'student_id': str(collection.student_id),
        'student_name': collection.student.get_full_name(),
        'admission_number': collection.student.admission_number,
        'fee_term_id': str(collection.fee_term_id) if collection.fee_term_id else None,
        'total_amount': money_str(collection.total_amount),
        'paid_amount': money_str(collection.paid_amount),
        'payment_mode': collection.payment_mode,
        'payment_date': collection.payment_date.isoformat(),
        'transaction_reference': collection.transaction_reference,
        'status': collection.status,
        'source': collection.source,
        'gateway_transaction_id': str(collection.gateway_transaction_id) if collection.gateway_transaction_id else None,
        'items': [
            {
                'fee_head_id': str(item.fee_head_id),
                'fee_head_name': item.fee_head.name,
                'fee_term_id': str(item.fee_term_id),
                'amount': money_str(item.amount),
                'original_amount': money_str(item.original_amount),
                'concession_amount': money_str(item.concession_amount),
            }
            for item in collection.items.all()
        ],
    }
