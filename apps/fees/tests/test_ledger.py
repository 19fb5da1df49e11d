# fees/tests/test_ledger.py

from datetime import date
from decimal import Decimal

import pytest

from concessions.services import ConcessionTypeService, ConcessionService
from fees.ledger import StudentLedgerService, payment_history, STATUS_PAID, STATUS_PARTIAL, STATUS_OVERDUE, STATUS_PENDING
from fees.services import FeeCollectionService

pytestmark = pytest.mark.django_db

BEFORE_DUE = date(2025, 4, 1)
AFTER_DUE = date(2025, 5, 1)


def grant(student, branch, session, **type_data):
    type_data.setdefault('auto_approval', True)
    concession_type = ConcessionTypeService.create_concession_type(branch, session, type_data)
    return ConcessionService.assign_concession(student, concession_type, branch, session)


def by_head(details):
    return {row['fee_head_name']: row for row in details}


class TestStudentFeeDetails:

    def test_no_section_means_no_lines(self, student, slab):
        student.section = None
        student.save()
        assert StudentLedgerService.get_student_fee_details(student) == []

    def test_lines_without_concession(self, student, slab):
        rows = by_head(StudentLedgerService.get_student_fee_details(student, today=BEFORE_DUE))
        assert rows['Tuition']['original_amount'] == Decimal('10000.00')
        assert rows['Tuition']['effective_amount'] == Decimal('10000.00')
        assert rows['Tuition']['status'] == STATUS_PENDING

    def test_overdue_after_due_date(self, student, slab):
        rows = by_head(StudentLedgerService.get_student_fee_details(student, today=AFTER_DUE))
        assert rows['Transport']['status'] == STATUS_OVERDUE

    def test_concession_and_partial_payment(self, student, slab, fee_term, tuition, branch, session):
        grant(student, branch, session, name='Sibling', type='PERCENTAGE', value=Decimal('10'),
              applied_fee_heads=[tuition.pk])
        FeeCollectionService.record_manual_collection(
            student, fee_term, 'Cash', [{'fee_head_id': tuition.pk, 'amount': '4000'}]
        )

        rows = by_head(StudentLedgerService.get_student_fee_details(student, today=AFTER_DUE))
        tuition_row = rows['Tuition']
        assert tuition_row['concession_amount'] == Decimal('1000.00')
        assert tuition_row['effective_amount'] == Decimal('9000.00')
        assert tuition_row['paid_amount'] == Decimal('4000.00')
        assert tuition_row['outstanding_amount'] == Decimal('5000.00')
        assert tuition_row['status'] == STATUS_PARTIAL
        assert [c['name'] for c in tuition_row['applied_concessions']] == ['Sibling']
        # allow-list keeps transport at full price
        assert rows['Transport']['concession_amount'] == Decimal('0.00')

    def test_overpayment_never_goes_negative(self, student, slab, fee_term, transport):
        FeeCollectionService.record_manual_collection(
            student, fee_term, 'Cash', [{'fee_head_id': transport.pk, 'amount': '2500'}]
        )
        rows = by_head(StudentLedgerService.get_student_fee_details(student))
        assert rows['Transport']['outstanding_amount'] == Decimal('0.00')
        assert rows['Transport']['status'] == STATUS_PAID

    def test_cancelled_collection_does_not_count(self, student, slab, fee_term, transport):
        collection = FeeCollectionService.record_manual_collection(
            student, fee_term, 'Cash', [{'fee_head_id': transport.pk, 'amount': '2000'}]
        )
        collection.status = 'CANCELLED'
        collection.save()
        rows = by_head(StudentLedgerService.get_student_fee_details(student))
        assert rows['Transport']['paid_amount'] == Decimal('0.00')

    def test_head_for_new_admissions_hidden_from_old_students(self, student, slab, section, fee_term, branch, session):
        from fees.services import FeeHeadService, ClasswiseFeeService

        admission = FeeHeadService.create_fee_head(branch, session, {'name': 'Admission', 'student_type': 'NEW_ADMISSION'})
        fees = [{'fee_head_id': f.fee_head_id, 'amount': f.amount} for f in slab]
        fees.append({'fee_head_id': admission.pk, 'amount': '5000'})
        ClasswiseFeeService.set_section_fees(section, fee_term, fees)

        rows = by_head(StudentLedgerService.get_student_fee_details(student))
        assert 'Admission' not in rows


class TestLedgerSummaries:

    def test_summarize_adds_every_line(self, student, slab):
        details = StudentLedgerService.get_student_fee_details(student)
        summary = StudentLedgerService.summarize(details)
        assert summary['original_amount'] == Decimal('12000.00')
        assert summary['outstanding_amount'] == Decimal('12000.00')

    def test_unpaid_terms_drop_settled_lines(self, student, slab, fee_term, transport):
        FeeCollectionService.record_manual_collection(
            student, fee_term, 'Cash', [{'fee_head_id': transport.pk, 'amount': '2000'}]
        )
        terms = StudentLedgerService.get_unpaid_fee_terms(student)
        assert len(terms) == 1
        assert terms[0]['outstanding_amount'] == Decimal('10000.00')
        assert [line['fee_head_name'] for line in terms[0]['lines']] == ['Tuition']

    def test_outstanding_fees_sorted_largest_first(self, student, slab, fee_term, tuition, branch, session, section):
        from students.models import Student

        other = Student.objects.create(admission_number='PS-0002', first_name='Meera', branch=branch, section=section)
        FeeCollectionService.record_manual_collection(
            student, fee_term, 'Cash', [{'fee_head_id': tuition.pk, 'amount': '6000'}]
        )
        results = StudentLedgerService.get_outstanding_fees(branch, session, today=AFTER_DUE)
        assert [entry['student'].pk for entry in results] == [other.pk, student.pk]
        assert results[1]['summary']['outstanding_amount'] == Decimal('6000.00')
        assert all(entry['has_overdue'] for entry in results)


class TestPaymentHistory:

    def test_manual_filter_and_search(self, student, slab, fee_term, tuition, branch, session):
        collection = FeeCollectionService.record_manual_collection(
            student, fee_term, 'Cash', [{'fee_head_id': tuition.pk, 'amount': '100'}]
        )
        assert list(payment_history(branch, session, {'gateway': 'MANUAL'})) == [collection]
        assert list(payment_history(branch, session, {'gateway': 'razorpay'})) == []
        assert list(payment_history(branch, session, {'search': 'PS-0001'})) == [collection]
