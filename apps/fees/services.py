# fees/services.py

"""
Fee Catalog and Collection Operations

- FeeHeadService / FeeTermService: catalog CRUD with deletion guards
- ClasswiseFeeService: per-section fee slabs, replaced wholesale
- FeeCollectionService: counter (manual) collections and the collection
  written when a gateway payment succeeds

Every mutating operation validates its input before the first write and
runs inside a single transaction.
"""

from decimal import Decimal
from django.db import transaction, IntegrityError
from django.db.models import Max
from django.utils import timezone
import logging

from fees.models import (
    FeeHead, FeeTerm, FeeTermFeeHead, ClasswiseFee, FeeCollection, FeeCollectionItem
)
from fees.utils import (
    resolve_fee_heads, validate_student_for_tenant
)
from utils.exceptions import (
    ValidationError, ConflictError, NotFoundError, full_clean_or_raise
)
from utils.utils import to_decimal, quantize_money

logger = logging.getLogger(__name__)

MAX_BULK_COLLECTIONS = 50
RECEIPT_RETRY_ATTEMPTS = 3


# =============================================================================
# FEE HEAD SERVICE
# =============================================================================

class FeeHeadService:

    EDITABLE_FIELDS = ['name', 'description', 'student_type', 'is_active']

    @staticmethod
    def _check_unique_name(name, branch, session, exclude_pk=None):
        qs = FeeHead.objects.for_tenant(branch, session).filter(name__iexact=name)
        if exclude_pk:
            qs = qs.exclude(pk=exclude_pk)
        if qs.exists():
            raise ConflictError("A fee head with this name already exists for this branch and session")

    @staticmethod
    @transaction.atomic
    def create_fee_head(branch, session, data):
        name = (data.get('name') or '').strip()
        if not name:
            raise ValidationError("Fee head name is required")
        FeeHeadService._check_unique_name(name, branch, session)

        fee_head = FeeHead(
            branch=branch,
            session=session,
            name=name,
            description=data.get('description') or '',
            student_type=data.get('student_type') or 'BOTH',
            is_system_defined=bool(data.get('is_system_defined', False)),
            is_active=data.get('is_active', True),
        )
        full_clean_or_raise(fee_head)
        fee_head.save()
        logger.info(f"Created fee head '{name}' for branch {branch.code} / {session.name}")
        return fee_head

    @staticmethod
    @transaction.atomic
    def update_fee_head(fee_head, data):
        if 'name' in data:
            name = (data.get('name') or '').strip()
            if not name:
                raise ValidationError("Fee head name is required")
            FeeHeadService._check_unique_name(name, fee_head.branch_id, fee_head.session_id, exclude_pk=fee_head.pk)
            data = dict(data, name=name)

        for field in FeeHeadService.EDITABLE_FIELDS:
            if field in data:
                setattr(fee_head, field, data[field])
        full_clean_or_raise(fee_head)
        fee_head.save()
        return fee_head

    @staticmethod
    @transaction.atomic
    def delete_fee_head(fee_head):
        """
        Delete a fee head that nothing references. System heads and heads in
        use by terms, slabs, collection items or open payment requests are
        never removed.
        """
        fee_head = FeeHead.objects.select_for_update().get(pk=fee_head.pk)
        if fee_head.is_system_defined:
            raise ConflictError("System defined fee heads cannot be deleted")

        usage = fee_head.get_usage()
        if usage['total'] > 0:
            raise ConflictError(
                f"Cannot delete fee head '{fee_head.name}'. It is used by "
                f"{usage['fee_terms']} fee term(s), {usage['classwise_fees']} classwise fee(s), "
                f"{usage['fee_collection_items']} collection item(s) "
                f"and {usage['payment_requests']} open payment request(s).",
                details={'usage': usage}
            )
        fee_head.delete()
        logger.info(f"Deleted fee head '{fee_head.name}'")


# =============================================================================
# FEE TERM SERVICE
# =============================================================================

class FeeTermService:

    EDITABLE_FIELDS = ['name', 'description', 'start_date', 'end_date', 'due_date', 'is_active']

    @staticmethod
    def _check_unique_name(name, branch, session, exclude_pk=None):
        qs = FeeTerm.objects.for_tenant(branch, session).filter(name__iexact=name)
        if exclude_pk:
            qs = qs.exclude(pk=exclude_pk)
        if qs.exists():
            raise ConflictError("A fee term with this name already exists for this branch and session")

    @staticmethod
    def _set_fee_heads(fee_term, fee_heads):
        FeeTermFeeHead.objects.filter(fee_term=fee_term).delete()
        FeeTermFeeHead.objects.bulk_create([
            FeeTermFeeHead(fee_term=fee_term, fee_head=head) for head in fee_heads
        ])

    @staticmethod
    @transaction.atomic
    def create_fee_term(branch, session, data):
        name = (data.get('name') or '').strip()
        if not name:
            raise ValidationError("Fee term name is required")
        FeeTermService._check_unique_name(name, branch, session)
        heads = resolve_fee_heads(data.get('fee_head_ids') or [], branch, session)

        order = data.get('order')
        if order is None:
            last = FeeTerm.objects.for_tenant(branch, session).aggregate(max_order=Max('order'))['max_order']
            order = 0 if last is None else last + 1

        fee_term = FeeTerm(
            branch=branch,
            session=session,
            name=name,
            description=data.get('description') or '',
            start_date=data.get('start_date'),
            end_date=data.get('end_date'),
            due_date=data.get('due_date'),
            order=order,
            is_active=data.get('is_active', True),
        )
        full_clean_or_raise(fee_term)
        fee_term.save()
        FeeTermService._set_fee_heads(fee_term, heads.values())

        logger.info(f"Created fee term '{name}' with {len(heads)} fee head(s)")
        return fee_term

    @staticmethod
    @transaction.atomic
    def update_fee_term(fee_term, data):
        if 'name' in data:
            name = (data.get('name') or '').strip()
            if not name:
                raise ValidationError("Fee term name is required")
            FeeTermService._check_unique_name(name, fee_term.branch_id, fee_term.session_id, exclude_pk=fee_term.pk)
            data = dict(data, name=name)

        heads = None
        if 'fee_head_ids' in data:
            heads = resolve_fee_heads(data.get('fee_head_ids') or [], fee_term.branch_id, fee_term.session_id)

        for field in FeeTermService.EDITABLE_FIELDS:
            if field in data:
                setattr(fee_term, field, data[field])
        full_clean_or_raise(fee_term)
        fee_term.save()

        if heads is not None:
            FeeTermService._set_fee_heads(fee_term, heads.values())
        return fee_term

    @staticmethod
    @transaction.atomic
    def delete_fee_term(fee_term):
        fee_term = FeeTerm.objects.select_for_update().get(pk=fee_term.pk)
        usage = fee_term.get_usage()
        if usage['total'] > 0:
            raise ConflictError(
                f"Cannot delete fee term '{fee_term.name}'. It is used by "
                f"{usage['classwise_fees']} classwise fee(s), {usage['fee_collections']} collection(s) "
                f"and {usage['payment_requests']} payment request(s).",
                details={'usage': usage}
            )
        FeeTermFeeHead.objects.filter(fee_term=fee_term).delete()
        fee_term.delete()
        logger.info(f"Deleted fee term '{fee_term.name}'")

    @staticmethod
    @transaction.atomic
    def reorder_fee_terms(branch, session, ordered_ids):
        """Set display order from a full list of the branch+session's term ids."""
        terms = {str(t.pk): t for t in FeeTerm.objects.select_for_update().for_tenant(branch, session)}
        ordered_ids = [str(pk) for pk in ordered_ids]
        if set(ordered_ids) != set(terms) or len(ordered_ids) != len(terms):
            raise ValidationError("Reorder must list every fee term of this branch and session exactly once")

        for index, pk in enumerate(ordered_ids):
            term = terms[pk]
            if term.order != index:
                term.order = index
                term.save(update_fields=['order'])
        return [terms[pk] for pk in ordered_ids]

    @staticmethod
    @transaction.atomic
    def move_fee_term(fee_term, direction):
        """Swap a term with its neighbour ('up' or 'down')."""
        if direction not in ('up', 'down'):
            raise ValidationError("Direction must be 'up' or 'down'")

        terms = list(
            FeeTerm.objects.select_for_update()
            .for_tenant(fee_term.branch_id, fee_term.session_id)
            .order_by('order', 'start_date', 'created_at')
        )
        index = next((i for i, t in enumerate(terms) if t.pk == fee_term.pk), None)
        if index is None:
            raise NotFoundError("Fee term not found")

        neighbour = index - 1 if direction == 'up' else index + 1
        if neighbour < 0 or neighbour >= len(terms):
            raise ValidationError(f"Fee term is already at the {'top' if direction == 'up' else 'bottom'}")

        terms[index], terms[neighbour] = terms[neighbour], terms[index]
        # normalise so gaps or duplicate order values never survive a move
        for position, term in enumerate(terms):
            if term.order != position:
                term.order = position
                term.save(update_fields=['order'])
        return terms


# =============================================================================
# CLASSWISE FEE SERVICE
# =============================================================================

class ClasswiseFeeService:

    @staticmethod
    def _validate_section(section, fee_term):
        if not section.belongs_to(fee_term.branch_id, fee_term.session_id):
            raise ValidationError("Section does not belong to the fee term's branch and session")

    @staticmethod
    def get_section_fees(section, fee_term=None):
        qs = ClasswiseFee.objects.filter(section=section).select_related('fee_head', 'fee_term')
        if fee_term is not None:
            qs = qs.filter(fee_term=fee_term)
        return list(qs)

    @staticmethod
    @transaction.atomic
    def set_section_fees(section, fee_term, fees):
        """
        Replace the whole fee slab of a section for one term.

        fees: [{'fee_head_id': ..., 'amount': ...}, ...]

        All entries are validated first; the old slab is then deleted and
        the new one inserted in the same transaction, so a bad entry leaves
        the previous slab untouched.
        """
        ClasswiseFeeService._validate_section(section, fee_term)
        if not fee_term.is_active:
            raise ValidationError("Fee term is not active")

        seen = set()
        entries = []
        for fee in fees:
            fee_head_id = str(fee.get('fee_head_id') or '')
            if not fee_head_id:
                raise ValidationError("Each fee entry needs a fee head")
            if fee_head_id in seen:
                raise ValidationError("A fee head can only appear once in a fee slab")
            seen.add(fee_head_id)
            amount = to_decimal(fee.get('amount'), 'amount')
            if amount < 0:
                raise ValidationError("Fee amount cannot be negative")
            entries.append((fee_head_id, quantize_money(amount)))

        heads = resolve_fee_heads(seen, fee_term.branch_id, fee_term.session_id)

        ClasswiseFee.objects.filter(section=section, fee_term=fee_term).delete()
        slab = ClasswiseFee.objects.bulk_create([
            ClasswiseFee(
                branch_id=fee_term.branch_id,
                session_id=fee_term.session_id,
                school_class_id=section.school_class_id,
                section=section,
                fee_term=fee_term,
                fee_head=heads[fee_head_id],
                amount=amount,
            )
            for fee_head_id, amount in entries
        ])

        logger.info(f"Set {len(slab)} classwise fee(s) for section {section} / {fee_term}")
        return slab

    @staticmethod
    @transaction.atomic
    def copy_section_fees(from_section, to_section, fee_term):
        """Duplicate one section's slab for a term onto another section."""
        if from_section.pk == to_section.pk:
            raise ValidationError("Source and target sections must be different")
        ClasswiseFeeService._validate_section(from_section, fee_term)
        ClasswiseFeeService._validate_section(to_section, fee_term)

        source = list(ClasswiseFee.objects.filter(section=from_section, fee_term=fee_term))
        if not source:
            raise NotFoundError("No fees found for the source section and fee term")

        fees = [{'fee_head_id': fee.fee_head_id, 'amount': fee.amount} for fee in source]
        return ClasswiseFeeService.set_section_fees(to_section, fee_term, fees)


# =============================================================================
# FEE COLLECTION SERVICE
# =============================================================================

class FeeCollectionService:

    @staticmethod
    def _build_items(items, branch, session, default_fee_term=None):
        """Validate item dicts and return (rows, total) ready to save."""
        if not items:
            raise ValidationError("At least one fee item is required")

        fee_term_ids = {str(item.get('fee_term_id') or getattr(default_fee_term, 'pk', '')) for item in items}
        fee_term_ids.discard('')
        terms = {str(t.pk): t for t in FeeTerm.objects.for_tenant(branch, session).filter(pk__in=fee_term_ids)}
        if len(terms) != len(fee_term_ids):
            raise ValidationError("Fee term does not belong to this branch and session")

        heads = resolve_fee_heads({str(item.get('fee_head_id')) for item in items}, branch, session)

        rows = []
        total = Decimal('0.00')
        for item in items:
            amount = quantize_money(to_decimal(item.get('amount'), 'amount'))
            if amount < Decimal('0.01'):
                raise ValidationError("Each item amount must be at least 0.01")
            term_id = str(item.get('fee_term_id') or getattr(default_fee_term, 'pk', ''))
            if not term_id:
                raise ValidationError("Each item needs a fee term")
            original = item.get('original_amount')
            rows.append({
                'fee_head': heads[str(item.get('fee_head_id'))],
                'fee_term': terms[term_id],
                'amount': amount,
                'original_amount': quantize_money(to_decimal(original, 'original_amount')) if original is not None else None,
                'concession_amount': quantize_money(to_decimal(item.get('concession_amount') or 0, 'concession_amount')),
            })
            total += amount
        return rows, total

    @staticmethod
    def _fill_concession_split(student, rows):
        """Record the catalog amount and concession for items that did not send one."""
        from fees.ledger import StudentLedgerService

        missing = [row for row in rows if row['original_amount'] is None]
        if not missing:
            return
        breakdown = StudentLedgerService.line_breakdowns(student)
        for row in missing:
            line = breakdown.get((str(row['fee_head'].pk), str(row['fee_term'].pk)))
            if line is not None:
                row['original_amount'] = line.original_amount
                row['concession_amount'] = line.concession_amount

    @staticmethod
    def _create_collection(fields, rows):
        """
        Write a collection and its items. The receipt number is assigned
        by the pre_save signal from the locked counter; a clash on the
        unique receipt column is retried inside a savepoint.
        """
        last_error = None
        for attempt in range(RECEIPT_RETRY_ATTEMPTS):
            try:
                with transaction.atomic():
                    collection = FeeCollection.objects.create(receipt_number='', **fields)
                    FeeCollectionItem.objects.bulk_create([
                        FeeCollectionItem(
                            fee_collection=collection,
                            **row
                        )
                        for row in rows
                    ])
                return collection
            except IntegrityError as e:
                gateway_transaction = fields.get('gateway_transaction')
                if gateway_transaction is not None:
                    existing = FeeCollection.objects.filter(gateway_transaction=gateway_transaction).first()
                    if existing is not None:
                        return existing
                last_error = e
                logger.warning(f"Receipt number clash on attempt {attempt + 1}: {e}")
        raise ConflictError("Could not allocate a unique receipt number, please retry") from last_error

    @staticmethod
    @transaction.atomic
    def record_manual_collection(student, fee_term, payment_mode, items, payment_date=None,
                                 transaction_reference='', notes=''):
        """
        Record a counter payment.

        items: [{'fee_head_id', 'amount', 'fee_term_id'?, 'original_amount'?,
                 'concession_amount'?}, ...]; fee_term_id defaults to fee_term.
        """
        branch, session = fee_term.branch, fee_term.session
        validate_student_for_tenant(student, branch, session)
        valid_modes = [mode for mode, _ in FeeCollection.PAYMENT_MODE_CHOICES]
        if payment_mode not in valid_modes:
            raise ValidationError(f"Payment mode must be one of: {', '.join(valid_modes)}")

        rows, total = FeeCollectionService._build_items(items, branch, session, default_fee_term=fee_term)
        FeeCollectionService._fill_concession_split(student, rows)

        collection = FeeCollectionService._create_collection({
            'student': student,
            'branch': branch,
            'session': session,
            'fee_term': fee_term,
            'total_amount': total,
            'paid_amount': total,
            'payment_mode': payment_mode,
            'payment_date': payment_date or timezone.now(),
            'transaction_reference': transaction_reference or '',
            'notes': notes or '',
        }, rows)

        logger.info(
            f"Recorded manual collection {collection.receipt_number} of {total} "
            f"for student {student.admission_number}"
        )
        return collection

    @staticmethod
    @transaction.atomic
    def record_bulk_collections(collections):
        """
        Record up to MAX_BULK_COLLECTIONS counter payments in one
        transaction; any invalid entry rolls back the whole batch.
        """
        if not collections:
            raise ValidationError("At least one collection is required")
        if len(collections) > MAX_BULK_COLLECTIONS:
            raise ValidationError(f"A bulk collection can contain at most {MAX_BULK_COLLECTIONS} entries")

        results = []
        for index, entry in enumerate(collections):
            try:
                results.append(FeeCollectionService.record_manual_collection(**entry))
            except ValidationError as e:
                raise ValidationError(f"Entry {index + 1}: {e.message}", details=e.details)
        logger.info(f"Recorded {len(results)} bulk collection(s)")
        return results

    @staticmethod
    @transaction.atomic
    def update_collection(collection, data):
        """
        Update a manual collection's payment details and optionally replace
        its items. Gateway collections mirror what the gateway settled and
        cannot be edited.
        """
        collection = FeeCollection.objects.select_for_update().get(pk=collection.pk)
        if collection.is_gateway_payment:
            raise ConflictError("Gateway payments cannot be edited")
        if collection.status != 'COMPLETED':
            raise ConflictError("Only completed collections can be edited")

        if 'payment_mode' in data:
            valid_modes = [mode for mode, _ in FeeCollection.PAYMENT_MODE_CHOICES]
            if data['payment_mode'] not in valid_modes:
                raise ValidationError(f"Payment mode must be one of: {', '.join(valid_modes)}")

        rows = None
        if data.get('items') is not None:
            rows, total = FeeCollectionService._build_items(
                data['items'], collection.branch_id, collection.session_id, default_fee_term=collection.fee_term
            )

        for field in ('payment_mode', 'payment_date', 'transaction_reference', 'notes'):
            if field in data and data[field] is not None:
                setattr(collection, field, data[field])

        if rows is not None:
            collection.items.all().delete()
            FeeCollectionItem.objects.bulk_create([
                FeeCollectionItem(
                    fee_collection=collection,
                    **row
                )
                for row in rows
            ])
            collection.total_amount = total
            collection.paid_amount = total

        collection.save()
        logger.info(f"Updated collection {collection.receipt_number}")
        return collection

    @staticmethod
    @transaction.atomic
    def delete_collection(collection):
        collection = FeeCollection.objects.select_for_update().get(pk=collection.pk)
        if collection.is_gateway_payment:
            raise ConflictError("Gateway payments cannot be deleted")
        receipt_number = collection.receipt_number
        collection.delete()
        logger.info(f"Deleted collection {receipt_number}")

    @staticmethod
    @transaction.atomic
    def record_gateway_collection(gateway_transaction):
        """
        Write the collection for a successful gateway transaction from its
        payment request's fee snapshot. Returns the existing collection when
        one was already written, so repeated webhook deliveries are no-ops.
        """
        existing = FeeCollection.objects.filter(gateway_transaction=gateway_transaction).first()
        if existing is not None:
            return existing

        payment_request = gateway_transaction.payment_request
        rows = []
        total = Decimal('0.00')
        heads = {str(h.pk): h for h in FeeHead.objects.filter(
            pk__in=[line['fee_head_id'] for line in payment_request.fees]
        )}
        missing = sorted({str(line['fee_head_id']) for line in payment_request.fees} - set(heads))
        if missing:
            raise ValidationError(
                "Fee heads on the payment request no longer exist",
                details={'fee_head_ids': missing}
            )
        for line in payment_request.fees:
            amount = quantize_money(Decimal(str(line['amount'])))
            rows.append({
                'fee_head': heads[str(line['fee_head_id'])],
                'fee_term': payment_request.fee_term,
                'amount': amount,
                'original_amount': quantize_money(Decimal(str(line.get('original_amount', line['amount'])))),
                'concession_amount': quantize_money(Decimal(str(line.get('concession_amount', '0')))),
            })
            total += amount

        collection = FeeCollectionService._create_collection({
            'student': payment_request.student,
            'branch': payment_request.branch,
            'session': payment_request.session,
            'fee_term': payment_request.fee_term,
            'total_amount': total,
            'paid_amount': total,
            'payment_mode': 'Online',
            'payment_date': gateway_transaction.paid_at or timezone.now(),
            'transaction_reference': gateway_transaction.gateway_payment_id or '',
            'notes': f"Online payment via {gateway_transaction.gateway}",
            'gateway': gateway_transaction.gateway,
            'gateway_transaction': gateway_transaction,
            'payment_request': payment_request,
        }, rows)
        return collection
