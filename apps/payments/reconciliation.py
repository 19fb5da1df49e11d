# payments/reconciliation.py

"""
Reconciliation between gateway money and the collection ledger.

A successful gateway transaction must end up as exactly one FeeCollection
for the same amount. Anything else becomes a ReconciliationException for
an operator:

    MISSING_COLLECTION  SUCCESS transaction with no collection (crash
                        between capture and the local write)
    AMOUNT_MISMATCH     gateway settled a different amount than requested
    LATE_PAYMENT        capture arrived after the transaction was closed
    ORPHAN_PAYMENT      capture for an order we have no transaction for

The webhook processor opens the last three as it sees them; scan() finds
the first two after the fact.
"""

from decimal import Decimal
from django.db import transaction, IntegrityError
from django.db.models import F
from django.utils import timezone
import logging

from payments.models import PaymentGatewayTransaction, ReconciliationException, SUCCESS
from utils.exceptions import ValidationError, ConflictError
from utils.utils import money_str

logger = logging.getLogger(__name__)

COLLECTABLE_KINDS = ('MISSING_COLLECTION', 'LATE_PAYMENT')


class ReconciliationService:

    @staticmethod
    def open_exception(kind, gateway, gateway_transaction=None, reference='', detail='',
                       expected_amount=None, received_amount=None):
        """
        Open an exception unless an open one already exists for the same
        transaction (or, without a transaction, the same gateway reference)
        and kind. Returns (exception, created).
        """
        lookup = {'kind': kind, 'status': 'OPEN'}
        if gateway_transaction is not None:
            lookup['gateway_transaction'] = gateway_transaction
        else:
            lookup.update(gateway_transaction__isnull=True, gateway=gateway, gateway_reference=reference)

        existing = ReconciliationException.objects.filter(**lookup).first()
        if existing is not None:
            return existing, False

        try:
            with transaction.atomic():
                exception = ReconciliationException.objects.create(
                    kind=kind,
                    gateway=gateway,
                    gateway_transaction=gateway_transaction,
                    gateway_reference=reference or '',
                    detail=detail,
                    expected_amount=expected_amount,
                    received_amount=received_amount,
                )
        except IntegrityError:
            # a concurrent writer opened the same one
            return ReconciliationException.objects.get(**lookup), False

        logger.warning(
            f"Opened {kind} reconciliation exception "
            f"for {gateway_transaction.gateway_transaction_id if gateway_transaction else reference}: {detail}"
        )
        return exception, True

    @staticmethod
    def _resolved_transaction_ids(kinds):
        return ReconciliationException.objects.filter(
            kind__in=kinds,
            gateway_transaction__isnull=False,
        ).exclude(status='OPEN').values('gateway_transaction_id')

    @staticmethod
    def scan(branch=None, session=None):
        """
        Look for successful transactions whose money is not, or not
        correctly, in the ledger. Transactions an operator already resolved
        are not reopened. Returns counts per kind of newly opened rows.
        """
        base = PaymentGatewayTransaction.objects.filter(status=SUCCESS).select_related('payment_request')
        if branch is not None:
            base = base.filter(payment_request__branch=branch)
        if session is not None:
            base = base.filter(payment_request__session=session)

        opened = {'MISSING_COLLECTION': 0, 'AMOUNT_MISMATCH': 0}

        # AMOUNT_MISMATCH rows explain their own missing collection
        missing = base.filter(fee_collection__isnull=True).exclude(
            pk__in=ReconciliationService._resolved_transaction_ids(['MISSING_COLLECTION'])
        ).exclude(
            reconciliation_exceptions__kind='AMOUNT_MISMATCH'
        )
        for txn in missing:
            _, created = ReconciliationService.open_exception(
                'MISSING_COLLECTION', txn.gateway,
                gateway_transaction=txn,
                detail=f"Transaction {txn.gateway_transaction_id} succeeded but has no fee collection",
                expected_amount=txn.amount,
                received_amount=txn.amount,
            )
            opened['MISSING_COLLECTION'] += int(created)

        mismatched = base.filter(fee_collection__isnull=False).exclude(
            fee_collection__total_amount=F('amount')
        ).exclude(
            pk__in=ReconciliationService._resolved_transaction_ids(['AMOUNT_MISMATCH'])
        ).select_related('fee_collection')
        for txn in mismatched:
            collection = txn.fee_collection
            _, created = ReconciliationService.open_exception(
                'AMOUNT_MISMATCH', txn.gateway,
                gateway_transaction=txn,
                detail=(
                    f"Collection {collection.receipt_number} totals {money_str(collection.total_amount)} "
                    f"but transaction {txn.gateway_transaction_id} is for {money_str(txn.amount)}"
                ),
                expected_amount=collection.total_amount,
                received_amount=txn.amount,
            )
            opened['AMOUNT_MISMATCH'] += int(created)

        logger.info(
            f"Reconciliation scan opened {opened['MISSING_COLLECTION']} missing-collection and "
            f"{opened['AMOUNT_MISMATCH']} amount-mismatch exception(s)"
        )
        return opened

    @staticmethod
    @transaction.atomic
    def resolve_exception(exception, resolved_by, note, create_collection=False):
        """
        Close an exception with a note. With create_collection the missing
        FeeCollection is written from the payment request snapshot first;
        doing so twice returns the same collection.
        """
        from fees.services import FeeCollectionService

        exception = ReconciliationException.objects.select_for_update().get(pk=exception.pk)
        if exception.status != 'OPEN':
            raise ConflictError("This reconciliation exception is already resolved")
        note = (note or '').strip()
        if not note:
            raise ValidationError("A resolution note is required")

        collection = None
        if create_collection:
            if exception.kind not in COLLECTABLE_KINDS:
                raise ValidationError(
                    f"A collection can only be created for: {', '.join(COLLECTABLE_KINDS)}"
                )
            txn = exception.gateway_transaction
            if txn is None:
                raise ValidationError("This exception has no gateway transaction to collect")
            received = exception.received_amount
            if received is not None and Decimal(received) != txn.amount:
                raise ValidationError("Received amount differs from the transaction amount; record it manually")
            collection = FeeCollectionService.record_gateway_collection(txn)

        exception.status = 'RESOLVED'
        exception.resolved_by = str(resolved_by or '')
        exception.resolved_at = timezone.now()
        exception.resolution_note = note
        exception.save()

        logger.info(
            f"Resolved {exception.kind} exception {exception.pk}"
            + (f" with collection {collection.receipt_number}" if collection else "")
        )
        return exception, collection

    @staticmethod
    def list_exceptions(status='OPEN', kind=None, gateway=None, branch=None):
        qs = ReconciliationException.objects.select_related(
            'gateway_transaction', 'gateway_transaction__payment_request'
        )
        if status:
            qs = qs.filter(status=status)
        if kind:
            qs = qs.filter(kind=kind)
        if gateway:
            qs = qs.filter(gateway=gateway)
        if branch is not None:
            qs = qs.filter(gateway_transaction__payment_request__branch=branch)
        return qs.order_by('-created_at')


def serialize_exception(exception):
    txn = exception.gateway_transaction
    return {
        'id': str(exception.pk),
        'kind': exception.kind,
        'kind_display': exception.get_kind_display(),
        'status': exception.status,
        'gateway': exception.gateway,
        'gateway_reference': exception.gateway_reference,
        'gateway_transaction_id': str(txn.pk) if txn else None,
        'transaction_reference': txn.gateway_transaction_id if txn else None,
        'payment_request_id': str(txn.payment_request_id) if txn else None,
        'detail': exception.detail,
        'expected_amount': money_str(exception.expected_amount),
        'received_amount': money_str(exception.received_amount),
        'resolved_by': exception.resolved_by,
        'resolved_at': exception.resolved_at.isoformat() if exception.resolved_at else None,
        'resolution_note': exception.resolution_note,
        'created_at': exception.created_at.isoformat(),
    }
