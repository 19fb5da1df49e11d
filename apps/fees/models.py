# fees/models.py

"""
Fee catalog and the fee collection ledger.

Catalog: FeeHead, FeeTerm (+ FeeTermFeeHead), ClasswiseFee.
Ledger: FeeCollection + FeeCollectionItem, the single record of money
received whether it came through a payment gateway or a counter.
"""

from decimal import Decimal
from django.db import models
from django.core.exceptions import ValidationError
from django.core.validators import MinValueValidator
from django.utils import timezone
from utils.models import BaseModel
import logging

logger = logging.getLogger(__name__)


# =============================================================================
# FEE CATALOG
# =============================================================================

class FeeHead(BaseModel):
    """A named category of charge, e.g. Tuition or Transport."""

    STUDENT_TYPE_CHOICES = [
        ('NEW_ADMISSION', 'New Admission'),
        ('OLD_STUDENT', 'Old Student'),
        ('BOTH', 'Both'),
    ]

    branch = models.ForeignKey(
        'academics.Branch',
        verbose_name="Branch",
        on_delete=models.PROTECT,
        related_name='fee_heads'
    )
    session = models.ForeignKey(
        'academics.AcademicSession',
        verbose_name="Academic Session",
        on_delete=models.PROTECT,
        related_name='fee_heads'
    )
    name = models.CharField("Fee Head Name", max_length=100)
    description = models.TextField("Description", blank=True)
    student_type = models.CharField(
        "Applicable Student Type",
        max_length=20,
        choices=STUDENT_TYPE_CHOICES,
        default='BOTH'
    )
    is_system_defined = models.BooleanField(
        "System Defined",
        default=False,
        help_text="System defined fee heads cannot be deleted"
    )
    is_active = models.BooleanField("Is Active", default=True)

    class Meta:
        verbose_name = "Fee Head"
        verbose_name_plural = "Fee Heads"
        ordering = ['name']
        constraints = [
            models.UniqueConstraint(
                fields=['branch', 'session', 'name'],
                name='unique_fee_head_name_per_branch_session'
            ),
        ]

    def __str__(self):
        return self.name

    def open_payment_request_count(self):
        """Open payment requests whose fee snapshot names this head."""
        from payments.models import PaymentRequest, OPEN_STATUSES

        head_id = str(self.pk)
        snapshots = PaymentRequest.objects.filter(
            branch_id=self.branch_id, session_id=self.session_id, status__in=OPEN_STATUSES
        ).values_list('fees', flat=True)
        return sum(
            1 for fees in snapshots
            if any(str(line.get('fee_head_id')) == head_id for line in fees or [])
        )

    def get_usage(self):
        """Counts of rows that reference this head; any non-zero blocks deletion."""
        usage = {
            'fee_terms': self.term_links.count(),
            'classwise_fees': self.classwise_fees.count(),
            'fee_collection_items': self.collection_items.count(),
            'payment_requests': self.open_payment_request_count(),
        }
        usage['total'] = sum(usage.values())
        return usage


class FeeTerm(BaseModel):
    """
    A billing period. The due date may fall before the start date: schools
    routinely bill ahead of the term.
    """

    branch = models.ForeignKey(
        'academics.Branch',
        verbose_name="Branch",
        on_delete=models.PROTECT,
        related_name='fee_terms'
    )
    session = models.ForeignKey(
        'academics.AcademicSession',
        verbose_name="Academic Session",
        on_delete=models.PROTECT,
        related_name='fee_terms'
    )
    name = models.CharField("Term Name", max_length=100)
    description = models.TextField("Description", blank=True)
    start_date = models.DateField("Start Date")
    end_date = models.DateField("End Date")
    due_date = models.DateField("Due Date")
    order = models.PositiveIntegerField("Display Order", default=0, db_index=True)
    is_active = models.BooleanField("Is Active", default=True)

    fee_heads = models.ManyToManyField(
        FeeHead,
        through='FeeTermFeeHead',
        related_name='fee_terms',
        blank=True
    )

    class Meta:
        verbose_name = "Fee Term"
        verbose_name_plural = "Fee Terms"
        ordering = ['order', 'start_date']
        constraints = [
            models.UniqueConstraint(
                fields=['branch', 'session', 'name'],
                name='unique_fee_term_name_per_branch_session'
            ),
        ]

    def __str__(self):
        return self.name

    def clean(self):
        super().clean()
        if self.start_date and self.end_date and self.end_date <= self.start_date:
            raise ValidationError({'end_date': 'End date must be after start date.'})

    def get_usage(self):
        usage = {
            'classwise_fees': self.classwise_fees.count(),
            'fee_collections': self.collection_items.values('fee_collection').distinct().count(),
            'payment_requests': self.payment_requests.count(),
        }
        usage['total'] = sum(usage.values())
        return usage


class FeeTermFeeHead(models.Model):
    """Through table linking terms to the heads billed in them."""

    fee_term = models.ForeignKey(FeeTerm, on_delete=models.CASCADE, related_name='head_links')
    fee_head = models.ForeignKey(FeeHead, on_delete=models.PROTECT, related_name='term_links')

    class Meta:
        verbose_name = "Fee Term Fee Head"
        constraints = [
            models.UniqueConstraint(fields=['fee_term', 'fee_head'], name='unique_fee_head_per_term'),
        ]

    def __str__(self):
        return f"{self.fee_term} - {self.fee_head}"


class ClasswiseFee(BaseModel):
    """Price of one fee head for one section in one term."""

    branch = models.ForeignKey(
        'academics.Branch',
        verbose_name="Branch",
        on_delete=models.PROTECT,
        related_name='classwise_fees'
    )
    session = models.ForeignKey(
        'academics.AcademicSession',
        verbose_name="Academic Session",
        on_delete=models.PROTECT,
        related_name='classwise_fees'
    )
    school_class = models.ForeignKey(
        'academics.Class',
        verbose_name="Class",
        on_delete=models.PROTECT,
        related_name='classwise_fees'
    )
    section = models.ForeignKey(
        'academics.Section',
        verbose_name="Section",
        on_delete=models.PROTECT,
        related_name='classwise_fees'
    )
    fee_term = models.ForeignKey(
        FeeTerm,
        verbose_name="Fee Term",
        on_delete=models.PROTECT,
        related_name='classwise_fees'
    )
    fee_head = models.ForeignKey(
        FeeHead,
        verbose_name="Fee Head",
        on_delete=models.PROTECT,
        related_name='classwise_fees'
    )
    amount = models.DecimalField(
        "Amount",
        max_digits=12,
        decimal_places=2,
        validators=[MinValueValidator(Decimal('0.00'))]
    )

    class Meta:
        verbose_name = "Classwise Fee"
        verbose_name_plural = "Classwise Fees"
        ordering = ['fee_term__order', 'fee_head__name']
        constraints = [
            models.UniqueConstraint(
                fields=['section', 'fee_term', 'fee_head'],
                name='unique_classwise_fee_per_section_term_head'
            ),
        ]

    def __str__(self):
        return f"{self.section} / {self.fee_term} / {self.fee_head}: {self.amount}"


# =============================================================================
# FEE COLLECTION LEDGER
# =============================================================================

class FeeCollection(BaseModel):
    """
    Canonical record of money received.

    gateway_transaction is null for counter (manual) payments. It is a
    one-to-one link, so the database refuses a second collection for the
    same gateway transaction.
    """

    PAYMENT_MODE_CHOICES = [
        ('Cash', 'Cash'),
        ('Card', 'Card'),
        ('Online', 'Online'),
        ('Cheque', 'Cheque'),
        ('DD', 'Demand Draft'),
        ('Bank Transfer', 'Bank Transfer'),
    ]

    STATUS_CHOICES = [
        ('COMPLETED', 'Completed'),
        ('CANCELLED', 'Cancelled'),
    ]

    # -------------------------------------------------------------------------
    # IDENTIFICATION
    # -------------------------------------------------------------------------

    receipt_number = models.CharField("Receipt Number", max_length=60, unique=True, db_index=True)
    student = models.ForeignKey(
        'students.Student',
        verbose_name="Student",
        on_delete=models.PROTECT,
        related_name='fee_collections'
    )
    branch = models.ForeignKey(
        'academics.Branch',
        verbose_name="Branch",
        on_delete=models.PROTECT,
        related_name='fee_collections'
    )
    session = models.ForeignKey(
        'academics.AcademicSession',
        verbose_name="Academic Session",
        on_delete=models.PROTECT,
        related_name='fee_collections'
    )
    fee_term = models.ForeignKey(
        FeeTerm,
        verbose_name="Fee Term",
        on_delete=models.PROTECT,
        related_name='fee_collections',
        null=True,
        blank=True
    )

    # -------------------------------------------------------------------------
    # AMOUNTS
    # -------------------------------------------------------------------------

    total_amount = models.DecimalField("Total Amount", max_digits=12, decimal_places=2)
    paid_amount = models.DecimalField("Paid Amount", max_digits=12, decimal_places=2)

    # -------------------------------------------------------------------------
    # PAYMENT DETAILS
    # -------------------------------------------------------------------------

    payment_mode = models.CharField("Payment Mode", max_length=20, choices=PAYMENT_MODE_CHOICES)
    payment_date = models.DateTimeField("Payment Date", default=timezone.now, db_index=True)
    transaction_reference = models.CharField("Transaction Reference", max_length=100, blank=True)
    notes = models.TextField("Notes", blank=True)
    status = models.CharField(
        "Status",
        max_length=20,
        choices=STATUS_CHOICES,
        default='COMPLETED',
        db_index=True
    )

    # -------------------------------------------------------------------------
    # GATEWAY SOURCE
    # -------------------------------------------------------------------------

    gateway = models.CharField("Gateway", max_length=20, blank=True, null=True, db_index=True)
    gateway_transaction = models.OneToOneField(
        'payments.PaymentGatewayTransaction',
        verbose_name="Gateway Transaction",
        on_delete=models.PROTECT,
        related_name='fee_collection',
        null=True,
        blank=True
    )
    payment_request = models.ForeignKey(
        'payments.PaymentRequest',
        verbose_name="Payment Request",
        on_delete=models.PROTECT,
        related_name='fee_collections',
        null=True,
        blank=True
    )

    class Meta:
        verbose_name = "Fee Collection"
        verbose_name_plural = "Fee Collections"
        ordering = ['-payment_date']
        indexes = [
            models.Index(fields=['student', 'status']),
            models.Index(fields=['branch', 'session', 'payment_date']),
        ]

    def __str__(self):
        return f"{self.receipt_number} - {self.student}"

    @property
    def is_gateway_payment(self):
        return self.gateway_transaction_id is not None

    @property
    def source(self):
        return self.gateway or 'MANUAL'


class FeeCollectionItem(BaseModel):
    """One fee line paid by a collection, with its concession split."""

    fee_collection = models.ForeignKey(
        FeeCollection,
        verbose_name="Fee Collection",
        on_delete=models.CASCADE,
        related_name='items'
    )
    fee_head = models.ForeignKey(
        FeeHead,
        verbose_name="Fee Head",
        on_delete=models.PROTECT,
        related_name='collection_items'
    )
    fee_term = models.ForeignKey(
        FeeTerm,
        verbose_name="Fee Term",
        on_delete=models.PROTECT,
        related_name='collection_items'
    )
    amount = models.DecimalField(
        "Amount",
        max_digits=12,
        decimal_places=2,
        validators=[MinValueValidator(Decimal('0.01'))]
    )
    original_amount = models.DecimalField(
        "Original Amount",
        max_digits=12,
        decimal_places=2,
        null=True,
        blank=True
    )
    concession_amount = models.DecimalField(
        "Concession Amount",
        max_digits=12,
        decimal_places=2,
        default=Decimal('0.00')
    )

    class Meta:
        verbose_name = "Fee Collection Item"
        verbose_name_plural = "Fee Collection Items"
        indexes = [
            models.Index(fields=['fee_head', 'fee_term']),
        ]

    def __str__(self):
        return f"{self.fee_head} - {self.amount}"


# =============================================================================
# RECEIPT COUNTER
# =============================================================================

class ReceiptCounter(models.Model):
    """
    Last issued receipt sequence per branch, session and prefix.
    Rows are locked with select_for_update while a collection is written.
    """

    branch = models.ForeignKey('academics.Branch', on_delete=models.CASCADE, related_name='receipt_counters')
    session = models.ForeignKey('academics.AcademicSession', on_delete=models.CASCADE, related_name='receipt_counters')
    prefix = models.CharField("Prefix", max_length=20)
    last_number = models.PositiveIntegerField("Last Number", default=0)

    class Meta:
        verbose_name = "Receipt Counter"
        constraints = [
            models.UniqueConstraint(fields=['branch', 'session', 'prefix'], name='unique_receipt_counter'),
        ]

    def __str__(self):
        return f"{self.prefix} {self.branch_id}/{self.session_id}: {self.last_number}"
