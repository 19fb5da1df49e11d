# payments/models.py

"""
Online payment records.

PaymentRequest            what we asked the payer for (fee lines snapshotted)
PaymentGatewayTransaction one attempt at the gateway for a request
PaymentWebhookLog         every callback received, verified or not
PaymentLink               shareable page listing a student's unpaid terms
ReconciliationException   gateway money that could not be matched to a
                          FeeCollection and needs an operator
"""

import secrets
from datetime import timedelta
from django.conf import settings
from django.db import models
from django.db.models import Q
from django.utils import timezone
from utils.models import BaseModel
import logging

logger = logging.getLogger(__name__)


# =============================================================================
# PAYMENT STATUS
# =============================================================================

PENDING = 'PENDING'
INITIATED = 'INITIATED'
SUCCESS = 'SUCCESS'
FAILED = 'FAILED'
CANCELLED = 'CANCELLED'
EXPIRED = 'EXPIRED'

PAYMENT_STATUS_CHOICES = [
    (PENDING, 'Pending'),
    (INITIATED, 'Initiated'),
    (SUCCESS, 'Success'),
    (FAILED, 'Failed'),
    (CANCELLED, 'Cancelled'),
    (EXPIRED, 'Expired'),
]

OPEN_STATUSES = (PENDING, INITIATED)
TERMINAL_STATUSES = (SUCCESS, FAILED, CANCELLED, EXPIRED)

GATEWAY_CHOICES = [
    ('razorpay', 'Razorpay'),
    ('easebuzz', 'Easebuzz'),
]


class ExpiringStatusMixin:
    """Read-time expiry for rows that carry status and expires_at."""

    @property
    def is_expired(self):
        return (
            self.status in OPEN_STATUSES
            and self.expires_at is not None
            and self.expires_at <= timezone.now()
        )

    @property
    def effective_status(self):
        """Status as every reader should see it, before the sweep catches up."""
        if self.is_expired:
            return EXPIRED
        return self.status


# =============================================================================
# PAYMENT REQUEST
# =============================================================================

class PaymentRequest(ExpiringStatusMixin, BaseModel):
    """
    An outbound request to collect fees through a gateway.

    `fees` is a snapshot of the lines at creation time:
    [{"fee_head_id", "fee_head_name", "amount", "original_amount",
      "concession_amount"}]. It never changes after the row is created.
    """

    # -------------------------------------------------------------------------
    # TENANCY & PAYER
    # -------------------------------------------------------------------------

    branch = models.ForeignKey(
        'academics.Branch',
        verbose_name="Branch",
        on_delete=models.PROTECT,
        related_name='payment_requests'
    )
    session = models.ForeignKey(
        'academics.AcademicSession',
        verbose_name="Academic Session",
        on_delete=models.PROTECT,
        related_name='payment_requests'
    )
    student = models.ForeignKey(
        'students.Student',
        verbose_name="Student",
        on_delete=models.PROTECT,
        related_name='payment_requests'
    )
    fee_term = models.ForeignKey(
        'fees.FeeTerm',
        verbose_name="Fee Term",
        on_delete=models.PROTECT,
        related_name='payment_requests'
    )
    buyer_name = models.CharField("Buyer Name", max_length=150)
    buyer_email = models.EmailField("Buyer Email", blank=True)
    buyer_phone = models.CharField("Buyer Phone", max_length=20)
    purpose = models.CharField("Purpose", max_length=200)
    description = models.TextField("Description", blank=True)

    # -------------------------------------------------------------------------
    # AMOUNT & LIFECYCLE
    # -------------------------------------------------------------------------

    amount = models.DecimalField("Amount", max_digits=12, decimal_places=2)
    currency = models.CharField("Currency", max_length=3, default='INR')
    fees = models.JSONField("Fee Lines", default=list)
    gateway = models.CharField("Gateway", max_length=20, choices=GATEWAY_CHOICES)
    status = models.CharField("Status", max_length=20, choices=PAYMENT_STATUS_CHOICES, default=PENDING, db_index=True)
    expires_at = models.DateTimeField("Expires At", db_index=True)
    gateway_order_id = models.CharField("Gateway Order ID", max_length=100, blank=True, db_index=True)
    checkout_payload = models.JSONField("Checkout Payload", default=dict, blank=True)
    failure_reason = models.TextField("Failure Reason", blank=True)
    completed_at = models.DateTimeField("Completed At", null=True, blank=True)
    cancelled_at = models.DateTimeField("Cancelled At", null=True, blank=True)
    cancel_reason = models.CharField("Cancel Reason", max_length=255, blank=True)

    class Meta:
        verbose_name = "Payment Request"
        verbose_name_plural = "Payment Requests"
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['branch', 'session', 'status']),
            models.Index(fields=['student', 'status']),
        ]

    def __str__(self):
        return f"Payment request {self.pk} - {self.amount} {self.currency} ({self.status})"

    @classmethod
    def from_db(cls, db, field_names, values):
        instance = super().from_db(db, field_names, values)
        if 'fees' in field_names:
            instance._loaded_fees = instance.__dict__.get('fees')
        return instance

    def save(self, *args, **kwargs):
        if not self._state.adding and hasattr(self, '_loaded_fees') and self.fees != self._loaded_fees:
            from utils.exceptions import ConflictError
            raise ConflictError("Payment request fee lines cannot be changed after creation")
        return super().save(*args, **kwargs)


# =============================================================================
# GATEWAY TRANSACTION
# =============================================================================

class PaymentGatewayTransaction(ExpiringStatusMixin, BaseModel):
    """
    One attempt at the gateway for a payment request.

    Rows are frozen once their persisted status is terminal; the only later
    link is the FeeCollection that points back at them.
    """

    payment_request = models.ForeignKey(
        PaymentRequest,
        verbose_name="Payment Request",
        on_delete=models.PROTECT,
        related_name='transactions'
    )
    gateway = models.CharField("Gateway", max_length=20, choices=GATEWAY_CHOICES)
    gateway_transaction_id = models.CharField(
        "Transaction Reference",
        max_length=100,
        unique=True,
        help_text="Our receipt / txnid sent to the gateway"
    )
    gateway_order_id = models.CharField("Gateway Order ID", max_length=100, blank=True, db_index=True)
    gateway_payment_id = models.CharField("Gateway Payment ID", max_length=100, blank=True, db_index=True)

    amount = models.DecimalField("Amount", max_digits=12, decimal_places=2)
    currency = models.CharField("Currency", max_length=3, default='INR')
    status = models.CharField("Status", max_length=20, choices=PAYMENT_STATUS_CHOICES, default=PENDING, db_index=True)
    failure_reason = models.TextField("Failure Reason", blank=True)

    gateway_response = models.JSONField("Gateway Response", default=dict, blank=True)
    webhook_data = models.JSONField("Webhook Data", default=dict, blank=True)
    paid_at = models.DateTimeField("Paid At", null=True, blank=True)
    expires_at = models.DateTimeField("Expires At", null=True, blank=True)

    class Meta:
        verbose_name = "Payment Gateway Transaction"
        verbose_name_plural = "Payment Gateway Transactions"
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['gateway', 'status']),
        ]

    def __str__(self):
        return f"{self.gateway} {self.gateway_transaction_id} ({self.status})"

    @classmethod
    def from_db(cls, db, field_names, values):
        instance = super().from_db(db, field_names, values)
        if 'status' in field_names:
            instance._persisted_status = instance.__dict__.get('status')
        return instance

    @property
    def is_terminal(self):
        return self.status in TERMINAL_STATUSES

    def save(self, *args, **kwargs):
        persisted = getattr(self, '_persisted_status', None)
        if not self._state.adding and persisted in TERMINAL_STATUSES:
            from utils.exceptions import ConflictError
            raise ConflictError(f"Transaction {self.gateway_transaction_id} is {persisted} and cannot be modified")
        result = super().save(*args, **kwargs)
        self._persisted_status = self.status
        return result


# =============================================================================
# WEBHOOK LOG
# =============================================================================

class PaymentWebhookLog(BaseModel):
    """Every gateway callback, kept whether or not it verified."""

    gateway = models.CharField("Gateway", max_length=20, choices=GATEWAY_CHOICES, db_index=True)
    event = models.CharField("Event", max_length=100, blank=True)
    headers = models.JSONField("Headers", default=dict, blank=True)
    payload = models.JSONField("Payload", default=dict, blank=True)
    signature_valid = models.BooleanField("Signature Valid", null=True, blank=True)
    processed = models.BooleanField("Processed", default=False, db_index=True)
    processing_error = models.TextField("Processing Error", blank=True)
    transaction = models.ForeignKey(
        PaymentGatewayTransaction,
        verbose_name="Transaction",
        on_delete=models.SET_NULL,
        related_name='webhook_logs',
        null=True,
        blank=True
    )

    class Meta:
        verbose_name = "Payment Webhook Log"
        verbose_name_plural = "Payment Webhook Logs"
        ordering = ['-created_at']

    def __str__(self):
        return f"{self.gateway} {self.event or 'unknown'} at {self.created_at}"


# =============================================================================
# PAYMENT LINK
# =============================================================================

def generate_link_token():
    return secrets.token_urlsafe(24)


def default_link_expiry():
    return timezone.now() + timedelta(days=getattr(settings, 'PAYMENT_LINK_EXPIRY_DAYS', 7))


class PaymentLink(BaseModel):
    """
    Token-addressed page for a student. It stores no amounts: the unpaid
    terms are worked out each time the link is opened.
    """

    student = models.ForeignKey(
        'students.Student',
        verbose_name="Student",
        on_delete=models.PROTECT,
        related_name='payment_links'
    )
    branch = models.ForeignKey(
        'academics.Branch',
        verbose_name="Branch",
        on_delete=models.PROTECT,
        related_name='payment_links'
    )
    session = models.ForeignKey(
        'academics.AcademicSession',
        verbose_name="Academic Session",
        on_delete=models.PROTECT,
        related_name='payment_links'
    )
    token = models.CharField("Token", max_length=64, unique=True, default=generate_link_token, editable=False)
    expires_at = models.DateTimeField("Expires At", default=default_link_expiry)
    is_active = models.BooleanField("Is Active", default=True)
    access_count = models.PositiveIntegerField("Access Count", default=0)
    last_accessed_at = models.DateTimeField("Last Accessed At", null=True, blank=True)

    class Meta:
        verbose_name = "Payment Link"
        verbose_name_plural = "Payment Links"
        ordering = ['-created_at']

    def __str__(self):
        return f"Payment link for {self.student} (expires {self.expires_at:%Y-%m-%d})"

    @property
    def is_valid(self):
        return self.is_active and self.expires_at > timezone.now()

    def get_absolute_url(self):
        from django.urls import reverse
        return reverse('payments:payment_link_detail', args=[self.token])


# =============================================================================
# RECONCILIATION EXCEPTIONS
# =============================================================================

class ReconciliationException(BaseModel):
    """
    A gateway payment whose money is not correctly reflected in the
    collection ledger. Open rows are the operator's work queue.
    """

    KIND_CHOICES = [
        ('MISSING_COLLECTION', 'Successful payment without a fee collection'),
        ('AMOUNT_MISMATCH', 'Paid amount differs from requested amount'),
        ('LATE_PAYMENT', 'Payment captured after the transaction was closed'),
        ('ORPHAN_PAYMENT', 'Payment for an unknown transaction'),
    ]

    STATUS_CHOICES = [
        ('OPEN', 'Open'),
        ('RESOLVED', 'Resolved'),
    ]

    gateway_transaction = models.ForeignKey(
        PaymentGatewayTransaction,
        verbose_name="Gateway Transaction",
        on_delete=models.PROTECT,
        related_name='reconciliation_exceptions',
        null=True,
        blank=True
    )
    gateway = models.CharField("Gateway", max_length=20, choices=GATEWAY_CHOICES)
    gateway_reference = models.CharField(
        "Gateway Reference",
        max_length=100,
        blank=True,
        help_text="Gateway order/payment id when no local transaction matched"
    )
    kind = models.CharField("Kind", max_length=30, choices=KIND_CHOICES)
    detail = models.TextField("Detail", blank=True)
    expected_amount = models.DecimalField("Expected Amount", max_digits=12, decimal_places=2, null=True, blank=True)
    received_amount = models.DecimalField("Received Amount", max_digits=12, decimal_places=2, null=True, blank=True)

    status = models.CharField("Status", max_length=20, choices=STATUS_CHOICES, default='OPEN', db_index=True)
    resolved_by = models.CharField("Resolved By", max_length=50, blank=True)
    resolved_at = models.DateTimeField("Resolved At", null=True, blank=True)
    resolution_note = models.TextField("Resolution Note", blank=True)

    class Meta:
        verbose_name = "Reconciliation Exception"
        verbose_name_plural = "Reconciliation Exceptions"
        ordering = ['-created_at']
        constraints = [
            models.UniqueConstraint(
                fields=['gateway_transaction', 'kind'],
                condition=Q(status='OPEN'),
                name='unique_open_exception_per_transaction_kind'
            ),
        ]

    def __str__(self):
        return f"{self.get_kind_display()} - {self.gateway_transaction_id or self.gateway_reference}"
