# concessions/models.py

from decimal import Decimal
from django.db import models
from django.core.exceptions import ValidationError
from django.core.validators import MinValueValidator, MaxValueValidator
from django.utils import timezone
from utils.models import BaseModel
import logging

logger = logging.getLogger(__name__)


# =============================================================================
# CONCESSION TYPES
# =============================================================================

class ConcessionType(BaseModel):
    """
    A named discount policy, e.g. 'Sibling 10%' or 'Staff ward - Rs 5000'.

    Empty applied_fee_heads / applied_fee_terms mean the policy applies to
    every head / term. fee_term_amounts optionally overrides the flat value
    of a FIXED policy per term: {"<fee_term_id>": "2500.00"}.
    """

    TYPE_CHOICES = [
        ('PERCENTAGE', 'Percentage'),
        ('FIXED', 'Fixed Amount'),
    ]

    STUDENT_TYPE_CHOICES = [
        ('NEW_ADMISSION', 'New Admission'),
        ('OLD_STUDENT', 'Old Student'),
    ]

    # -------------------------------------------------------------------------
    # IDENTIFICATION
    # -------------------------------------------------------------------------

    branch = models.ForeignKey(
        'academics.Branch',
        verbose_name="Branch",
        on_delete=models.PROTECT,
        related_name='concession_types'
    )
    session = models.ForeignKey(
        'academics.AcademicSession',
        verbose_name="Academic Session",
        on_delete=models.PROTECT,
        related_name='concession_types'
    )
    name = models.CharField("Concession Name", max_length=100)
    description = models.TextField("Description", blank=True)

    # -------------------------------------------------------------------------
    # VALUE
    # -------------------------------------------------------------------------

    type = models.CharField("Concession Type", max_length=20, choices=TYPE_CHOICES)
    value = models.DecimalField(
        "Value",
        max_digits=12,
        decimal_places=2,
        validators=[MinValueValidator(Decimal('0.00'))],
        help_text="Percentage (0-100) or fixed amount"
    )
    max_value = models.DecimalField(
        "Maximum Value",
        max_digits=12,
        decimal_places=2,
        null=True,
        blank=True,
        help_text="Upper bound for custom values assigned to a student"
    )
    fee_term_amounts = models.JSONField(
        "Per-Term Amounts",
        default=dict,
        blank=True,
        help_text="FIXED concessions only: fee term id -> amount"
    )

    # -------------------------------------------------------------------------
    # APPLICABILITY
    # -------------------------------------------------------------------------

    applied_fee_heads = models.ManyToManyField(
        'fees.FeeHead',
        verbose_name="Applied Fee Heads",
        related_name='concession_types',
        blank=True
    )
    applied_fee_terms = models.ManyToManyField(
        'fees.FeeTerm',
        verbose_name="Applied Fee Terms",
        related_name='concession_types',
        blank=True
    )
    applicable_student_types = models.JSONField("Applicable Student Types", default=list, blank=True)
    eligibility_criteria = models.TextField("Eligibility Criteria", blank=True)
    required_documents = models.JSONField("Required Documents", default=list, blank=True)

    auto_approval = models.BooleanField("Auto Approve", default=False)
    is_active = models.BooleanField("Is Active", default=True)

    class Meta:
        verbose_name = "Concession Type"
        verbose_name_plural = "Concession Types"
        ordering = ['name']
        constraints = [
            models.UniqueConstraint(
                fields=['branch', 'session', 'name'],
                name='unique_concession_type_name_per_branch_session'
            ),
        ]

    def __str__(self):
        return self.name

    def clean(self):
        super().clean()
        errors = {}

        if self.type == 'PERCENTAGE' and self.value is not None and self.value > 100:
            errors['value'] = 'Percentage value cannot exceed 100'

        if self.max_value is not None and self.value is not None and self.value > self.max_value:
            errors['value'] = 'Value cannot exceed the maximum value'

        if self.type == 'PERCENTAGE' and self.fee_term_amounts:
            errors['fee_term_amounts'] = 'Per-term amounts are only allowed for fixed concessions'

        if self.fee_term_amounts:
            if not isinstance(self.fee_term_amounts, dict):
                errors['fee_term_amounts'] = 'Per-term amounts must map fee term ids to amounts'
            else:
                for term_id, amount in self.fee_term_amounts.items():
                    try:
                        if Decimal(str(amount)) < 0:
                            raise ValueError
                    except Exception:
                        errors['fee_term_amounts'] = f"Invalid amount for fee term {term_id}"
                        break

        if errors:
            raise ValidationError(errors)

    def validate_custom_value(self, custom_value):
        """Return an error message for an out-of-range override, else None."""
        if custom_value is None:
            return None
        if custom_value < 0:
            return 'Custom value cannot be negative'
        if self.type == 'PERCENTAGE' and custom_value > 100:
            return 'Percentage value cannot exceed 100'
        if self.max_value is not None and custom_value > self.max_value:
            return f"Custom value cannot exceed maximum value of {self.max_value}"
        return None


# =============================================================================
# STUDENT CONCESSIONS
# =============================================================================

class StudentConcession(BaseModel):
    """
    A concession type granted to one student.

    Status machine: PENDING -> APPROVED | REJECTED, APPROVED -> SUSPENDED.
    Every transition appends a ConcessionHistory row.
    """

    STATUS_CHOICES = [
        ('PENDING', 'Pending'),
        ('APPROVED', 'Approved'),
        ('REJECTED', 'Rejected'),
        ('SUSPENDED', 'Suspended'),
    ]

    student = models.ForeignKey(
        'students.Student',
        verbose_name="Student",
        on_delete=models.PROTECT,
        related_name='concessions'
    )
    concession_type = models.ForeignKey(
        ConcessionType,
        verbose_name="Concession Type",
        on_delete=models.PROTECT,
        related_name='student_concessions'
    )
    branch = models.ForeignKey(
        'academics.Branch',
        verbose_name="Branch",
        on_delete=models.PROTECT,
        related_name='student_concessions'
    )
    session = models.ForeignKey(
        'academics.AcademicSession',
        verbose_name="Academic Session",
        on_delete=models.PROTECT,
        related_name='student_concessions'
    )

    custom_value = models.DecimalField(
        "Custom Value",
        max_digits=12,
        decimal_places=2,
        null=True,
        blank=True,
        help_text="Overrides the concession type's value for this student"
    )
    reason = models.TextField("Reason", blank=True)
    notes = models.TextField("Notes", blank=True)

    valid_from = models.DateTimeField("Valid From", default=timezone.now)
    valid_until = models.DateTimeField("Valid Until", null=True, blank=True)

    # -------------------------------------------------------------------------
    # APPROVAL
    # -------------------------------------------------------------------------

    status = models.CharField("Status", max_length=20, choices=STATUS_CHOICES, default='PENDING', db_index=True)
    approval_level = models.PositiveSmallIntegerField(
        "Approvals Received",
        default=0,
        validators=[MaxValueValidator(2)]
    )
    first_approved_by = models.CharField("First Approved By", max_length=50, blank=True)
    first_approved_at = models.DateTimeField("First Approved At", null=True, blank=True)
    approved_by = models.CharField("Approved By", max_length=50, blank=True)
    approved_at = models.DateTimeField("Approved At", null=True, blank=True)
    rejection_reason = models.TextField("Rejection Reason", blank=True)
    suspension_reason = models.TextField("Suspension Reason", blank=True)

    class Meta:
        verbose_name = "Student Concession"
        verbose_name_plural = "Student Concessions"
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['student', 'status']),
        ]

    def __str__(self):
        return f"{self.student} - {self.concession_type} ({self.status})"

    def clean(self):
        super().clean()
        if self.valid_until and self.valid_from and self.valid_until <= self.valid_from:
            raise ValidationError({'valid_until': 'Valid until must be after valid from.'})

    @property
    def effective_value(self):
        if self.custom_value is not None:
            return self.custom_value
        return self.concession_type.value


class ConcessionHistory(models.Model):
    """
    Append-only audit record of a StudentConcession status change.
    Existing rows can be neither saved again nor deleted.
    """

    ACTION_CHOICES = [
        ('CREATED', 'Created'),
        ('FIRST_APPROVAL', 'First Approval'),
        ('APPROVED', 'Approved'),
        ('REJECTED', 'Rejected'),
        ('SUSPENDED', 'Suspended'),
    ]

    student_concession = models.ForeignKey(
        StudentConcession,
        verbose_name="Student Concession",
        on_delete=models.PROTECT,
        related_name='history'
    )
    action = models.CharField("Action", max_length=20, choices=ACTION_CHOICES)
    old_status = models.CharField("Old Status", max_length=20, blank=True)
    new_status = models.CharField("New Status", max_length=20)
    old_value = models.JSONField("Old Value", null=True, blank=True)
    new_value = models.JSONField("New Value", null=True, blank=True)
    reason = models.TextField("Reason", blank=True)
    performed_by = models.CharField("Performed By", max_length=50, blank=True)
    performed_at = models.DateTimeField("Performed At", default=timezone.now, db_index=True)

    class Meta:
        verbose_name = "Concession History"
        verbose_name_plural = "Concession History"
        ordering = ['performed_at', 'id']

    def __str__(self):
        return f"{self.action} by {self.performed_by or 'system'} at {self.performed_at}"

    def save(self, *args, **kwargs):
        if not self._state.adding:
            from utils.exceptions import ConflictError
            raise ConflictError("Concession history records cannot be modified")
        return super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        from utils.exceptions import ConflictError
        raise ConflictError("Concession history records cannot be deleted")


# =============================================================================
# APPROVAL SETTINGS
# =============================================================================

class ConcessionApprovalSettings(BaseModel):
    """Approval workflow configuration, one row per branch and session."""

    APPROVAL_TYPE_CHOICES = [
        ('1_PERSON', 'Single Approver'),
        ('2_PERSON', 'Two Approvers'),
    ]

    AUTHORIZATION_TYPE_CHOICES = [
        ('ROLE_BASED', 'Role Based'),
        ('INDIVIDUAL_BASED', 'Individual Based'),
    ]

    DEFAULTS = {
        'approval_type': '1_PERSON',
        'authorization_type': 'ROLE_BASED',
        'approval_roles': [],
        'second_approval_roles': [],
        'approval_individuals': [],
        'second_approval_individuals': [],
        'auto_approve_below': Decimal('1000.00'),
        'max_approval_amount': Decimal('50000.00'),
        'escalation_threshold': Decimal('25000.00'),
        'approval_timeout_days': 7,
        'require_document_verification': True,
        'allow_self_approval': False,
        'notification_enabled': True,
        'require_reason': True,
    }

    branch = models.ForeignKey(
        'academics.Branch',
        verbose_name="Branch",
        on_delete=models.PROTECT,
        related_name='concession_approval_settings'
    )
    session = models.ForeignKey(
        'academics.AcademicSession',
        verbose_name="Academic Session",
        on_delete=models.PROTECT,
        related_name='concession_approval_settings'
    )

    # -------------------------------------------------------------------------
    # WORKFLOW
    # -------------------------------------------------------------------------

    approval_type = models.CharField("Approval Type", max_length=20, choices=APPROVAL_TYPE_CHOICES, default='1_PERSON')
    authorization_type = models.CharField(
        "Authorization Type",
        max_length=20,
        choices=AUTHORIZATION_TYPE_CHOICES,
        default='ROLE_BASED'
    )
    approval_roles = models.JSONField("Approval Roles", default=list, blank=True)
    second_approval_roles = models.JSONField("Second Approval Roles", default=list, blank=True)
    approval_individuals = models.JSONField("Approval Individuals", default=list, blank=True)
    second_approval_individuals = models.JSONField("Second Approval Individuals", default=list, blank=True)

    # -------------------------------------------------------------------------
    # THRESHOLDS
    # -------------------------------------------------------------------------

    auto_approve_below = models.DecimalField("Auto Approve Below", max_digits=12, decimal_places=2, default=Decimal('1000.00'))
    max_approval_amount = models.DecimalField("Maximum Approval Amount", max_digits=12, decimal_places=2, default=Decimal('50000.00'))
    escalation_threshold = models.DecimalField("Escalation Threshold", max_digits=12, decimal_places=2, default=Decimal('25000.00'))
    approval_timeout_days = models.PositiveIntegerField(
        "Approval Timeout (Days)",
        default=7,
        validators=[MinValueValidator(1), MaxValueValidator(30)]
    )

    # -------------------------------------------------------------------------
    # POLICY FLAGS
    # -------------------------------------------------------------------------

    require_document_verification = models.BooleanField("Require Document Verification", default=True)
    allow_self_approval = models.BooleanField("Allow Self Approval", default=False)
    notification_enabled = models.BooleanField("Notifications Enabled", default=True)
    require_reason = models.BooleanField("Require Reason", default=True)

    class Meta:
        verbose_name = "Concession Approval Settings"
        verbose_name_plural = "Concession Approval Settings"
        constraints = [
            models.UniqueConstraint(fields=['branch', 'session'], name='unique_approval_settings_per_branch_session'),
        ]

    def __str__(self):
        return f"Approval settings - {self.branch} / {self.session}"

    @classmethod
    def get_instance(cls, branch, session):
        """
        Return the saved settings for a branch+session, or an unsaved
        instance carrying the defaults when none have been configured.
        """
        instance = cls.objects.for_tenant(branch, session).first()
        if instance is None:
            instance = cls(branch=branch, session=session, **cls.DEFAULTS)
        return instance

    @property
    def is_configured(self):
        return not self._state.adding

    def clean(self):
        """Validate approval settings"""
        super().clean()
        errors = {}
        two_person = self.approval_type == '2_PERSON'

        if self.authorization_type == 'ROLE_BASED':
            if not self.approval_roles:
                errors['approval_roles'] = 'At least one approval role is required for role based authorization'
            if two_person and not self.second_approval_roles:
                errors['second_approval_roles'] = 'Second approval roles are required for 2-person approval'
        elif self.authorization_type == 'INDIVIDUAL_BASED':
            if not self.approval_individuals:
                errors['approval_individuals'] = 'At least one approver is required for individual based authorization'
            if two_person and not self.second_approval_individuals:
                errors['second_approval_individuals'] = 'Second approvers are required for 2-person approval'

        if self.auto_approve_below is not None and self.max_approval_amount is not None:
            if self.auto_approve_below >= self.max_approval_amount:
                errors['auto_approve_below'] = 'Auto approve threshold must be less than maximum approval amount'

        if two_person and self.escalation_threshold is not None and self.max_approval_amount is not None:
            if self.escalation_threshold >= self.max_approval_amount:
                errors['escalation_threshold'] = 'Escalation threshold must be less than maximum approval amount'

        if errors:
            raise ValidationError(errors)

    def required_approvals(self, nominal_amount):
        """
        Number of distinct approvers a concession needs. In 2-person mode
        amounts below the escalation threshold still need only one; a
        percentage concession (no nominal amount) always escalates.
        """
        if self.approval_type != '2_PERSON':
            return 1
        if nominal_amount is not None and nominal_amount < self.escalation_threshold:
            return 1
        return 2

    def can_approve(self, approver, level):
        """Whether the approver may give approval number `level` (1 or 2)."""
        if self.authorization_type == 'ROLE_BASED':
            roles = self.approval_roles if level == 1 else self.second_approval_roles
            return bool(approver.role) and approver.role in roles
        individuals = self.approval_individuals if level == 1 else self.second_approval_individuals
        allowed = {str(i).lower() for i in individuals}
        return bool(approver.email) and approver.email.lower() in allowed
