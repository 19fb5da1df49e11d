# concessions/services.py

"""
Concession Operations

- ConcessionTypeService: concession policy CRUD
- ConcessionService: assigning concessions to students and the
  approve / reject / suspend workflow, each step written to history
- ApprovalSettingsService: per branch+session approval configuration
"""

from decimal import Decimal
from django.db import transaction, IntegrityError
from django.utils import timezone
import logging

from concessions.models import (
    ConcessionType, StudentConcession, ConcessionHistory, ConcessionApprovalSettings
)
from fees.models import FeeHead, FeeTerm
from utils.exceptions import (
    ValidationError, ConflictError, NotFoundError, PreconditionError, full_clean_or_raise
)
from utils.utils import to_decimal

logger = logging.getLogger(__name__)


class Approver:
    """Who is acting on a concession: user id, role name and email."""

    def __init__(self, user_id, role=None, email=None):
        self.user_id = str(user_id) if user_id is not None else ''
        self.role = role or ''
        self.email = email or ''

    @classmethod
    def from_user(cls, user):
        group = user.groups.order_by('name').first() if hasattr(user, 'groups') else None
        return cls(user.pk, role=group.name if group else '', email=getattr(user, 'email', ''))

    def __repr__(self):
        return f"Approver({self.user_id}, role={self.role!r})"


def _record_history(concession, action, old_status, reason='', performed_by='', old_value=None, new_value=None):
    return ConcessionHistory.objects.create(
        student_concession=concession,
        action=action,
        old_status=old_status or '',
        new_status=concession.status,
        old_value=old_value,
        new_value=new_value,
        reason=reason or '',
        performed_by=performed_by or '',
    )


def _snapshot(concession):
    return {
        'status': concession.status,
        'custom_value': str(concession.custom_value) if concession.custom_value is not None else None,
        'approval_level': concession.approval_level,
    }


# =============================================================================
# CONCESSION TYPE SERVICE
# =============================================================================

class ConcessionTypeService:

    EDITABLE_FIELDS = [
        'name', 'description', 'type', 'value', 'max_value', 'fee_term_amounts',
        'applicable_student_types', 'eligibility_criteria', 'required_documents',
        'auto_approval', 'is_active',
    ]

    @staticmethod
    def _resolve_allow_lists(data, branch, session):
        heads = terms = None
        if 'applied_fee_heads' in data:
            ids = [str(i) for i in data.get('applied_fee_heads') or []]
            heads = list(FeeHead.objects.for_tenant(branch, session).filter(pk__in=ids))
            if len(heads) != len(set(ids)):
                raise ValidationError("Applied fee heads must belong to this branch and session")
        if 'applied_fee_terms' in data:
            ids = [str(i) for i in data.get('applied_fee_terms') or []]
            terms = list(FeeTerm.objects.for_tenant(branch, session).filter(pk__in=ids))
            if len(terms) != len(set(ids)):
                raise ValidationError("Applied fee terms must belong to this branch and session")
        return heads, terms

    @staticmethod
    def _check_unique_name(name, branch, session, exclude_pk=None):
        qs = ConcessionType.objects.for_tenant(branch, session).filter(name__iexact=name)
        if exclude_pk:
            qs = qs.exclude(pk=exclude_pk)
        if qs.exists():
            raise ConflictError("A concession type with this name already exists for this branch and session")

    @staticmethod
    @transaction.atomic
    def create_concession_type(branch, session, data):
        name = (data.get('name') or '').strip()
        if not name:
            raise ValidationError("Name is required")
        ConcessionTypeService._check_unique_name(name, branch, session)
        heads, terms = ConcessionTypeService._resolve_allow_lists(data, branch, session)

        concession_type = ConcessionType(branch=branch, session=session)
        for field in ConcessionTypeService.EDITABLE_FIELDS:
            if field in data:
                setattr(concession_type, field, data[field])
        concession_type.name = name
        if not concession_type.applicable_student_types:
            concession_type.applicable_student_types = ['BOTH']
        full_clean_or_raise(concession_type)
        concession_type.save()

        if heads:
            concession_type.applied_fee_heads.set(heads)
        if terms:
            concession_type.applied_fee_terms.set(terms)

        logger.info(f"Created concession type '{name}' ({concession_type.type} {concession_type.value})")
        return concession_type

    @staticmethod
    @transaction.atomic
    def update_concession_type(concession_type, data):
        branch, session = concession_type.branch, concession_type.session
        if 'name' in data:
            name = (data.get('name') or '').strip()
            if not name:
                raise ValidationError("Name is required")
            ConcessionTypeService._check_unique_name(name, branch, session, exclude_pk=concession_type.pk)
            data = dict(data, name=name)
        heads, terms = ConcessionTypeService._resolve_allow_lists(data, branch, session)

        for field in ConcessionTypeService.EDITABLE_FIELDS:
            if field in data:
                setattr(concession_type, field, data[field])
        full_clean_or_raise(concession_type)
        concession_type.save()

        if heads is not None:
            concession_type.applied_fee_heads.set(heads)
        if terms is not None:
            concession_type.applied_fee_terms.set(terms)
        return concession_type

    @staticmethod
    @transaction.atomic
    def delete_concession_type(concession_type):
        assigned = concession_type.student_concessions.count()
        if assigned:
            raise ConflictError(
                f"Cannot delete concession type. It is assigned to {assigned} student(s)."
            )
        name = concession_type.name
        concession_type.delete()
        logger.info(f"Deleted concession type '{name}'")


# =============================================================================
# STUDENT CONCESSION SERVICE
# =============================================================================

class ConcessionService:

    @staticmethod
    def nominal_amount(concession):
        """Money value of a concession when it has one (FIXED), else None."""
        if concession.concession_type.type == 'FIXED':
            return concession.effective_value
        return None

    @staticmethod
    @transaction.atomic
    def assign_concession(student, concession_type, branch, session, custom_value=None,
                          reason='', notes='', valid_from=None, valid_until=None, performed_by=''):
        """
        Grant a concession type to a student.

        The concession starts APPROVED when the type auto-approves, or when a
        fixed amount falls below the configured auto-approve threshold;
        otherwise it waits in PENDING.
        """
        if student.branch_id != branch.pk or not student.is_active:
            raise ValidationError("Student not found or does not belong to this branch")
        if (concession_type.branch_id != branch.pk or concession_type.session_id != session.pk
                or not concession_type.is_active):
            raise ValidationError("Concession type not found or inactive for this branch and session")

        if custom_value is not None:
            custom_value = to_decimal(custom_value, 'custom_value')
            error = concession_type.validate_custom_value(custom_value)
            if error:
                raise ValidationError(error)

        allowed_types = concession_type.applicable_student_types or ['BOTH']
        if 'BOTH' not in allowed_types and student.student_type not in allowed_types:
            raise ValidationError("This concession type does not apply to the student's admission type")

        duplicate = StudentConcession.objects.select_for_update().filter(
            student=student,
            concession_type=concession_type,
            status__in=['PENDING', 'APPROVED'],
        ).exists()
        if duplicate:
            raise ConflictError("Student already has an active or pending concession of this type")

        concession = StudentConcession(
            student=student,
            concession_type=concession_type,
            branch=branch,
            session=session,
            custom_value=custom_value,
            reason=reason or '',
            notes=notes or '',
            valid_from=valid_from or timezone.now(),
            valid_until=valid_until,
        )
        full_clean_or_raise(concession)

        approval_settings = ConcessionApprovalSettings.get_instance(branch, session)
        nominal = ConcessionService.nominal_amount(concession)
        auto_approve = concession_type.auto_approval or (
            approval_settings.is_configured
            and nominal is not None
            and nominal < approval_settings.auto_approve_below
        )

        if auto_approve:
            concession.status = 'APPROVED'
            concession.approved_by = performed_by or 'system'
            concession.approved_at = timezone.now()
            concession.approval_level = 1
        concession.save()

        _record_history(
            concession, 'CREATED', old_status='', reason=reason,
            performed_by=performed_by, new_value=_snapshot(concession)
        )
        logger.info(
            f"Assigned concession '{concession_type.name}' to {student.admission_number} "
            f"with status {concession.status}"
        )
        return concession

    @staticmethod
    def _lock(concession):
        try:
            return StudentConcession.objects.select_for_update().select_related(
                'concession_type'
            ).get(pk=concession.pk)
        except StudentConcession.DoesNotExist:
            raise NotFoundError("Concession not found")

    @staticmethod
    @transaction.atomic
    def approve_concession(concession, approver, notes=''):
        """
        Approve a PENDING concession. In 2-person mode the first approval
        keeps the concession PENDING until a different approver confirms.
        """
        concession = ConcessionService._lock(concession)
        if concession.status != 'PENDING':
            raise ConflictError(f"Only pending concessions can be approved (current status: {concession.status})")

        approval_settings = ConcessionApprovalSettings.get_instance(concession.branch, concession.session)
        nominal = ConcessionService.nominal_amount(concession)

        if approval_settings.is_configured:
            if nominal is not None and nominal > approval_settings.max_approval_amount:
                raise PreconditionError(
                    f"Concession amount exceeds the maximum approval amount of {approval_settings.max_approval_amount}"
                )
            if not approval_settings.allow_self_approval and concession.created_by_id \
                    and concession.created_by_id == approver.user_id:
                raise ConflictError("You cannot approve a concession you requested")

        required = approval_settings.required_approvals(nominal)
        level = concession.approval_level + 1

        if approval_settings.is_configured and not approval_settings.can_approve(approver, level):
            raise ConflictError("You are not authorised to approve this concession at this level")

        if level == 2 and concession.first_approved_by == approver.user_id:
            raise ConflictError("The second approval must come from a different approver")

        old = _snapshot(concession)
        now = timezone.now()
        concession.approval_level = level

        if level < required:
            concession.first_approved_by = approver.user_id
            concession.first_approved_at = now
            concession.save(update_fields=['approval_level', 'first_approved_by', 'first_approved_at'])
            _record_history(
                concession, 'FIRST_APPROVAL', old_status='PENDING', reason=notes,
                performed_by=approver.user_id, old_value=old, new_value=_snapshot(concession)
            )
            logger.info(f"Concession {concession.pk} received first approval from {approver.user_id}")
            return concession

        concession.status = 'APPROVED'
        concession.approved_by = approver.user_id
        concession.approved_at = now
        if notes:
            concession.notes = notes
        concession.save(update_fields=['status', 'approval_level', 'approved_by', 'approved_at', 'notes'])
        _record_history(
            concession, 'APPROVED', old_status='PENDING', reason=notes,
            performed_by=approver.user_id, old_value=old, new_value=_snapshot(concession)
        )
        logger.info(f"Concession {concession.pk} approved by {approver.user_id}")
        return concession

    @staticmethod
    @transaction.atomic
    def reject_concession(concession, reason, performed_by=''):
        if not (reason or '').strip():
            raise ValidationError("A reason is required to reject a concession")
        concession = ConcessionService._lock(concession)
        if concession.status != 'PENDING':
            raise ConflictError(f"Only pending concessions can be rejected (current status: {concession.status})")

        old = _snapshot(concession)
        concession.status = 'REJECTED'
        concession.rejection_reason = reason.strip()
        concession.save(update_fields=['status', 'rejection_reason'])
        _record_history(
            concession, 'REJECTED', old_status='PENDING', reason=reason,
            performed_by=performed_by, old_value=old, new_value=_snapshot(concession)
        )
        logger.info(f"Concession {concession.pk} rejected")
        return concession

    @staticmethod
    @transaction.atomic
    def suspend_concession(concession, reason, performed_by=''):
        if not (reason or '').strip():
            raise ValidationError("A reason is required to suspend a concession")
        concession = ConcessionService._lock(concession)
        if concession.status != 'APPROVED':
            raise ConflictError(f"Only approved concessions can be suspended (current status: {concession.status})")

        old = _snapshot(concession)
        concession.status = 'SUSPENDED'
        concession.suspension_reason = reason.strip()
        concession.save(update_fields=['status', 'suspension_reason'])
        _record_history(
            concession, 'SUSPENDED', old_status='APPROVED', reason=reason,
            performed_by=performed_by, old_value=old, new_value=_snapshot(concession)
        )
        logger.info(f"Concession {concession.pk} suspended")
        return concession

    @staticmethod
    def get_concession_history(concession):
        return list(concession.history.order_by('performed_at', 'id'))


# =============================================================================
# APPROVAL SETTINGS SERVICE
# =============================================================================

class ApprovalSettingsService:

    FIELDS = list(ConcessionApprovalSettings.DEFAULTS.keys())
    DECIMAL_FIELDS = ['auto_approve_below', 'max_approval_amount', 'escalation_threshold']

    @staticmethod
    def get_approval_settings(branch, session):
        return ConcessionApprovalSettings.get_instance(branch, session)

    @staticmethod
    @transaction.atomic
    def save_approval_settings(branch, session, data):
        """Create or update the settings row; thresholds are validated first."""
        instance = ConcessionApprovalSettings.objects.select_for_update().for_tenant(branch, session).first()
        if instance is None:
            instance = ConcessionApprovalSettings(branch=branch, session=session, **ConcessionApprovalSettings.DEFAULTS)

        for field in ApprovalSettingsService.FIELDS:
            if field not in data:
                continue
            value = data[field]
            if field in ApprovalSettingsService.DECIMAL_FIELDS:
                value = to_decimal(value, field)
            setattr(instance, field, value)

        full_clean_or_raise(instance)
        try:
            instance.save()
        except IntegrityError:
            raise ConflictError("Approval settings were saved concurrently; please retry")

        logger.info(
            f"Saved concession approval settings for branch {branch.code} / {session.name}: "
            f"{instance.approval_type} {instance.authorization_type}"
        )
        return instance
