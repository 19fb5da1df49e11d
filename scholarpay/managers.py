# managers.py

from django.db import models
import logging

logger = logging.getLogger(__name__)


class TenantQuerySet(models.QuerySet):
    """
    QuerySet helpers for records that belong to a branch and academic session.

    Every fee, concession and payment table carries branch_id/session_id;
    scoping through these helpers keeps cross-branch rows out of results.
    """

    def for_branch(self, branch):
        branch_id = getattr(branch, 'pk', branch)
        return self.filter(branch_id=branch_id)

    def for_tenant(self, branch, session):
        branch_id = getattr(branch, 'pk', branch)
        session_id = getattr(session, 'pk', session)
        return self.filter(branch_id=branch_id, session_id=session_id)

    def active(self):
        return self.filter(is_active=True)


class TenantManager(models.Manager.from_queryset(TenantQuerySet)):
    """Default manager for BaseModel subclasses."""

    def get_for_tenant(self, pk, branch, session, label=None):
        """
        Fetch one row by id, insisting it lives in the given branch+session.
        Pass session=None for branch-level records such as students.

        Raises utils.exceptions.ValidationError for missing or cross-branch
        ids, since both mean the caller sent an id it may not use.
        """
        from utils.exceptions import ValidationError

        label = label or self.model._meta.verbose_name.title()
        qs = self.for_branch(branch) if session is None else self.for_tenant(branch, session)
        try:
            return qs.get(pk=pk)
        except (self.model.DoesNotExist, ValueError, TypeError):
            logger.warning(f"{label} {pk} not found in branch {branch} / session {session}")
            raise ValidationError(f"{label} not found or does not belong to this branch and session")
