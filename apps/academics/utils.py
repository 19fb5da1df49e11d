# academics/utils.py
"""
Utility functions for academics app
Tenant (branch + academic session) resolution for API requests
"""

import uuid
import logging

from django.shortcuts import get_object_or_404

from utils.exceptions import ValidationError, NotFoundError

logger = logging.getLogger(__name__)

BRANCH_HEADER = 'X-Branch-ID'
SESSION_HEADER = 'X-Session-ID'


# =============================================================================
# ACADEMIC SESSION UTILITIES
# =============================================================================

def get_current_academic_session(branch):
    """
    Get the active academic session of a branch, latest first.

    Returns:
        AcademicSession or None
    """
    from .models import AcademicSession

    return AcademicSession.objects.filter(branch=branch, is_active=True).order_by('-start_date').first()


def _lookup_id(request, data, key, header):
    value = None
    if data:
        value = data.get(key)
    if not value:
        value = request.GET.get(key) or request.headers.get(header)
    if not value:
        return None
    try:
        return uuid.UUID(str(value))
    except ValueError:
        raise ValidationError(f"Invalid {key}")


def get_branch(request, data=None):
    """Resolve the caller's branch the same way get_tenant does, without a session."""
    from .models import Branch

    branch_id = _lookup_id(request, data, 'branch_id', BRANCH_HEADER)
    if branch_id is None:
        raise ValidationError("branch_id is required")
    branch = Branch.objects.filter(pk=branch_id, is_active=True).first()
    if branch is None:
        raise NotFoundError("Branch not found")
    return branch


def get_object_for_branch(request, queryset, pk, data=None, branch_field='branch'):
    """
    get_object_or_404 over rows of the caller's branch only. Ids from other
    branches are reported as not found.
    """
    branch = get_branch(request, data)
    return get_object_or_404(queryset.filter(**{branch_field: branch}), pk=pk)


def get_tenant(request, data=None):
    """
    Resolve (branch, session) from the JSON body, query string or the
    X-Branch-ID / X-Session-ID headers. The session defaults to the
    branch's active session and must belong to the branch.
    """
    from .models import AcademicSession

    branch = get_branch(request, data)

    session_id = _lookup_id(request, data, 'session_id', SESSION_HEADER)
    if session_id is None:
        session = get_current_academic_session(branch)
        if session is None:
            raise ValidationError("No active academic session for this branch")
        return branch, session

    session = AcademicSession.objects.filter(pk=session_id).first()
    if session is None:
        raise NotFoundError("Academic session not found")
    if session.branch_id != branch.pk:
        raise ValidationError("Academic session does not belong to this branch")
    return branch, session
