# utils/context.py

"""
Thread-local request context for audit fields and log correlation.

The middleware stores who is calling, from where, and the request's
correlation id. BaseModel.save() reads it to stamp created_by/updated_by,
and CorrelationIdFilter reads it to tag log records.
"""

from threading import local
import logging
import uuid

logger = logging.getLogger(__name__)

# Thread-local storage
_thread_locals = local()


def new_correlation_id():
    return uuid.uuid4().hex[:16]


def set_request_context(user=None, ip_address=None, user_agent=None,
                        request_path=None, correlation_id=None, request=None):
    """
    Set the current request context for this thread.

    This should be called by middleware at the start of each request.
    """
    if request is not None:
        user = getattr(request, 'user', None)
        ip_address = get_client_ip(request)
        user_agent = request.META.get('HTTP_USER_AGENT', '')
        request_path = getattr(request, 'path', '')
        correlation_id = correlation_id or request.META.get('HTTP_X_REQUEST_ID')

    if user is not None and not getattr(user, 'is_authenticated', False):
        user = None

    _thread_locals.request_context = {
        'user': user,
        'ip_address': ip_address,
        'user_agent': user_agent or '',
        'request_path': request_path or '',
        'correlation_id': correlation_id or new_correlation_id(),
    }

    logger.debug(f"Set request context: user={user}, ip={ip_address}")
    return _thread_locals.request_context


def get_request_context():
    """Return the context dict for this thread, or None when unset."""
    return getattr(_thread_locals, 'request_context', None)


def get_correlation_id():
    context = get_request_context()
    if context:
        return context.get('correlation_id')
    return None


def clear_request_context():
    """Clear the request context for this thread."""
    if hasattr(_thread_locals, 'request_context'):
        delattr(_thread_locals, 'request_context')


def get_client_ip(request):
    """
    Extract the client's real IP address from the request.

    Handles X-Forwarded-For header for proxied requests.
    """
    x_forwarded_for = request.META.get('HTTP_X_FORWARDED_FOR')
    if x_forwarded_for:
        # X-Forwarded-For can contain multiple IPs, take the first one
        return x_forwarded_for.split(',')[0].strip()
    return request.META.get('REMOTE_ADDR')


# ============================================================================
# CONTEXT MANAGER
# ============================================================================

class RequestContext:
    """
    Context manager for temporarily setting request context.

    Used by management commands so that sweeps and reconciliation runs
    carry a correlation id in their logs.

    Example:
        with RequestContext(correlation_id='expiry-sweep'):
            PaymentRequestService.expire_stale_requests()
    """

    def __init__(self, user=None, ip_address=None, user_agent=None,
                 request_path=None, correlation_id=None):
        self.context = {
            'user': user,
            'ip_address': ip_address,
            'user_agent': user_agent or '',
            'request_path': request_path or '',
            'correlation_id': correlation_id or new_correlation_id(),
        }
        self.previous_context = None

    def __enter__(self):
        self.previous_context = get_request_context()
        _thread_locals.request_context = self.context
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.previous_context:
            _thread_locals.request_context = self.previous_context
        else:
            clear_request_context()
