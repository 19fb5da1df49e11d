# utils/middleware.py

import logging
from utils.context import set_request_context, clear_request_context

logger = logging.getLogger(__name__)


class AuditContextMiddleware:
    """
    Middleware to capture request context for audit fields and logging.
    Reuses the caller's X-Request-ID when present and echoes it back.
    """

    def __init__(self, get_response):
        self.get_response = get_response

    def __call__(self, request):
        context = set_request_context(request=request)
        request.correlation_id = context['correlation_id']

        try:
            response = self.get_response(request)
        finally:
            # Always clear context after request
            clear_request_context()

        response['X-Request-ID'] = request.correlation_id
        return response
