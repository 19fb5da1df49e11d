# scholarpay/middleware.py

"""
API error middleware.

Domain errors (utils.exceptions.ScholarpayError) are written for end users
and are returned verbatim with their HTTP status. Anything else is logged
with its traceback and the client only sees a generic failure message.
"""

import logging

from django.core.exceptions import ValidationError as DjangoValidationError
from django.http import JsonResponse, Http404

from utils.exceptions import ScholarpayError, NotFoundError, from_django_validation_error

logger = logging.getLogger(__name__)

GENERIC_ERROR_MESSAGE = "Something went wrong while processing your request. Please try again."


class ApiErrorMiddleware:

    def __init__(self, get_response):
        self.get_response = get_response

    def __call__(self, request):
        return self.get_response(request)

    def process_exception(self, request, exception):
        correlation_id = getattr(request, 'correlation_id', None)

        if isinstance(exception, DjangoValidationError):
            exception = from_django_validation_error(exception)
        elif isinstance(exception, Http404):
            exception = NotFoundError(str(exception) or "Not found")

        if isinstance(exception, ScholarpayError):
            level = logging.ERROR if exception.http_status >= 500 else logging.INFO
            logger.log(level, f"{request.method} {request.path} -> {exception.code}: {exception.message}")
            return JsonResponse(exception.to_dict(), status=exception.http_status)

        logger.exception(f"Unhandled error on {request.method} {request.path}")
        return JsonResponse(
            {
                "success": False,
                "code": "INTERNAL",
                "message": GENERIC_ERROR_MESSAGE,
                "request_id": correlation_id,
            },
            status=500
        )
