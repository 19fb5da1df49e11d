# utils/exceptions.py

"""
Domain errors raised by the fee, concession and payment services.

Every error carries a machine-readable ``code`` and the HTTP status it maps
to. Messages are written for end users and are returned verbatim by
ApiErrorMiddleware; anything that is not a ScholarpayError is reported as
a generic failure and logged server-side.
"""

from django.core.exceptions import ValidationError as DjangoValidationError


class ScholarpayError(Exception):
    """Base class for all domain errors."""

    code = 'INTERNAL'
    http_status = 500

    def __init__(self, message, details=None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self):
        data = {
            'success': False,
            'code': self.code,
            'message': self.message,
        }
        if self.details:
            data['errors'] = self.details
        return data


class ValidationError(ScholarpayError):
    """Malformed or cross-tenant input, raised before any write."""

    code = 'BAD_REQUEST'
    http_status = 400


class NotFoundError(ScholarpayError):
    code = 'NOT_FOUND'
    http_status = 404


class ConflictError(ScholarpayError):
    """Duplicate names, overlapping concessions, invalid state transitions."""

    code = 'CONFLICT'
    http_status = 409


class PreconditionError(ScholarpayError):
    """Gateway not configured or dependent records still in place."""

    code = 'PRECONDITION_FAILED'
    http_status = 412


class ExternalServiceError(ScholarpayError):
    """Gateway rejected a call or a signature did not verify."""

    code = 'INTERNAL'
    http_status = 502


def from_django_validation_error(exc):
    """
    Convert django.core.exceptions.ValidationError raised by model clean()
    or form validation into our ValidationError.
    """
    if hasattr(exc, 'message_dict'):
        details = {field: [str(m) for m in messages] for field, messages in exc.message_dict.items()}
        first = next(iter(details.values()), ['Invalid input'])
        return ValidationError(first[0], details=details)
    return ValidationError('; '.join(str(m) for m in exc.messages))


def form_errors(form):
    """Build a ValidationError from a bound, invalid Django form."""
    details = {field: [str(e) for e in errors] for field, errors in form.errors.items()}
    field, messages = next(iter(details.items()), ('__all__', ['Invalid input']))
    if field == '__all__':
        message = messages[0]
    else:
        message = f"{field}: {messages[0]}"
    return ValidationError(message, details=details)


def full_clean_or_raise(instance, exclude=None):
    """Run model validation and re-raise as our ValidationError."""
    try:
        instance.full_clean(exclude=exclude, validate_unique=False, validate_constraints=False)
    except DjangoValidationError as e:
        raise from_django_validation_error(e)
