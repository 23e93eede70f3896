"""
Exception hierarchy and custom exception handlers for DRF.
"""
import logging
from rest_framework.views import exception_handler
from rest_framework.response import Response
from rest_framework import status
from django_ratelimit.exceptions import Ratelimited
from django.http import JsonResponse

from apps.core.middleware import get_client_ip

logger = logging.getLogger(__name__)

LOGIN_RETRY_AFTER = 60


class WelfareException(Exception):
    """Base exception for welfare-platform errors."""

    status_code = 400
    code = 'ERROR'
    # Whether ``details`` may be returned to the client. Access-control
    # errors keep their details server-side so responses never reveal
    # other users, regions or permissions.
    expose_details = True

    def __init__(self, message, details=None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class AuthenticationError(WelfareException):
    """Raised when the request carries no valid identity."""
    status_code = 401
    code = 'AUTHENTICATION_FAILED'
    expose_details = False


class PermissionDeniedError(WelfareException):
    """Raised when the resolved permission set lacks the permission or a condition failed."""
    status_code = 403
    code = 'PERMISSION_DENIED'
    expose_details = False


class ScopeViolation(WelfareException):
    """Raised when the target resource lies outside the caller's resolved scope."""
    status_code = 403
    code = 'SCOPE_VIOLATION'
    expose_details = False


class RateLimitExceeded(WelfareException):
    """Raised when a rate-limited permission is used past its limit."""
    status_code = 429
    code = 'RATE_LIMIT_EXCEEDED'
    expose_details = False

    def __init__(self, message, retry_after=None, details=None):
        self.retry_after = retry_after
        super().__init__(message, details)


class InvalidTransition(WelfareException):
    """Raised when a workflow action is illegal for the application's level or status."""
    status_code = 409
    code = 'INVALID_TRANSITION'


class ConcurrentModification(WelfareException):
    """Raised when an application changed since the caller last read it."""
    status_code = 409
    code = 'CONCURRENT_MODIFICATION'


class ValidationError(WelfareException):
    """Raised when input validation fails."""
    status_code = 400
    code = 'VALIDATION_ERROR'


class NotFoundError(WelfareException):
    """Raised when a requested object does not exist or is not visible."""
    status_code = 404
    code = 'NOT_FOUND'
    expose_details = False


class ImmutableRecordError(WelfareException):
    """Raised when code tries to change or remove a ledger entry."""
    status_code = 409
    code = 'IMMUTABLE_RECORD'


class ConfigurationError(WelfareException):
    """
    Raised when RBAC definitions are invalid.

    A cyclic permission dependency graph, or a dependency that references
    a missing permission, is a deployment-blocking error: it is raised while
    loading definitions, never while answering a request.
    """
    status_code = 500
    code = 'CONFIGURATION_ERROR'
    expose_details = False


def ratelimit_view(request, exception):
    """
    Custom view for django-ratelimit to return 429 instead of 403.

    This is called when rate limit is exceeded with block=True.
    Returns 429 with Retry-After header indicating when to retry.
    """
    from apps.core.logging import SecurityLogger

    ip_address = get_client_ip(request) or 'unknown'

    SecurityLogger.log_rate_limit_exceeded(
        endpoint=request.path,
        ip_address=ip_address,
        limit='Rate limit exceeded'
    )

    response = JsonResponse(
        {
            'error': 'Rate limit exceeded. Please try again later.',
            'code': 'RATE_LIMIT_EXCEEDED',
            'retry_after': LOGIN_RETRY_AFTER,
        },
        status=429
    )

    # Add Retry-After header (RFC 6585)
    response['Retry-After'] = str(LOGIN_RETRY_AFTER)

    return response


def _rate_limited_response(retry_after, request_id):
    response = Response(
        {
            'error': 'Rate limit exceeded. Please try again later.',
            'code': 'RATE_LIMIT_EXCEEDED',
            'request_id': request_id,
            'retry_after': retry_after,
        },
        status=status.HTTP_429_TOO_MANY_REQUESTS
    )
    if retry_after:
        response['Retry-After'] = str(retry_after)
    return response


def custom_exception_handler(exc, context):
    """
    Custom exception handler that logs errors and returns consistent format.

    Every error body has the shape ``{error, code, request_id}``; domain
    errors may add ``details`` when they are safe to expose.
    """
    request = context.get('request')
    request_id = getattr(request, 'request_id', None) if request else None
    path = request.path if request else None
    method = request.method if request else None

    # Handle django-ratelimit exceptions
    if isinstance(exc, Ratelimited):
        from apps.core.logging import SecurityLogger

        SecurityLogger.log_rate_limit_exceeded(
            endpoint=path or 'unknown',
            ip_address=get_client_ip(request) or 'unknown',
            limit='Rate limit exceeded'
        )
        return _rate_limited_response(LOGIN_RETRY_AFTER, request_id)

    if isinstance(exc, WelfareException):
        log_method = logger.error if exc.status_code >= 500 else logger.warning
        log_method(
            f"API Exception: {exc.__class__.__name__}",
            extra={
                'exception': exc.message,
                'details': exc.details,
                'request_id': request_id,
                'path': path,
                'method': method,
            }
        )

        if isinstance(exc, RateLimitExceeded):
            return _rate_limited_response(exc.retry_after, request_id)

        data = {
            'error': exc.message if exc.status_code < 500 else 'Internal server error',
            'code': exc.code,
            'request_id': request_id,
        }
        if exc.expose_details and exc.details:
            data['details'] = exc.details
        return Response(data, status=exc.status_code)

    # Call DRF's default exception handler first
    response = exception_handler(exc, context)

    logger.error(
        f"API Exception: {exc.__class__.__name__}",
        extra={
            'exception': str(exc),
            'request_id': request_id,
            'path': path,
            'method': method,
        },
        exc_info=response is None
    )

    # If DRF didn't handle it, return a generic 500 error
    if response is None:
        return Response(
            {
                'error': 'Internal server error',
                'code': 'INTERNAL_ERROR',
                'request_id': request_id,
            },
            status=status.HTTP_500_INTERNAL_SERVER_ERROR
        )

    # Add request_id to all error responses
    if request_id and isinstance(response.data, dict):
        response.data['request_id'] = request_id

    return response
