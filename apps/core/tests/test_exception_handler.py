"""
Tests for the API exception handler.
"""
import pytest
from django_ratelimit.exceptions import Ratelimited
from rest_framework import status
from rest_framework.exceptions import NotAuthenticated
from rest_framework.test import APIRequestFactory

from apps.core.exceptions import (
    ConcurrentModification, InvalidTransition, PermissionDeniedError,
    RateLimitExceeded, ScopeViolation, ValidationError, custom_exception_handler,
)


@pytest.fixture
def handler_context():
    request = APIRequestFactory().post('/v1/applications/APP2026000001/transition')
    request.request_id = 'req-123'
    return {'request': request}


class TestCustomExceptionHandler:
    """Tests for custom_exception_handler."""

    def test_permission_denied_hides_details(self, handler_context):
        exc = PermissionDeniedError('You do not have permission.', details={'region': 'KL-MLP'})

        response = custom_exception_handler(exc, handler_context)

        assert response.status_code == status.HTTP_403_FORBIDDEN
        assert response.data == {
            'error': 'You do not have permission.',
            'code': 'PERMISSION_DENIED',
            'request_id': 'req-123',
        }

    def test_scope_violation_hides_details(self, handler_context):
        exc = ScopeViolation('Application is outside your scope.', details={'user': 'other@example.org'})

        response = custom_exception_handler(exc, handler_context)

        assert response.status_code == status.HTTP_403_FORBIDDEN
        assert response.data['code'] == 'SCOPE_VIOLATION'
        assert 'details' not in response.data

    def test_rate_limit_sets_retry_after(self, handler_context):
        exc = RateLimitExceeded('Rate limit exceeded.', retry_after=42)

        response = custom_exception_handler(exc, handler_context)

        assert response.status_code == status.HTTP_429_TOO_MANY_REQUESTS
        assert response['Retry-After'] == '42'
        assert response.data['retry_after'] == 42

    @pytest.mark.parametrize('exc_class,code', [
        (InvalidTransition, 'INVALID_TRANSITION'),
        (ConcurrentModification, 'CONCURRENT_MODIFICATION'),
    ])
    def test_recoverable_errors_are_conflicts(self, handler_context, exc_class, code):
        response = custom_exception_handler(exc_class('Try again.'), handler_context)

        assert response.status_code == status.HTTP_409_CONFLICT
        assert response.data['code'] == code

    def test_validation_error_exposes_details(self, handler_context):
        exc = ValidationError('Too many scope entries.', details={'max_scopes': 1})

        response = custom_exception_handler(exc, handler_context)

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.data['details'] == {'max_scopes': 1}

    def test_ratelimited_maps_to_429(self, handler_context):
        response = custom_exception_handler(Ratelimited(), handler_context)

        assert response.status_code == status.HTTP_429_TOO_MANY_REQUESTS
        assert response.data['code'] == 'RATE_LIMIT_EXCEEDED'
        assert 'Retry-After' in response

    def test_drf_errors_carry_request_id(self, handler_context):
        response = custom_exception_handler(NotAuthenticated(), handler_context)

        assert response.status_code == status.HTTP_401_UNAUTHORIZED
        assert response.data['request_id'] == 'req-123'

    def test_unhandled_errors_become_generic_500(self, handler_context):
        response = custom_exception_handler(RuntimeError('database password is hunter2'), handler_context)

        assert response.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR
        assert response.data == {
            'error': 'Internal server error',
            'code': 'INTERNAL_ERROR',
            'request_id': 'req-123',
        }
