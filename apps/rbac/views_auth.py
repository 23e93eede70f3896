"""
Authentication REST API views.

Implements endpoints for:
- Login (JWT issue)
- Current user profile with roles and effective permissions
"""
from rest_framework import status
from rest_framework.views import APIView
from rest_framework.response import Response
from django_ratelimit.decorators import ratelimit
from django.utils.decorators import method_decorator
from drf_spectacular.utils import extend_schema, OpenApiExample
from drf_spectacular.types import OpenApiTypes

from apps.core.exceptions import (
    LOGIN_RETRY_AFTER, AuthenticationError, RateLimitExceeded, ValidationError,
)
from apps.core.logging import SecurityLogger
from apps.core.middleware import get_client_ip
from apps.rbac.models import UserRoleAssignment
from apps.rbac.resolver import PermissionResolver
from apps.rbac.scope import RegionalScopeFilter
from apps.rbac.serializers import AssignmentSerializer, LoginSerializer, UserSerializer
from apps.rbac.services import AuthService


@extend_schema(
    tags=['Authentication'],
    summary='Login',
    description='''
Authenticate with email and password and receive a JWT.

Send the token on later requests as `Authorization: Bearer <token>`.

**No authentication required** - this is a public endpoint.

**Rate limit**: 5 requests/minute per IP
    ''',
    request=LoginSerializer,
    responses={
        200: OpenApiTypes.OBJECT,
        400: OpenApiTypes.OBJECT,
        401: OpenApiTypes.OBJECT,
        429: OpenApiTypes.OBJECT,
    },
    examples=[
        OpenApiExample(
            'Login Request',
            value={'email': 'unit.admin@example.org', 'password': 'correct horse battery staple'},
            request_only=True
        ),
        OpenApiExample(
            'Invalid Credentials',
            value={'error': 'Invalid email or password', 'code': 'AUTHENTICATION_FAILED'},
            response_only=True,
            status_codes=['401']
        ),
        OpenApiExample(
            'Rate Limit Exceeded',
            value={
                'error': 'Rate limit exceeded. Please try again later.',
                'code': 'RATE_LIMIT_EXCEEDED',
                'retry_after': 60
            },
            response_only=True,
            status_codes=['429']
        )
    ]
)
@method_decorator(ratelimit(key='ip', rate='5/m', method='POST', block=False), name='dispatch')
class LoginView(APIView):
    """
    POST /v1/auth/login

    Authenticate user and return JWT token.

    No authentication required.
    Rate limited to 5 requests per minute per IP address.
    """
    authentication_classes = []
    permission_classes = []

    def post(self, request):
        """Login user."""
        ip_address = get_client_ip(request)

        if getattr(request, 'limited', False):
            SecurityLogger.log_rate_limit_exceeded(
                endpoint='/v1/auth/login',
                ip_address=ip_address,
                limit='5/min per IP'
            )
            raise RateLimitExceeded('Too many login attempts.', retry_after=LOGIN_RETRY_AFTER)

        serializer = LoginSerializer(data=request.data)
        if not serializer.is_valid():
            raise ValidationError('Validation error', details=serializer.errors)

        email = serializer.validated_data['email']
        result = AuthService.login(email=email, password=serializer.validated_data['password'])
        if not result:
            SecurityLogger.log_failed_login(
                email=email,
                ip_address=ip_address,
                user_agent=request.META.get('HTTP_USER_AGENT', 'unknown'),
                reason='invalid_credentials'
            )
            raise AuthenticationError('Invalid email or password')

        return Response(
            {
                'user': UserSerializer(result['user']).data,
                'token': result['token'],
            },
            status=status.HTTP_200_OK
        )


@extend_schema(
    tags=['Authentication'],
    summary='Get current user',
    description='''
Get the authenticated user's profile, role assignments, effective
permission names and scope.

**Requires JWT authentication.**
    ''',
    responses={200: OpenApiTypes.OBJECT, 401: OpenApiTypes.OBJECT},
)
class UserProfileView(APIView):
    """
    GET /v1/auth/me

    Requires JWT authentication.
    """

    def get(self, request):
        user = request.user
        assignments = (
            UserRoleAssignment.objects.active()
            .filter(user=user)
            .select_related('role', 'user', 'assigned_by', 'approved_by')
            .prefetch_related('regions')
            .order_by('-is_primary', 'role__level')
        )
        return Response({
            'user': UserSerializer(user).data,
            'assignments': AssignmentSerializer(assignments, many=True).data,
            'permissions': sorted(PermissionResolver.get_effective_permission_names(user)),
            'scope': RegionalScopeFilter.describe_scope(user),
        })
