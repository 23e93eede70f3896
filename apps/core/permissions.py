"""
DRF permission classes and decorators for RBAC permission enforcement.

This module provides:
- HasPermission: DRF permission class that routes every check through AccessDecision
- @requires_permission: Decorator to declare required permissions on views
"""
import logging
from functools import wraps
from rest_framework.permissions import BasePermission

from apps.core.exceptions import RateLimitExceeded

logger = logging.getLogger(__name__)


class HasPermission(BasePermission):
    """
    DRF permission class that enforces permission requirements on API endpoints.

    This permission class:
    1. Reads the view's ``required_permissions`` (all must be allowed) or
       ``any_permissions`` (at least one must be allowed)
    2. Evaluates each through AccessDecision with the request's time and IP
    3. Raises RateLimitExceeded (429) when a permission is rate limited
    4. Returns False (403) on any other denial

    Usage in views:
        class RoleListView(APIView):
            permission_classes = [HasPermission]
            required_permissions = ['roles.read']

    Or use with decorator:
        @requires_permission('roles.read')
        class RoleListView(APIView):
            ...
    """

    def has_permission(self, request, view):
        """
        Check if the request's user holds the view's required permissions.

        Args:
            request: DRF request object
            view: DRF view instance with optional required_permissions / any_permissions

        Returns:
            bool: True if the permission requirement is satisfied, False otherwise
        """
        from apps.rbac.access import AccessDecision, AccessContext

        required = _as_list(getattr(view, 'required_permissions', None))
        any_of = _as_list(getattr(view, 'any_permissions', None))

        user = getattr(request, 'user', None)
        if user is None or not user.is_authenticated:
            return False

        if not required and not any_of:
            return True

        context = AccessContext.from_request(request)

        if required:
            decision = AccessDecision.has_all_permissions(user, required, context)
        else:
            decision = AccessDecision.has_any_permission(user, any_of, context)

        if decision.is_rate_limited:
            raise RateLimitExceeded(
                'Rate limit exceeded for this action.',
                retry_after=decision.retry_after,
                details={'permission': decision.permission}
            )

        if not decision.allowed:
            logger.warning(
                f"Permission denied on {view.__class__.__name__}",
                extra={
                    'user_id': str(user.id),
                    'permission': decision.permission,
                    'reason': decision.reason,
                    'view': view.__class__.__name__,
                    'method': request.method,
                    'path': request.path,
                    'request_id': getattr(request, 'request_id', None),
                }
            )
            return False

        return True


def _as_list(value):
    if not value:
        return []
    if isinstance(value, str):
        return [value]
    return list(value)


def requires_permission(*permissions, any_of=False):
    """
    Decorator to declare required permissions on view classes or methods.

    This decorator sets the required_permissions (or any_permissions when
    ``any_of=True``) attribute on the view, which is then checked by the
    HasPermission permission class.

    Usage:
        @requires_permission('roles.read')
        class RoleListView(APIView):
            permission_classes = [HasPermission]

    Or on individual methods:
        class RoleListView(APIView):
            permission_classes = [HasPermission]

            @requires_permission('roles.read')
            def get(self, request):
                pass

            @requires_permission('roles.create')
            def post(self, request):
                pass

    Method-level requirements are checked when the method runs (DRF calls
    ``check_permissions`` before dispatching to the handler), so the
    decorated handler re-runs the check itself.

    Args:
        *permissions: Permission names required for access
        any_of: Require any one permission instead of all of them

    Returns:
        Decorator function that sets the permission attribute
    """
    attr = 'any_permissions' if any_of else 'required_permissions'

    def decorator(view_or_method):
        if isinstance(view_or_method, type):
            setattr(view_or_method, attr, list(permissions))
            return view_or_method

        @wraps(view_or_method)
        def wrapped(self, request, *args, **kwargs):
            setattr(self, attr, list(permissions))
            if not HasPermission().has_permission(request, self):
                self.permission_denied(request, message='You do not have permission to perform this action.')
            return view_or_method(self, request, *args, **kwargs)

        setattr(wrapped, attr, list(permissions))
        return wrapped

    return decorator
