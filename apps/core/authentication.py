"""
Custom DRF authentication classes.
"""
from rest_framework.authentication import BaseAuthentication, get_authorization_header
from rest_framework import exceptions

from apps.core.sentry_utils import set_actor_context


class JWTAuthentication(BaseAuthentication):
    """
    DRF authentication class for ``Authorization: Bearer <jwt>`` headers.

    Tokens are issued by ``AuthService.login`` and carry the user id.
    Requests without a bearer header are left anonymous (and then rejected
    by ``IsAuthenticated`` where a view requires a user); a header with a
    bad or expired token fails the request outright.
    """

    keyword = 'Bearer'

    def authenticate(self, request):
        """
        Return the user identified by the bearer token.

        Returns:
            tuple: (user, token) if the token is valid, None if no token was sent

        Raises:
            AuthenticationFailed: if a token was sent but is invalid
        """
        from apps.rbac.models import UserRoleAssignment
        from apps.rbac.services import AuthService

        auth = get_authorization_header(request).split()
        if not auth or auth[0].lower() != self.keyword.lower().encode():
            return None

        if len(auth) != 2:
            raise exceptions.AuthenticationFailed('Invalid Authorization header.')

        try:
            token = auth[1].decode()
        except UnicodeError:
            raise exceptions.AuthenticationFailed('Invalid Authorization header.')

        user = AuthService.get_user_from_jwt(token)
        if user is None:
            raise exceptions.AuthenticationFailed('Invalid or expired token.')

        set_actor_context(
            user,
            UserRoleAssignment.objects.valid_for(user).values_list('role__name', flat=True),
        )

        return (user, token)

    def authenticate_header(self, request):
        return self.keyword
