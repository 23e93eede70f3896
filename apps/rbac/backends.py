"""
Email authentication backend for the Django admin.

API clients authenticate with JWTs issued by ``AuthService.login``; this
backend only serves the admin login form, where operators sign in with
their email address.
"""
from django.contrib.auth.backends import BaseBackend

from apps.core.logging import SecurityLogger
from apps.core.middleware import get_client_ip
from apps.rbac.models import AuditLog, User


class EmailAuthBackend(BaseBackend):
    """
    Authenticate admin users by email and password.

    Failed attempts are written to the security log; successful admin
    sign-ins are recorded in the audit trail as ``admin_login``.
    """

    def authenticate(self, request, username=None, password=None, **kwargs):
        # The admin form posts the email as ``username``
        email = username or kwargs.get('email')
        if not email or not password:
            return None

        ip_address = get_client_ip(request) if request is not None else None
        user = User.objects.by_email(email)
        if user is None:
            # Hash anyway so unknown emails take as long as wrong passwords
            User().set_password(password)
            SecurityLogger.log_failed_login(email, ip_address, reason='unknown_email')
            return None

        if not (user.is_active and user.check_password(password)):
            SecurityLogger.log_failed_login(email, ip_address, reason='invalid_credentials')
            return None

        AuditLog.log_action(
            action='admin_login',
            user=user,
            target_type='user',
            target_id=user.id,
            ip_address=ip_address,
        )
        return user

    def get_user(self, user_id):
        return User.objects.active().filter(pk=user_id).first()
