from django.apps import AppConfig
from django.conf import settings
from django.core.exceptions import ImproperlyConfigured
import logging
import sys
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger(__name__)

DEV_KEY_MARKERS = ('django-insecure', 'dev-only')


class CoreConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'apps.core'
    verbose_name = 'Core'

    def ready(self):
        """
        Perform startup validation checks when Django initializes.

        This ensures critical security configurations are properly set
        before the application starts accepting requests.
        """
        if not should_run_startup_checks():
            return

        self._validate_jwt_configuration()
        self._validate_security_settings()
        self._validate_workflow_settings()

        logger.info("All startup configuration validations passed")

    def _validate_jwt_configuration(self):
        """Validate JWT secret key configuration."""
        jwt_secret = getattr(settings, 'JWT_SECRET_KEY', None)
        secret_key = getattr(settings, 'SECRET_KEY', None)

        if not jwt_secret:
            raise ImproperlyConfigured(
                "JWT_SECRET_KEY must be set in environment variables. "
                "Generate a strong key with: "
                "python -c \"import secrets; print(secrets.token_urlsafe(32))\""
            )

        if len(jwt_secret) < 32:
            raise ImproperlyConfigured(
                f"JWT_SECRET_KEY must be at least 32 characters long for security. "
                f"Current length: {len(jwt_secret)}."
            )

        if jwt_secret == secret_key:
            raise ImproperlyConfigured(
                "JWT_SECRET_KEY must be different from SECRET_KEY for security."
            )

        unique_chars = len(set(jwt_secret))
        if unique_chars < 16:
            raise ImproperlyConfigured(
                f"JWT_SECRET_KEY has insufficient entropy. "
                f"Found only {unique_chars} unique characters, need at least 16."
            )

        if not settings.DEBUG and any(marker in jwt_secret for marker in DEV_KEY_MARKERS):
            raise ImproperlyConfigured(
                "JWT_SECRET_KEY is the development default. "
                "Set JWT_SECRET_KEY in the environment before running with DEBUG off."
            )

    def _validate_security_settings(self):
        """Validate general security settings."""
        secret_key = getattr(settings, 'SECRET_KEY', None)

        if not secret_key:
            raise ImproperlyConfigured(
                "SECRET_KEY must be set in environment variables. "
                "Generate with: "
                "python -c \"import secrets; print(secrets.token_urlsafe(50))\""
            )

        if not settings.DEBUG:
            secret_lower = secret_key.lower()
            for marker in DEV_KEY_MARKERS:
                if marker in secret_lower:
                    raise ImproperlyConfigured(
                        f"SECRET_KEY appears to be a development default (contains '{marker}'). "
                        f"Generate a strong key with: "
                        f"python -c \"import secrets; print(secrets.token_urlsafe(50))\""
                    )

            if not getattr(settings, 'SECURE_SSL_REDIRECT', False):
                logger.warning(
                    "SECURE_SSL_REDIRECT is not enabled in production. "
                    "HTTPS should be enforced for security."
                )

    def _validate_workflow_settings(self):
        """Validate the review timezone and per-level SLA hours."""
        from apps.rbac.models import Role

        try:
            ZoneInfo(settings.RBAC_TIMEZONE)
        except (ZoneInfoNotFoundError, ValueError):
            raise ImproperlyConfigured(f"RBAC_TIMEZONE '{settings.RBAC_TIMEZONE}' is not a known timezone.")

        sla_hours = settings.APPLICATION_SLA_HOURS
        missing = [level for level in Role.APPROVAL_LEVEL_ORDER if level not in sla_hours]
        if missing:
            raise ImproperlyConfigured(f"APPLICATION_SLA_HOURS has no entry for: {', '.join(missing)}")
        if any(hours <= 0 for hours in sla_hours.values()):
            raise ImproperlyConfigured("APPLICATION_SLA_HOURS values must be positive.")
        if settings.APPLICATION_SLA_GRACE_HOURS < 0:
            raise ImproperlyConfigured("APPLICATION_SLA_GRACE_HOURS cannot be negative.")


def should_run_startup_checks():
    """
    Only validate when serving requests or running the test suite.

    Management commands such as migrate and the seed commands must run
    before the configuration (or the RBAC tables) are complete. Under
    pytest the database is not available while apps load.
    """
    argv = sys.argv
    if argv and 'gunicorn' in argv[0]:
        return True
    if argv and 'pytest' in argv[0]:
        return False
    if len(argv) > 1 and argv[1] not in ('runserver', 'test'):
        return False
    return True
