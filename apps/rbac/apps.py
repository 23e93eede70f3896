"""
RBAC app configuration.
"""
from django.apps import AppConfig
from django.conf import settings
from django.db import DatabaseError
import logging

logger = logging.getLogger(__name__)


class RbacConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'apps.rbac'
    verbose_name = 'RBAC (Role-Based Access Control)'

    def ready(self):
        """Import signals, register scoped resources and validate the permission graph."""
        import apps.rbac.signals  # noqa

        from apps.rbac.models import UserRoleAssignment
        from apps.rbac.scope import RegionalScopeFilter, ScopedResource

        RegionalScopeFilter.register(ScopedResource(
            name='assignments',
            model=UserRoleAssignment,
            location_fields=('regions',),
            owner_field='user',
        ))

        from apps.core.apps import should_run_startup_checks
        if not should_run_startup_checks() or not getattr(settings, 'RBAC_VALIDATE_ON_STARTUP', True):
            return

        from apps.rbac.registry import PermissionRegistry
        try:
            PermissionRegistry.validate()
        except DatabaseError as e:
            # Tables may not exist yet on a fresh deployment
            logger.warning(
                "Skipping RBAC configuration check: database unavailable",
                extra={'error': str(e)}
            )
