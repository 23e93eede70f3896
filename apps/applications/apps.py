"""
Applications app configuration.
"""
from django.apps import AppConfig


class ApplicationsConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'apps.applications'
    verbose_name = 'Welfare Applications'

    def ready(self):
        """Register applications as a scoped resource."""
        from apps.applications.models import Application
        from apps.rbac.scope import RegionalScopeFilter, ScopedResource

        RegionalScopeFilter.register(ScopedResource(
            name='applications',
            model=Application,
            location_fields=('state', 'district', 'area', 'unit'),
            project_field='project_id',
            scheme_field='scheme_id',
            owner_field='applicant',
        ))
