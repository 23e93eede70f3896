"""
Locations app configuration.
"""
from django.apps import AppConfig


class LocationsConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'apps.locations'
    verbose_name = 'Locations'

    def ready(self):
        """Import signals when app is ready."""
        import apps.locations.signals  # noqa
