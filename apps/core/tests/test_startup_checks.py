"""
Tests for configuration validation run at startup.
"""
import pytest
from django.apps import apps
from django.core.exceptions import ImproperlyConfigured


@pytest.fixture
def core_config():
    return apps.get_app_config('core')


class TestWorkflowSettings:

    def test_defaults_are_valid(self, core_config):
        core_config._validate_workflow_settings()

    def test_unknown_timezone(self, core_config, settings):
        settings.RBAC_TIMEZONE = 'Mars/Olympus_Mons'

        with pytest.raises(ImproperlyConfigured):
            core_config._validate_workflow_settings()

    def test_missing_sla_level(self, core_config, settings):
        settings.APPLICATION_SLA_HOURS = {'unit_admin': 72, 'area_admin': 72, 'district_admin': 120}

        with pytest.raises(ImproperlyConfigured, match='state_admin'):
            core_config._validate_workflow_settings()

    def test_non_positive_sla_hours(self, core_config, settings):
        settings.APPLICATION_SLA_HOURS = {
            'unit_admin': 0, 'area_admin': 72, 'district_admin': 120, 'state_admin': 168,
        }

        with pytest.raises(ImproperlyConfigured):
            core_config._validate_workflow_settings()


class TestSecretSettings:

    def test_jwt_secret_must_differ_from_secret_key(self, core_config, settings):
        settings.JWT_SECRET_KEY = settings.SECRET_KEY = 'k7Qz2pX9vLm4Rt8wYc1Nf6Hb3Gd5Js0A'

        with pytest.raises(ImproperlyConfigured, match='different'):
            core_config._validate_jwt_configuration()

    def test_short_jwt_secret(self, core_config, settings):
        settings.JWT_SECRET_KEY = 'short'

        with pytest.raises(ImproperlyConfigured, match='32 characters'):
            core_config._validate_jwt_configuration()
