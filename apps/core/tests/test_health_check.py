"""
Tests for the health check endpoint.
"""
import pytest
from unittest.mock import patch
from rest_framework import status

from apps.core.exceptions import ConfigurationError


@pytest.mark.django_db
class TestHealthCheck:
    """Tests for GET /v1/health/."""

    def test_healthy_without_authentication(self, api_client, rbac_seed):
        response = api_client.get('/v1/health/')

        assert response.status_code == status.HTTP_200_OK
        assert response.data['status'] == 'healthy'
        assert response.data['rbac'] == 'healthy'

    def test_cyclic_permission_graph_is_unhealthy(self, api_client):
        error = ConfigurationError("Permission dependency cycle in 'requires': a -> b -> a")
        with patch('apps.rbac.registry.PermissionRegistry.validate', side_effect=error):
            response = api_client.get('/v1/health/')

        assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE
        assert response.data['rbac'] == 'unhealthy'
        assert any('cycle' in message for message in response.data['errors'])
