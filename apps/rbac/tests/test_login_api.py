"""
Tests for the authentication endpoints.
"""
import pytest
from rest_framework import status

from apps.rbac.services import AuthService


@pytest.mark.django_db
class TestLogin:
    """Tests for POST /v1/auth/login."""

    def test_login_returns_token(self, api_client, make_user):
        user = make_user(email='unit.admin@example.org')

        response = api_client.post('/v1/auth/login', {
            'email': 'unit.admin@example.org', 'password': 'testpass123',
        }, format='json')

        assert response.status_code == status.HTTP_200_OK
        assert response.data['user']['email'] == user.email
        assert AuthService.get_user_from_jwt(response.data['token']) == user

    def test_wrong_password(self, api_client, make_user):
        make_user(email='unit.admin@example.org')

        response = api_client.post('/v1/auth/login', {
            'email': 'unit.admin@example.org', 'password': 'wrong-password',
        }, format='json')

        assert response.status_code == status.HTTP_401_UNAUTHORIZED
        assert response.data['code'] == 'AUTHENTICATION_FAILED'

    def test_inactive_user_cannot_login(self, api_client, make_user):
        make_user(email='gone@example.org', is_active=False)

        response = api_client.post('/v1/auth/login', {
            'email': 'gone@example.org', 'password': 'testpass123',
        }, format='json')

        assert response.status_code == status.HTTP_401_UNAUTHORIZED

    def test_invalid_payload(self, api_client, db):
        response = api_client.post('/v1/auth/login', {'email': 'not-an-email'}, format='json')

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.data['code'] == 'VALIDATION_ERROR'

    def test_rate_limited_after_five_attempts(self, api_client, db):
        payload = {'email': 'someone@example.org', 'password': 'wrong-password'}
        for _ in range(5):
            api_client.post('/v1/auth/login', payload, format='json')

        response = api_client.post('/v1/auth/login', payload, format='json')

        assert response.status_code == status.HTTP_429_TOO_MANY_REQUESTS
        assert response['Retry-After'] == '60'


@pytest.mark.django_db
class TestProfile:
    """Tests for GET /v1/auth/me."""

    def test_requires_token(self, api_client, db):
        response = api_client.get('/v1/auth/me')

        assert response.status_code == status.HTTP_401_UNAUTHORIZED

    def test_invalid_token(self, api_client, db):
        api_client.credentials(HTTP_AUTHORIZATION='Bearer not-a-token')

        response = api_client.get('/v1/auth/me')

        assert response.status_code == status.HTTP_401_UNAUTHORIZED

    def test_profile_with_token(self, api_client, make_user, grant_role, locations):
        user = make_user()
        grant_role(user, 'unit_admin', regions=[locations['KL-TVM-NYT-01']])
        api_client.credentials(HTTP_AUTHORIZATION=f'Bearer {AuthService.generate_jwt(user)}')

        response = api_client.get('/v1/auth/me')

        assert response.status_code == status.HTTP_200_OK
        assert response.data['user']['id'] == str(user.id)
        assert [row['role'] for row in response.data['assignments']] == ['unit_admin']
        assert 'applications.approve' in response.data['permissions']
        assert response.data['scope']['global'] is False
