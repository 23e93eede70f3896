"""
Tests for the application REST API.
"""
from decimal import Decimal

import pytest
from rest_framework import status

from apps.applications.models import Application
from apps.applications.workflow import ApplicationWorkflow


@pytest.fixture
def beneficiary(make_user, grant_role, locations):
    user = make_user(email='applicant@example.org')
    grant_role(user, 'beneficiary', regions=[locations['KL-TVM-NYT-01']])
    return user


@pytest.fixture
def unit_admin(make_user, grant_role, locations):
    user = make_user(email='unit.admin@example.org')
    grant_role(user, 'unit_admin', regions=[locations['KL-TVM-NYT-01']])
    return user


@pytest.fixture
def as_user(api_client):
    def _as_user(user):
        api_client.force_authenticate(user=user)
        return api_client
    return _as_user


@pytest.fixture
def application(beneficiary, locations):
    return ApplicationWorkflow.submit(beneficiary, {
        'title': 'Housing repair grant',
        'unit': locations['KL-TVM-NYT-01'],
        'scheme_id': 'SCH-HOUSING',
        'requested_amount': Decimal('25000.00'),
    })


@pytest.mark.django_db
class TestApplicationList:
    """Tests for GET and POST /v1/applications/."""

    def test_requires_authentication(self, api_client, rbac_seed):
        response = api_client.get('/v1/applications/')

        assert response.status_code == status.HTTP_401_UNAUTHORIZED

    def test_submit(self, as_user, beneficiary, locations):
        response = as_user(beneficiary).post('/v1/applications/', {
            'title': 'School fees',
            'scheme_id': 'SCH-EDU',
            'requested_amount': '12000.00',
            'unit_id': str(locations['KL-TVM-NYT-01'].id),
        }, format='json')

        assert response.status_code == status.HTTP_201_CREATED
        assert response.data['status'] == Application.STATUS_PENDING
        assert response.data['current_level'] == 'unit_admin'
        assert response.data['district']['code'] == 'KL-TVM'
        assert [entry['action'] for entry in response.data['approval_entries']] == ['submit']

    def test_submit_requires_scheme_or_project(self, as_user, beneficiary, locations):
        response = as_user(beneficiary).post('/v1/applications/', {
            'title': 'School fees',
            'unit_id': str(locations['KL-TVM-NYT-01'].id),
        }, format='json')

        assert response.status_code == status.HTTP_400_BAD_REQUEST

    def test_submit_rejects_non_unit_location(self, as_user, beneficiary, locations):
        response = as_user(beneficiary).post('/v1/applications/', {
            'title': 'School fees',
            'scheme_id': 'SCH-EDU',
            'unit_id': str(locations['KL-TVM-NYT'].id),
        }, format='json')

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert Application.objects.count() == 0

    def test_reviewer_cannot_submit(self, as_user, unit_admin, locations):
        response = as_user(unit_admin).post('/v1/applications/', {
            'title': 'School fees',
            'scheme_id': 'SCH-EDU',
            'unit_id': str(locations['KL-TVM-NYT-01'].id),
        }, format='json')

        assert response.status_code == status.HTTP_403_FORBIDDEN
        assert response.data['code'] == 'PERMISSION_DENIED'

    def test_list_is_scoped_to_region(self, as_user, unit_admin, make_user, make_application, locations):
        applicant = make_user()
        inside = make_application(applicant, locations['KL-TVM-NYT-01'])
        make_application(applicant, locations['KL-TVM-NYT-02'])
        make_application(applicant, locations['KL-MLP-TIR-01'])

        response = as_user(unit_admin).get('/v1/applications/')

        assert response.status_code == status.HTTP_200_OK
        assert [row['application_id'] for row in response.data['results']] == [inside.application_id]

    def test_district_admin_sees_whole_district(self, as_user, make_user, grant_role, make_application, locations):
        applicant = make_user()
        for code in ('KL-TVM-NYT-01', 'KL-TVM-ATL-02', 'KL-MLP-TIR-01'):
            make_application(applicant, locations[code])
        reviewer = make_user()
        grant_role(reviewer, 'district_admin', regions=[locations['KL-TVM']])

        response = as_user(reviewer).get('/v1/applications/')

        assert response.data['count'] == 2

    def test_beneficiary_sees_own_applications(self, as_user, beneficiary, application, make_user, make_application, locations):
        make_application(make_user(), locations['KL-TVM-NYT-01'])

        response = as_user(beneficiary).get('/v1/applications/')

        assert [row['application_id'] for row in response.data['results']] == [application.application_id]

    def test_filter_by_status(self, as_user, unit_admin, application, make_user, make_application, locations):
        make_application(make_user(), locations['KL-TVM-NYT-01'], status=Application.STATUS_REJECTED)

        response = as_user(unit_admin).get('/v1/applications/?status=pending')

        assert [row['application_id'] for row in response.data['results']] == [application.application_id]

    def test_list_requires_read_permission(self, as_user, make_user):
        response = as_user(make_user()).get('/v1/applications/')

        assert response.status_code == status.HTTP_403_FORBIDDEN


@pytest.mark.django_db
class TestApplicationDetail:
    """Tests for application detail and history."""

    def test_detail(self, as_user, unit_admin, application):
        response = as_user(unit_admin).get(f'/v1/applications/{application.application_id}')

        assert response.status_code == status.HTTP_200_OK
        assert response.data['application_id'] == application.application_id
        assert response.data['version'] == 1

    def test_out_of_scope_is_not_found(self, as_user, make_user, grant_role, locations, application):
        reviewer = make_user()
        grant_role(reviewer, 'unit_admin', regions=[locations['KL-MLP-TIR-01']])

        response = as_user(reviewer).get(f'/v1/applications/{application.application_id}')

        assert response.status_code == status.HTTP_404_NOT_FOUND

    def test_history(self, as_user, unit_admin, application):
        ApplicationWorkflow.transition(application.application_id, 'approve', unit_admin, remarks='Verified')

        response = as_user(unit_admin).get(f'/v1/applications/{application.application_id}/history')

        assert response.status_code == status.HTTP_200_OK
        assert [(entry['sequence'], entry['action']) for entry in response.data] == [(1, 'submit'), (2, 'approve')]
        assert response.data[1]['assigned_to']['email'] == unit_admin.email


@pytest.mark.django_db
class TestApplicationTransition:
    """Tests for POST /v1/applications/{application_id}/transition."""

    def url(self, application):
        return f'/v1/applications/{application.application_id}/transition'

    def test_approve(self, as_user, unit_admin, application):
        response = as_user(unit_admin).post(self.url(application), {
            'action': 'approve', 'remarks': 'Documents verified', 'expected_version': 1,
        }, format='json')

        assert response.status_code == status.HTTP_200_OK
        assert response.data['status'] == Application.STATUS_AREA_REVIEW
        assert response.data['current_level'] == 'area_admin'
        assert response.data['version'] == 2

    def test_stale_version_conflicts(self, as_user, unit_admin, application):
        response = as_user(unit_admin).post(self.url(application), {
            'action': 'approve', 'expected_version': 7,
        }, format='json')

        assert response.status_code == status.HTTP_409_CONFLICT
        assert response.data['code'] == 'CONCURRENT_MODIFICATION'

    def test_invalid_transition_conflicts(self, as_user, unit_admin, application):
        response = as_user(unit_admin).post(self.url(application), {'action': 'return'}, format='json')

        assert response.status_code == status.HTTP_409_CONFLICT
        assert response.data['code'] == 'INVALID_TRANSITION'

    def test_out_of_scope_reviewer(self, as_user, make_user, grant_role, locations, application):
        reviewer = make_user()
        grant_role(reviewer, 'unit_admin', regions=[locations['KL-TVM-NYT-02']])

        response = as_user(reviewer).post(self.url(application), {'action': 'approve'}, format='json')

        assert response.status_code == status.HTTP_403_FORBIDDEN
        assert response.data['code'] == 'SCOPE_VIOLATION'

    def test_unknown_action(self, as_user, unit_admin, application):
        response = as_user(unit_admin).post(self.url(application), {'action': 'escalate'}, format='json')

        assert response.status_code == status.HTTP_400_BAD_REQUEST

    def test_repeated_request_id_is_applied_once(self, as_user, unit_admin, application):
        client = as_user(unit_admin)
        payload = {'action': 'approve', 'remarks': 'Verified', 'request_id': 'req-approve-1'}

        first = client.post(self.url(application), payload, format='json')
        second = client.post(self.url(application), payload, format='json')

        assert first.status_code == second.status_code == status.HTTP_200_OK
        assert second.data['version'] == 2
        assert application.approval_entries.count() == 2

    def test_applicant_cancels(self, as_user, beneficiary, application):
        response = as_user(beneficiary).post(self.url(application), {'action': 'cancel'}, format='json')

        assert response.status_code == status.HTTP_200_OK
        assert response.data['status'] == Application.STATUS_CANCELLED

    def test_unknown_application(self, as_user, unit_admin, rbac_seed):
        response = as_user(unit_admin).post(
            '/v1/applications/APP2026999999/transition', {'action': 'approve'}, format='json'
        )

        assert response.status_code == status.HTTP_404_NOT_FOUND
