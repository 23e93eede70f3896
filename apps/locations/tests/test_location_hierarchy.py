"""
Tests for the location hierarchy service, model validation and API.
"""
import pytest
from django.core.exceptions import ValidationError
from rest_framework import status

from apps.locations.models import Location
from apps.locations.services import LocationHierarchy


@pytest.mark.django_db
class TestLocationModel:
    """Tests for Location validation."""

    def test_unit_requires_area_parent(self, locations):
        unit = Location(name='Stray', code='STRAY', type=Location.TYPE_UNIT, parent=locations['KL-TVM'])
        with pytest.raises(ValidationError):
            unit.full_clean()

    def test_state_cannot_have_parent(self, locations):
        state = Location(name='Other', code='OT', type=Location.TYPE_STATE, parent=locations['KL'])
        with pytest.raises(ValidationError):
            state.full_clean()

    def test_seed_is_idempotent(self, locations):
        from django.core.management import call_command
        from io import StringIO

        call_command('seed_locations', stdout=StringIO())
        assert Location.objects.count() == len(locations)


@pytest.mark.django_db
class TestLocationHierarchy:
    """Tests for LocationHierarchy lookups."""

    def test_descendants_include_self_and_subtree(self, locations):
        ids = LocationHierarchy.get_descendant_ids(locations['KL-TVM'].id)

        assert str(locations['KL-TVM'].id) in ids
        assert str(locations['KL-TVM-NYT-01'].id) in ids
        assert str(locations['KL-MLP-TIR-01'].id) not in ids
        assert len(ids) == 7

    def test_expand_regions_of_nothing_is_empty(self, locations):
        assert LocationHierarchy.expand_regions([]) == set()

    def test_ancestors_nearest_first(self, locations):
        ancestors = LocationHierarchy.get_ancestor_ids(locations['KL-TVM-NYT-01'].id)

        assert ancestors == [
            str(locations['KL-TVM-NYT'].id),
            str(locations['KL-TVM'].id),
            str(locations['KL'].id),
        ]

    def test_chain_keyed_by_type(self, locations):
        chain = LocationHierarchy.get_chain(locations['KL-MLP-PMN-02'])

        assert chain['state'] == locations['KL']
        assert chain['district'] == locations['KL-MLP']
        assert chain['area'] == locations['KL-MLP-PMN']
        assert chain['unit'] == locations['KL-MLP-PMN-02']

    def test_new_location_invalidates_cached_descendants(self, locations):
        area = locations['KL-TVM-NYT']
        before = LocationHierarchy.get_descendant_ids(locations['KL-TVM'].id)

        unit = Location.objects.create(name='Neyyattinkara Unit 3', code='KL-TVM-NYT-03', type=Location.TYPE_UNIT, parent=area)

        after = LocationHierarchy.get_descendant_ids(locations['KL-TVM'].id)
        assert str(unit.id) not in before
        assert str(unit.id) in after

    def test_moving_area_updates_both_districts(self, locations):
        area = locations['KL-TVM-ATL']
        LocationHierarchy.get_descendant_ids(locations['KL-TVM'].id)
        LocationHierarchy.get_descendant_ids(locations['KL-MLP'].id)

        area.parent = locations['KL-MLP']
        area.save()

        assert str(area.id) not in LocationHierarchy.get_descendant_ids(locations['KL-TVM'].id)
        assert str(area.id) in LocationHierarchy.get_descendant_ids(locations['KL-MLP'].id)
        assert str(locations['KL-MLP'].id) in LocationHierarchy.get_ancestor_ids(locations['KL-TVM-ATL-01'].id)


@pytest.mark.django_db
class TestLocationAPI:
    """Tests for GET /v1/locations/."""

    def test_requires_authentication(self, api_client, locations):
        response = api_client.get('/v1/locations/')
        assert response.status_code == status.HTTP_401_UNAUTHORIZED

    def test_filter_by_type_and_parent(self, api_client, locations, make_user):
        api_client.force_authenticate(user=make_user())

        response = api_client.get('/v1/locations/', {'type': 'area', 'parent': str(locations['KL-MLP'].id)})

        assert response.status_code == status.HTTP_200_OK
        codes = {item['code'] for item in response.data['results']}
        assert codes == {'KL-MLP-TIR', 'KL-MLP-PMN'}
