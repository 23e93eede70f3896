"""
Tests for the fail-soft cache helpers.
"""
from unittest.mock import patch

import pytest
from django.core.cache import cache

from apps.core.cache import CacheKeys, CacheService
from apps.locations.services import LocationHierarchy


class TestCacheService:
    """Test CacheService operations and failure handling."""

    def test_get_set_delete(self):
        assert CacheService.set('rbac:test', {'roles': ['unit_admin']}, ttl=60) is True
        assert CacheService.get('rbac:test') == {'roles': ['unit_admin']}

        assert CacheService.delete('rbac:test') is True
        assert CacheService.get('rbac:test') is None

    def test_delete_many_without_keys(self):
        assert CacheService.delete_many([]) is True

    def test_get_failure_is_a_miss(self):
        with patch.object(cache, 'get', side_effect=ConnectionError('redis down')):
            assert CacheService.get('rbac:test', default='fallback') == 'fallback'

    def test_set_failure_reports_false(self):
        with patch.object(cache, 'set', side_effect=ConnectionError('redis down')):
            assert CacheService.set('rbac:test', 1) is False

    def test_delete_many_failure_reports_false(self):
        with patch.object(cache, 'delete_many', side_effect=ConnectionError('redis down')):
            assert CacheService.delete_many(['a', 'b']) is False


@pytest.mark.django_db
class TestLocationHierarchyCache:
    """Hierarchy lookups are cached and cleared when the tree changes."""

    def test_descendants_cached(self, locations):
        district = locations['KL-TVM']

        expected = LocationHierarchy.get_descendant_ids(district.id)

        assert set(cache.get(CacheKeys.location_descendants(district.id))) == expected

    def test_lookup_works_when_cache_is_down(self, locations):
        district = locations['KL-TVM']

        with patch.object(cache, 'get', side_effect=ConnectionError('redis down')):
            assert str(locations['KL-TVM-NYT-01'].id) in LocationHierarchy.get_descendant_ids(district.id)

    def test_moving_a_location_clears_old_ancestors(self, locations):
        unit = locations['KL-TVM-NYT-01']
        LocationHierarchy.get_descendant_ids(locations['KL-TVM'].id)

        unit.parent = locations['KL-MLP-TIR']
        unit.save()

        assert str(unit.id) not in LocationHierarchy.get_descendant_ids(locations['KL-TVM'].id)
        assert str(unit.id) in LocationHierarchy.get_descendant_ids(locations['KL-MLP'].id)
