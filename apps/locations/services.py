"""
Location hierarchy lookups.

Used by the regional scope filter to expand an assigned region into every
location beneath it, and by the workflow to derive an application's full
ancestry chain from its unit.
"""
import logging
from typing import Dict, Iterable, List, Optional, Set

from apps.core.cache import CacheKeys, CacheService, CacheTTL
from apps.locations.models import Location

logger = logging.getLogger(__name__)


class LocationHierarchy:
    """
    Service for walking the location tree.

    Descendant and ancestor id lists are cached per location; signals on
    Location invalidate the affected entries whenever the tree changes.
    """

    @classmethod
    def get_descendant_ids(cls, location_id) -> Set[str]:
        """
        Get the ids of a location and every location beneath it.

        Args:
            location_id: Location UUID (or string)

        Returns:
            Set of location id strings, including ``location_id`` itself
        """
        cache_key = CacheKeys.location_descendants(location_id)
        cached = CacheService.get(cache_key)
        if cached is not None:
            return set(cached)

        result = cls._uncached_descendant_ids(location_id)
        CacheService.set(cache_key, sorted(result), CacheTTL.LOCATION_HIERARCHY)
        return result

    @classmethod
    def expand_regions(cls, location_ids: Iterable) -> Set[str]:
        """
        Expand a set of assigned regions to include all their descendants.

        Args:
            location_ids: Iterable of location UUIDs

        Returns:
            Set of location id strings (empty if ``location_ids`` is empty)
        """
        expanded = set()
        for location_id in location_ids:
            expanded |= cls.get_descendant_ids(location_id)
        return expanded

    @classmethod
    def get_ancestor_ids(cls, location_id) -> List[str]:
        """
        Get the ids of a location's ancestors, nearest first.

        Args:
            location_id: Location UUID (or string)

        Returns:
            List of ancestor id strings, excluding ``location_id`` itself
        """
        cache_key = CacheKeys.location_ancestors(location_id)
        cached = CacheService.get(cache_key)
        if cached is not None:
            return list(cached)

        ancestors = cls._uncached_ancestor_ids(location_id)
        CacheService.set(cache_key, ancestors, CacheTTL.LOCATION_HIERARCHY)
        return ancestors

    @classmethod
    def get_chain(cls, location: Location) -> Dict[str, Optional[Location]]:
        """
        Get the full ancestry chain of a location keyed by type.

        Args:
            location: Location instance (typically a unit)

        Returns:
            Dict mapping 'state'/'district'/'area'/'unit' to Location or None
        """
        chain = {location_type: None for location_type in Location.TYPE_ORDER}
        node = location
        while node is not None:
            chain[node.type] = node
            node = node.parent
        return chain

    @classmethod
    def invalidate(cls, location: Location) -> None:
        """
        Drop cached hierarchy entries affected by a change to ``location``.

        A moved or re-parented location changes the descendant sets of all
        its old and new ancestors and the ancestor lists of everything
        beneath it, so all of those keys are cleared.
        """
        affected_up = {str(location.pk)} | set(cls._uncached_ancestor_ids(location.pk))
        previous_parent = getattr(location, '_previous_parent_id', None)
        if previous_parent:
            affected_up |= {str(previous_parent)} | set(cls._uncached_ancestor_ids(previous_parent))

        affected_down = cls._uncached_descendant_ids(location.pk)

        keys = [
            CacheKeys.location_descendants(location_id)
            for location_id in affected_up
        ] + [
            CacheKeys.location_ancestors(location_id)
            for location_id in affected_down
        ]
        CacheService.delete_many(keys)
        logger.debug(
            f"Invalidated location hierarchy cache for {location.code}",
            extra={'location_id': str(location.pk), 'keys': len(keys)}
        )

    @classmethod
    def _uncached_ancestor_ids(cls, location_id) -> List[str]:
        ancestors = []
        parent_id = Location.objects.filter(id=location_id).values_list('parent_id', flat=True).first()
        while parent_id is not None and str(parent_id) not in ancestors:
            ancestors.append(str(parent_id))
            parent_id = Location.objects.filter(id=parent_id).values_list('parent_id', flat=True).first()
        return ancestors

    @classmethod
    def _uncached_descendant_ids(cls, location_id) -> Set[str]:
        result = {str(location_id)}
        frontier = [location_id]
        # The tree is at most four levels deep, so this runs at most four queries
        while frontier:
            children = list(Location.objects.children_of(frontier).values_list('id', flat=True))
            frontier = [child for child in children if str(child) not in result]
            result.update(str(child) for child in frontier)
        return result
