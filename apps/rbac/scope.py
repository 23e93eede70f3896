"""
Regional scope filtering.

Turns a user's resolved scope into a queryset predicate. A resource type
is described once by a ScopedResource (which model, which fields hold its
locations, project, scheme and owner) and registered by the app that owns
the model.

An empty scope always produces a predicate that matches nothing. The only
unrestricted predicate comes from a role with global scope.
"""
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Set, Tuple

from django.db.models import Q

from apps.core.exceptions import ConfigurationError
from apps.locations.services import LocationHierarchy
from apps.rbac.models import Permission
from apps.rbac.registry import PermissionRegistry
from apps.rbac.resolver import PermissionResolver

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScopedResource:
    """
    Describes how records of one model map onto scopes.

    Attributes:
        name: Resource type name, also the permission module ('applications')
        model: Django model class
        location_fields: FK fields to Location (any match grants regional access)
        project_field: Field holding the project id
        scheme_field: Field holding the scheme id
        owner_field: FK field to the owning User
    """

    name: str
    model: type
    location_fields: Tuple[str, ...] = ()
    project_field: Optional[str] = None
    scheme_field: Optional[str] = None
    owner_field: Optional[str] = None

    def read_permission_names(self) -> List[str]:
        """Active ``<resource>.read*`` permission names, in name order."""
        return sorted(
            definition.name
            for definition in PermissionRegistry.all().values()
            if definition.is_active and definition.module == self.name and definition.action == 'read'
        )


def match_nothing() -> Q:
    return Q(pk__in=[])


class RegionalScopeFilter:
    """
    Service building scope predicates for registered resource types.

    Usage:
        queryset = RegionalScopeFilter.apply(request.user, Application.objects.all(), 'applications')
    """

    _resources: Dict[str, ScopedResource] = {}

    @classmethod
    def register(cls, resource: ScopedResource) -> None:
        cls._resources[resource.name] = resource

    @classmethod
    def get_resource(cls, resource_type: str) -> ScopedResource:
        try:
            return cls._resources[resource_type]
        except KeyError:
            raise ConfigurationError(f"Unknown scoped resource type '{resource_type}'")

    @classmethod
    def build_scope_filter(cls, user, resource_type: str, permission_name: Optional[str] = None) -> Q:
        """
        Build the predicate selecting the records ``user`` may read.

        Args:
            user: User instance
            resource_type: Registered resource type name (e.g. 'applications')
            permission_name: Only consider this permission instead of every
                ``<resource>.read*`` permission

        Returns:
            Q object: ``Q()`` for global scope, ``Q(pk__in=[])`` when nothing
            is in scope, otherwise the OR of the user's regional, assigned
            and own predicates
        """
        resource = cls.get_resource(resource_type)
        grants = PermissionResolver.resolve_assignment_grants(user)

        if any(grant.has_global_scope for grant in grants):
            return Q()

        wanted = [permission_name] if permission_name else resource.read_permission_names()
        definitions = PermissionRegistry.all()

        predicate = match_nothing()
        for grant in grants:
            for name in wanted:
                if name not in grant.permission_names:
                    continue
                predicate |= cls._predicate_for(resource, definitions[name].scope, grant.assignment, user)

        return predicate

    @classmethod
    def apply(cls, user, queryset, resource_type: str, permission_name: Optional[str] = None):
        """Filter ``queryset`` down to the records in ``user``'s scope."""
        return queryset.filter(cls.build_scope_filter(user, resource_type, permission_name))

    @classmethod
    def can_access(cls, user, obj, resource_type: str, permission_name: Optional[str] = None) -> bool:
        """Whether ``obj`` lies inside ``user``'s scope."""
        resource = cls.get_resource(resource_type)
        predicate = cls.build_scope_filter(user, resource_type, permission_name)
        return resource.model._default_manager.filter(pk=obj.pk).filter(predicate).exists()

    @classmethod
    def region_ids_for(cls, user, permission_name: str) -> Optional[Set[str]]:
        """
        Regions (with descendants) in which ``user`` holds ``permission_name``.

        Returns:
            None for global scope, otherwise a possibly empty set of location ids
        """
        grants = PermissionResolver.resolve_assignment_grants(user)
        if any(grant.has_global_scope for grant in grants):
            return None
        region_ids: Set[str] = set()
        for grant in grants:
            if permission_name in grant.permission_names:
                region_ids.update(LocationHierarchy.expand_regions(grant.assignment.get_region_ids()))
        return region_ids

    @classmethod
    def describe_scope(cls, user) -> dict:
        """
        Summarise the user's own scope for display.

        Returns:
            dict with ``global`` flag and the region, project and scheme ids
            across the user's valid assignments
        """
        grants = PermissionResolver.resolve_assignment_grants(user)
        regions, projects, schemes = set(), set(), set()
        for grant in grants:
            regions.update(grant.assignment.get_region_ids())
            projects.update(str(project) for project in grant.assignment.projects or [])
            schemes.update(str(scheme) for scheme in grant.assignment.schemes or [])
        return {
            'global': any(grant.has_global_scope for grant in grants),
            'regions': sorted(regions),
            'projects': sorted(projects),
            'schemes': sorted(schemes),
        }

    @classmethod
    def _predicate_for(cls, resource: ScopedResource, scope: str, assignment, user) -> Q:
        if scope in (Permission.SCOPE_REGIONAL, Permission.SCOPE_GLOBAL):
            region_ids = LocationHierarchy.expand_regions(assignment.get_region_ids())
            if not region_ids or not resource.location_fields:
                return match_nothing()
            predicate = match_nothing()
            for field_name in resource.location_fields:
                predicate |= Q(**{f'{field_name}__in': region_ids})
            return predicate

        if scope == Permission.SCOPE_ASSIGNED:
            predicate = match_nothing()
            projects = [str(project) for project in assignment.projects or []]
            schemes = [str(scheme) for scheme in assignment.schemes or []]
            if projects and resource.project_field:
                predicate |= Q(**{f'{resource.project_field}__in': projects})
            if schemes and resource.scheme_field:
                predicate |= Q(**{f'{resource.scheme_field}__in': schemes})
            return predicate

        if scope == Permission.SCOPE_OWN and resource.owner_field:
            return Q(**{resource.owner_field: user.pk})

        return match_nothing()
