"""
Cached role and permission definitions.

Definitions are read-mostly: they change only through seed commands and
the role administration endpoints. Both registries keep an immutable
snapshot of the definitions in the Django cache and are invalidated by
signals whenever a role, permission, role grant or permission dependency
changes.

Loading the permission snapshot validates the dependency graph; a cycle
or an invalid condition raises ConfigurationError.
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, List, Optional, Tuple

from django.conf import settings

from apps.core.cache import CacheKeys, CacheService, CacheTTL
from apps.core.exceptions import ConfigurationError
from apps.core.logging import SecurityLogger
from apps.rbac.conditions import WEEKDAYS, PermissionConditions, parse_network

logger = logging.getLogger(__name__)


def _registry_ttl():
    return getattr(settings, 'RBAC_REGISTRY_CACHE_TTL', CacheTTL.RBAC_REGISTRY)


@dataclass(frozen=True)
class PermissionDefinition:
    """Snapshot of a Permission row and its dependency edges (by name)."""

    id: str
    name: str
    module: str
    action: str
    resource: str
    scope: str
    security_level: str
    audit_required: bool
    is_active: bool
    conditions: PermissionConditions = field(default_factory=PermissionConditions)
    requires: Tuple[str, ...] = ()
    implies: Tuple[str, ...] = ()
    conflicts: Tuple[str, ...] = ()


@dataclass(frozen=True)
class RoleDefinition:
    """Snapshot of a Role row and the names of the permissions it grants."""

    id: str
    name: str
    level: int
    is_active: bool
    has_global_scope: bool
    approval_level: Optional[str]
    permission_names: FrozenSet[str] = frozenset()
    requires_approval: bool = False
    max_users: Optional[int] = None


class PermissionRegistry:
    """
    Registry of permission definitions keyed by name.

    Usage:
        definition = PermissionRegistry.get('applications.approve')
        PermissionRegistry.validate()   # raises ConfigurationError
    """

    @classmethod
    def all(cls) -> Dict[str, PermissionDefinition]:
        """
        Get every permission definition, loading and validating on a miss.

        Raises:
            ConfigurationError: if the dependency graph is invalid
        """
        cached = CacheService.get(CacheKeys.RBAC_PERMISSIONS)
        if cached is not None:
            return cached

        definitions = cls._load()
        cls._check(definitions)
        CacheService.set(CacheKeys.RBAC_PERMISSIONS, definitions, _registry_ttl())
        return definitions

    @classmethod
    def get(cls, name: str) -> Optional[PermissionDefinition]:
        return cls.all().get(name)

    @classmethod
    def validate(cls) -> Dict[str, PermissionDefinition]:
        """
        Validate the definitions currently in the database, bypassing the cache.

        Called at startup, by ``check_rbac_config`` and after seeding.

        Returns:
            The validated definitions

        Raises:
            ConfigurationError: on a dependency cycle or invalid condition
        """
        definitions = cls._load()
        cls._check(definitions)
        return definitions

    @classmethod
    def invalidate(cls) -> None:
        CacheService.delete(CacheKeys.RBAC_PERMISSIONS)

    @classmethod
    def _load(cls) -> Dict[str, PermissionDefinition]:
        from apps.rbac.models import Permission

        requires = _edges(Permission.requires.through, 'from_permission', 'to_permission')
        implies = _edges(Permission.implies.through, 'from_permission', 'to_permission')
        conflicts = _edges(Permission.conflicts.through, 'from_permission', 'to_permission')

        definitions = {}
        for permission in Permission.objects.all():
            name = permission.name
            definitions[name] = PermissionDefinition(
                id=str(permission.id),
                name=name,
                module=permission.module,
                action=permission.action,
                resource=permission.resource,
                scope=permission.scope,
                security_level=permission.security_level,
                audit_required=permission.audit_required,
                is_active=permission.is_active,
                conditions=permission.get_conditions(),
                requires=tuple(sorted(requires.get(name, ()))),
                implies=tuple(sorted(implies.get(name, ()))),
                conflicts=tuple(sorted(conflicts.get(name, ()))),
            )
        return definitions

    @classmethod
    def _check(cls, definitions: Dict[str, PermissionDefinition]) -> None:
        for graph_name in ('requires', 'implies'):
            graph = {name: getattr(definition, graph_name) for name, definition in definitions.items()}
            cycle = find_cycle(graph)
            if cycle:
                description = f"Permission dependency cycle in '{graph_name}': {' -> '.join(cycle)}"
                SecurityLogger.log_configuration_error(description, graph=graph_name, cycle=cycle)
                raise ConfigurationError(description, details={'graph': graph_name, 'cycle': cycle})

        for definition in definitions.values():
            problem = _condition_problem(definition.conditions)
            if problem:
                description = f"Invalid conditions on permission '{definition.name}': {problem}"
                SecurityLogger.log_configuration_error(description, permission=definition.name)
                raise ConfigurationError(description, details={'permission': definition.name})


class RoleRegistry:
    """
    Registry of role definitions keyed by role id.

    Usage:
        definition = RoleRegistry.get(assignment.role_id)
        if definition.has_global_scope: ...
    """

    @classmethod
    def all(cls) -> Dict[str, RoleDefinition]:
        cached = CacheService.get(CacheKeys.RBAC_ROLES)
        if cached is not None:
            return cached

        definitions = cls._load()
        CacheService.set(CacheKeys.RBAC_ROLES, definitions, _registry_ttl())
        return definitions

    @classmethod
    def get(cls, role_id) -> Optional[RoleDefinition]:
        return cls.all().get(str(role_id))

    @classmethod
    def by_name(cls, name: str) -> Optional[RoleDefinition]:
        for definition in cls.all().values():
            if definition.name == name:
                return definition
        return None

    @classmethod
    def invalidate(cls) -> None:
        CacheService.delete(CacheKeys.RBAC_ROLES)

    @classmethod
    def _load(cls) -> Dict[str, RoleDefinition]:
        from apps.rbac.models import Role, RolePermission

        granted: Dict[str, set] = {}
        for role_id, permission_name in RolePermission.objects.values_list('role_id', 'permission__name'):
            granted.setdefault(str(role_id), set()).add(permission_name)

        definitions = {}
        for role in Role.objects.all():
            role_id = str(role.id)
            definitions[role_id] = RoleDefinition(
                id=role_id,
                name=role.name,
                level=role.level,
                is_active=role.is_active,
                has_global_scope=role.grants_global_scope,
                approval_level=role.approval_level,
                permission_names=frozenset(granted.get(role_id, ())),
                requires_approval=role.requires_approval,
                max_users=role.max_users,
            )
        return definitions


def invalidate_registries():
    """Drop both cached snapshots."""
    PermissionRegistry.invalidate()
    RoleRegistry.invalidate()
    logger.debug("RBAC registry cache invalidated")


def find_cycle(graph: Dict[str, Tuple[str, ...]]) -> Optional[List[str]]:
    """
    Find one cycle in a directed graph.

    Args:
        graph: Mapping of node -> successor nodes

    Returns:
        The cycle as a list of nodes whose first and last entries are equal,
        or None if the graph is acyclic
    """
    white, grey, black = 0, 1, 2
    colour = {node: white for node in graph}
    parent: Dict[str, Optional[str]] = {}

    for root in sorted(graph):
        if colour[root] != white:
            continue
        colour[root] = grey
        parent[root] = None
        stack = [(root, iter(graph.get(root, ())))]
        while stack:
            node, successors = stack[-1]
            advanced = False
            for successor in successors:
                state = colour.get(successor, white)
                if state == grey:
                    cycle = [successor]
                    current = node
                    while current != successor:
                        cycle.append(current)
                        current = parent[current]
                    cycle.append(successor)
                    cycle.reverse()
                    return cycle
                if state == white:
                    colour[successor] = grey
                    parent[successor] = node
                    stack.append((successor, iter(graph.get(successor, ()))))
                    advanced = True
                    break
            if not advanced:
                colour[node] = black
                stack.pop()
    return None


def _edges(through, from_field, to_field):
    edges: Dict[str, set] = {}
    rows = through.objects.values_list(f'{from_field}__name', f'{to_field}__name')
    for source, target in rows:
        edges.setdefault(source, set()).add(target)
    return edges


def _condition_problem(conditions: PermissionConditions) -> Optional[str]:
    for hour in (conditions.allowed_hours_start, conditions.allowed_hours_end):
        if hour is not None and not 0 <= hour <= 23:
            return f"hour {hour} outside 0-23"
    unknown_days = [day for day in conditions.allowed_days if day not in WEEKDAYS]
    if unknown_days:
        return f"unknown weekday(s) {', '.join(unknown_days)}"
    for entry in conditions.allowed_ips + conditions.blocked_ips:
        try:
            parse_network(entry)
        except ValueError:
            return f"invalid IP or CIDR '{entry}'"
    if bool(conditions.rate_limit_max_requests) != bool(conditions.rate_limit_window_seconds):
        return "rate limit needs both max requests and window seconds"
    return None
