"""
Effective permission resolution.

The effective permission set of a user is computed fresh from the user's
valid role assignments on every call:

1. For each active, approved, time-valid assignment take the role's
   permissions, add non-expired additional grants and remove non-expired
   restrictions.
2. Union across assignments, remembering for each permission the lowest
   (highest-privilege) role level that contributed it.
3. Close over the dependency graph: implied permissions are added,
   permissions with missing requirements are dropped, and of two
   conflicting permissions only the one from the higher-privilege role
   survives (ties go to the lexicographically smaller name).

Resolution has no side effects; calling it twice without an intervening
change returns equal sets.
"""
import logging
from dataclasses import dataclass
from typing import Dict, FrozenSet, Iterable, List, Optional, Set

from django.db.models import Q
from django.utils import timezone

from apps.rbac.conditions import PermissionConditions
from apps.rbac.registry import PermissionDefinition, PermissionRegistry, RoleRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResolvedPermission:
    """A permission in a user's effective set, with what is needed to evaluate it."""

    name: str
    module: str
    action: str
    scope: str
    conditions: PermissionConditions
    audit_required: bool
    security_level: str
    role_level: int

    @classmethod
    def from_definition(cls, definition: PermissionDefinition, role_level: int) -> 'ResolvedPermission':
        return cls(
            name=definition.name,
            module=definition.module,
            action=definition.action,
            scope=definition.scope,
            conditions=definition.conditions,
            audit_required=definition.audit_required,
            security_level=definition.security_level,
            role_level=role_level,
        )


@dataclass(frozen=True)
class AssignmentGrant:
    """The effective permissions a single assignment contributes."""

    assignment: object
    role_level: int
    has_global_scope: bool
    approval_level: Optional[str]
    permission_names: FrozenSet[str]


class PermissionResolver:
    """
    Service computing effective permission sets.

    Usage:
        permissions = PermissionResolver.get_effective_permissions(user)
        names = {p.name for p in permissions}
    """

    @classmethod
    def resolve_effective_permissions(cls, user, at=None) -> FrozenSet[ResolvedPermission]:
        """
        Compute the effective permission set of ``user`` at ``at``.

        Args:
            user: User instance
            at: Evaluation time (defaults to now)

        Returns:
            frozenset of ResolvedPermission (empty for anonymous or inactive users)
        """
        definitions = PermissionRegistry.all()
        per_assignment = cls._granted_by_assignment(user, at, definitions)
        effective = cls._close_across_assignments(per_assignment, definitions)
        return frozenset(
            ResolvedPermission.from_definition(definitions[name], level)
            for name, level in effective.items()
        )

    get_effective_permissions = resolve_effective_permissions

    @classmethod
    def get_effective_permission_names(cls, user, at=None) -> FrozenSet[str]:
        return frozenset(permission.name for permission in cls.resolve_effective_permissions(user, at))

    @classmethod
    def get_permission(cls, user, permission_name: str, at=None) -> Optional[ResolvedPermission]:
        """Return the resolved permission named ``permission_name``, or None if not held."""
        for permission in cls.resolve_effective_permissions(user, at):
            if permission.name == permission_name:
                return permission
        return None

    @classmethod
    def resolve_assignment_grants(cls, user, at=None) -> List[AssignmentGrant]:
        """
        Break the effective set down by the assignment that contributes it.

        A permission is attributed to an assignment when the assignment
        grants it (directly or through ``implies``) and it survived the
        user-wide dependency closure. Scope filtering uses this to know
        which assignments' regions a read permission applies to.

        Returns:
            One AssignmentGrant per valid assignment, highest privilege first
        """
        definitions = PermissionRegistry.all()
        per_assignment = cls._granted_by_assignment(user, at, definitions)
        effective = cls._close_across_assignments(per_assignment, definitions)

        grants = []
        for assignment, role_definition, names in per_assignment:
            expanded = cls._expand_implied(
                {name: role_definition.level for name in names}, definitions, blocked=set()
            )
            grants.append(AssignmentGrant(
                assignment=assignment,
                role_level=role_definition.level,
                has_global_scope=role_definition.has_global_scope,
                approval_level=role_definition.approval_level,
                permission_names=frozenset(name for name in expanded if name in effective),
            ))
        grants.sort(key=lambda grant: grant.role_level)
        return grants

    @classmethod
    def close_dependencies(cls, granted: Dict[str, int], definitions: Dict[str, PermissionDefinition]) -> Dict[str, int]:
        """
        Apply implies, requires and conflicts to a granted set.

        Args:
            granted: Mapping of permission name -> best contributing role level
            definitions: Permission definitions by name

        Returns:
            Mapping of surviving permission name -> role level
        """
        granted = {
            name: level for name, level in granted.items()
            if name in definitions and definitions[name].is_active
        }
        blocked: Set[str] = set()

        # Each pass either blocks at least one more permission or returns
        while True:
            expanded = cls._expand_implied(
                {name: level for name, level in granted.items() if name not in blocked},
                definitions,
                blocked,
            )

            unmet = {
                name for name in expanded
                if any(required not in expanded for required in definitions[name].requires)
            }
            if unmet:
                logger.debug(
                    "Dropping permissions with unmet requirements",
                    extra={'permissions': sorted(unmet)}
                )
                blocked |= unmet
                continue

            losers = cls._conflict_losers(expanded, definitions)
            if losers:
                blocked |= losers
                continue

            return expanded

    @classmethod
    def _close_across_assignments(cls, per_assignment, definitions) -> Dict[str, int]:
        granted: Dict[str, int] = {}
        for _assignment, role_definition, names in per_assignment:
            for name in names:
                level = role_definition.level
                if name not in granted or level < granted[name]:
                    granted[name] = level
        return cls.close_dependencies(granted, definitions)

    @classmethod
    def _granted_by_assignment(cls, user, at, definitions):
        from apps.rbac.models import AssignmentPermissionOverride, UserRoleAssignment

        if user is None or not getattr(user, 'is_authenticated', False) or not user.is_active:
            return []

        at = at or timezone.now()
        assignments = list(UserRoleAssignment.objects.valid_for(user, at))
        if not assignments:
            return []

        overrides: Dict[str, Dict[str, bool]] = {}
        rows = (
            AssignmentPermissionOverride.objects
            .filter(assignment__in=assignments)
            .filter(Q(expires_at__isnull=True) | Q(expires_at__gt=at))
            .values_list('assignment_id', 'permission__name', 'granted')
        )
        for assignment_id, permission_name, granted in rows:
            overrides.setdefault(str(assignment_id), {})[permission_name] = granted

        result = []
        for assignment in assignments:
            role_definition = RoleRegistry.get(assignment.role_id)
            if role_definition is None or not role_definition.is_active:
                continue

            names = set(role_definition.permission_names)
            for permission_name, granted in overrides.get(str(assignment.id), {}).items():
                if granted:
                    names.add(permission_name)
                else:
                    names.discard(permission_name)

            names = {
                name for name in names
                if name in definitions and definitions[name].is_active
            }
            result.append((assignment, role_definition, names))
        return result

    @staticmethod
    def _expand_implied(granted: Dict[str, int], definitions, blocked: Iterable[str]) -> Dict[str, int]:
        blocked = set(blocked)
        expanded = dict(granted)
        # Visit in precedence order so implied permissions inherit the best level
        frontier = sorted(expanded.items(), key=lambda item: (item[1], item[0]))
        while frontier:
            name, level = frontier.pop(0)
            definition = definitions.get(name)
            if definition is None:
                continue
            for implied in definition.implies:
                implied_definition = definitions.get(implied)
                if implied in blocked or implied_definition is None or not implied_definition.is_active:
                    continue
                if implied not in expanded or level < expanded[implied]:
                    expanded[implied] = level
                    frontier.append((implied, level))
        return expanded

    @staticmethod
    def _conflict_losers(expanded: Dict[str, int], definitions) -> Set[str]:
        kept: Set[str] = set()
        losers: Set[str] = set()
        for name, level in sorted(expanded.items(), key=lambda item: (item[1], item[0])):
            winner = next((other for other in definitions[name].conflicts if other in kept), None)
            if winner is None:
                kept.add(name)
                continue
            losers.add(name)
            logger.warning(
                f"Conflicting permissions held together: keeping {winner}, dropping {name}",
                extra={
                    'kept_permission': winner,
                    'kept_level': expanded[winner],
                    'dropped_permission': name,
                    'dropped_level': level,
                }
            )
        return losers
