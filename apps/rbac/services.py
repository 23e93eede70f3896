"""
RBAC and Authentication services.

Implements:
- RBACService: role assignment lifecycle, per-assignment permission
  overrides, custom role administration and escalation checks
- AuthService: JWT issue/validation and password login
"""
from datetime import datetime, timedelta, timezone as dt_timezone
from typing import Any, Dict, Iterable, Optional
import logging

from django.conf import settings
from django.db import transaction
from django.utils import timezone
import jwt

from apps.core.exceptions import NotFoundError, PermissionDeniedError, ValidationError
from apps.locations.models import Location
from apps.rbac.models import (
    AssignmentHistory, AssignmentPermissionOverride, AuditLog, Permission,
    Role, RolePermission, User, UserRoleAssignment,
)
from apps.rbac.registry import RoleRegistry

logger = logging.getLogger(__name__)


class RBACService:
    """
    Service for RBAC operations: assignments, overrides, custom roles.

    Every mutation appends to the assignment's history (where there is one)
    and writes an audit log entry. Writes are never retried here; callers
    that time out re-read state before retrying.
    """

    CUSTOM_ROLE_FIELDS = {
        'display_name', 'description', 'level', 'category',
        'allowed_scope_levels', 'default_scope_level', 'allow_multiple_scopes',
        'max_scopes', 'max_users', 'requires_approval', 'approval_level', 'is_active',
    }

    @classmethod
    @transaction.atomic
    def assign_role(cls, user: User, role: Role, assigned_by: Optional[User] = None,
                    scope: Optional[Dict[str, Iterable]] = None, valid_until=None,
                    reason: str = '', is_primary: Optional[bool] = None,
                    valid_from=None) -> UserRoleAssignment:
        """
        Assign a role to a user within a scope.

        The first assignment a user receives becomes primary. Roles that
        require approval start ``pending`` and contribute nothing until
        approved.

        Args:
            user: User receiving the role
            role: Role to assign
            assigned_by: Acting user (None for system/seed assignments)
            scope: {'regions': [location ids], 'projects': [...], 'schemes': [...]}
            valid_until: End of validity (None = open-ended)
            reason: Why the role is assigned
            is_primary: Make this the primary assignment
            valid_from: Start of validity (defaults to now)

        Returns:
            UserRoleAssignment instance

        Raises:
            ValidationError: inactive role/user, duplicate assignment, full role,
                invalid scope or validity window
            PermissionDeniedError: assigner does not outrank the role
        """
        if not role.is_active or role.is_deleted:
            raise ValidationError('Role is not active.', details={'role': role.name})
        if not user.is_active:
            raise ValidationError('User is not active.')

        if assigned_by is not None:
            cls.check_can_manage_role(assigned_by, role)

        if cls._holds_role(user, role):
            raise ValidationError('User already holds this role.', details={'role': role.name})

        if role.max_users is not None and role.active_holder_count() >= role.max_users:
            raise ValidationError(
                'Role has reached its maximum number of users.',
                details={'role': role.name, 'max_users': role.max_users}
            )

        valid_from = valid_from or timezone.now()
        if valid_until is not None and valid_until <= valid_from:
            raise ValidationError('valid_until must be after valid_from.')

        regions, projects, schemes = cls._validate_scope(role, scope or {})

        if is_primary:
            cls._clear_primary(user)
        make_primary = bool(is_primary) or not cls._has_primary(user)

        approval_status = (
            UserRoleAssignment.STATUS_PENDING if role.requires_approval
            else UserRoleAssignment.STATUS_APPROVED
        )

        assignment = UserRoleAssignment.objects.create(
            user=user,
            role=role,
            assigned_by=assigned_by,
            reason=reason,
            projects=projects,
            schemes=schemes,
            valid_from=valid_from,
            valid_until=valid_until,
            is_primary=make_primary,
            approval_status=approval_status,
        )
        assignment.regions.set(regions)

        AssignmentHistory.objects.create(
            assignment=assignment,
            action=AssignmentHistory.ACTION_ASSIGNED,
            performed_by=assigned_by,
            reason=reason,
            details={
                'role': role.name,
                'regions': [str(region.id) for region in regions],
                'projects': projects,
                'schemes': schemes,
                'approval_status': approval_status,
            },
        )

        AuditLog.log_action(
            action='role_assigned',
            user=assigned_by,
            target_type='role_assignment',
            target_id=assignment.id,
            diff={'role': role.name, 'approval_status': approval_status},
            metadata={
                'target_user_id': str(user.id),
                'role_name': role.name,
                'reason': reason,
            }
        )

        logger.info(
            f"Role {role.name} assigned",
            extra={
                'assignment_id': str(assignment.id),
                'target_user_id': str(user.id),
                'role_name': role.name,
                'approval_status': approval_status,
            }
        )
        return assignment

    @classmethod
    @transaction.atomic
    def remove_role(cls, user: User, role: Role, removed_by: Optional[User] = None,
                    reason: str = '') -> UserRoleAssignment:
        """
        Remove a role from a user.

        The assignment is deactivated and marked revoked, never deleted.

        Raises:
            NotFoundError: if the user holds no active assignment of the role
            PermissionDeniedError: remover does not outrank the role
        """
        assignment = (
            UserRoleAssignment.objects.active()
            .filter(user=user, role=role)
            .exclude(approval_status__in=[UserRoleAssignment.STATUS_REJECTED, UserRoleAssignment.STATUS_REVOKED])
            .first()
        )
        if assignment is None:
            raise NotFoundError('Role assignment not found.')

        return cls.revoke_assignment(assignment, revoked_by=removed_by, reason=reason)

    @classmethod
    @transaction.atomic
    def revoke_assignment(cls, assignment: UserRoleAssignment, revoked_by: Optional[User] = None,
                          reason: str = '') -> UserRoleAssignment:
        """Deactivate and revoke an assignment, promoting a new primary if needed."""
        if revoked_by is not None:
            cls.check_can_manage_role(revoked_by, assignment.role)

        if assignment.approval_status == UserRoleAssignment.STATUS_REVOKED:
            raise ValidationError('Assignment is already revoked.')

        cls._deactivate(assignment, reason)
        assignment.approval_status = UserRoleAssignment.STATUS_REVOKED
        assignment.save(update_fields=[
            'is_active', 'is_primary', 'approval_status', 'deactivated_at', 'deactivation_reason', 'updated_at'
        ])
        cls._append_history(assignment, AssignmentHistory.ACTION_REVOKED, revoked_by, reason)
        cls._ensure_primary(assignment.user)

        AuditLog.log_action(
            action='role_removed',
            user=revoked_by,
            target_type='role_assignment',
            target_id=assignment.id,
            diff={'role': assignment.role.name, 'action': 'revoked'},
            metadata={
                'target_user_id': str(assignment.user_id),
                'role_name': assignment.role.name,
                'reason': reason,
            }
        )
        return assignment

    @classmethod
    @transaction.atomic
    def approve_assignment(cls, assignment: UserRoleAssignment, approved_by: User,
                           reason: str = '') -> UserRoleAssignment:
        """
        Approve a pending assignment.

        The approver must outrank the role and be neither the assignee nor
        the user who made the assignment.

        Raises:
            ValidationError: if the assignment is not pending
            PermissionDeniedError: escalation or four-eyes check failed
        """
        cls._require_pending(assignment)
        cls.check_can_manage_role(approved_by, assignment.role)
        cls.validate_four_eyes(assignment, approved_by)

        assignment.approval_status = UserRoleAssignment.STATUS_APPROVED
        assignment.approved_by = approved_by
        assignment.approved_at = timezone.now()
        assignment.save(update_fields=['approval_status', 'approved_by', 'approved_at', 'updated_at'])
        cls._append_history(assignment, AssignmentHistory.ACTION_APPROVED, approved_by, reason)

        AuditLog.log_action(
            action='assignment_approved',
            user=approved_by,
            target_type='role_assignment',
            target_id=assignment.id,
            diff={'approval_status': {'from': 'pending', 'to': 'approved'}},
            metadata={'target_user_id': str(assignment.user_id), 'role_name': assignment.role.name}
        )
        return assignment

    @classmethod
    @transaction.atomic
    def reject_assignment(cls, assignment: UserRoleAssignment, rejected_by: User,
                          reason: str = '') -> UserRoleAssignment:
        """Reject a pending assignment and deactivate it."""
        cls._require_pending(assignment)
        cls.check_can_manage_role(rejected_by, assignment.role)
        cls.validate_four_eyes(assignment, rejected_by)

        cls._deactivate(assignment, reason)
        assignment.approval_status = UserRoleAssignment.STATUS_REJECTED
        assignment.save(update_fields=[
            'is_active', 'is_primary', 'approval_status', 'deactivated_at', 'deactivation_reason', 'updated_at'
        ])
        cls._append_history(assignment, AssignmentHistory.ACTION_REJECTED, rejected_by, reason)
        cls._ensure_primary(assignment.user)

        AuditLog.log_action(
            action='assignment_rejected',
            user=rejected_by,
            target_type='role_assignment',
            target_id=assignment.id,
            diff={'approval_status': {'from': 'pending', 'to': 'rejected'}},
            metadata={'target_user_id': str(assignment.user_id), 'role_name': assignment.role.name, 'reason': reason}
        )
        return assignment

    @classmethod
    @transaction.atomic
    def suspend_assignment(cls, assignment: UserRoleAssignment, suspended_by: Optional[User] = None,
                           reason: str = '') -> UserRoleAssignment:
        """Temporarily deactivate an assignment without revoking it."""
        if suspended_by is not None:
            cls.check_can_manage_role(suspended_by, assignment.role)
        if not assignment.is_active:
            raise ValidationError('Assignment is not active.')

        cls._deactivate(assignment, reason)
        assignment.save(update_fields=['is_active', 'is_primary', 'deactivated_at', 'deactivation_reason', 'updated_at'])
        cls._append_history(assignment, AssignmentHistory.ACTION_SUSPENDED, suspended_by, reason)
        cls._ensure_primary(assignment.user)

        AuditLog.log_action(
            action='assignment_suspended',
            user=suspended_by,
            target_type='role_assignment',
            target_id=assignment.id,
            metadata={'target_user_id': str(assignment.user_id), 'role_name': assignment.role.name, 'reason': reason}
        )
        return assignment

    @classmethod
    @transaction.atomic
    def reactivate_assignment(cls, assignment: UserRoleAssignment, reactivated_by: Optional[User] = None,
                              reason: str = '') -> UserRoleAssignment:
        """
        Reactivate a suspended assignment.

        Raises:
            ValidationError: if the assignment was revoked or rejected, the
                user holds the role again through another assignment, or the
                role is full
        """
        if reactivated_by is not None:
            cls.check_can_manage_role(reactivated_by, assignment.role)
        if assignment.is_active:
            raise ValidationError('Assignment is already active.')
        if assignment.approval_status in (UserRoleAssignment.STATUS_REVOKED, UserRoleAssignment.STATUS_REJECTED):
            raise ValidationError('Revoked or rejected assignments cannot be reactivated.')
        if cls._holds_role(assignment.user, assignment.role):
            raise ValidationError('User already holds this role.')

        role = assignment.role
        if role.max_users is not None and role.active_holder_count() >= role.max_users:
            raise ValidationError('Role has reached its maximum number of users.')

        assignment.is_active = True
        assignment.deactivated_at = None
        assignment.deactivation_reason = ''
        assignment.is_primary = not cls._has_primary(assignment.user)
        assignment.save(update_fields=['is_active', 'is_primary', 'deactivated_at', 'deactivation_reason', 'updated_at'])
        cls._append_history(assignment, AssignmentHistory.ACTION_REACTIVATED, reactivated_by, reason)

        AuditLog.log_action(
            action='assignment_reactivated',
            user=reactivated_by,
            target_type='role_assignment',
            target_id=assignment.id,
            metadata={'target_user_id': str(assignment.user_id), 'role_name': role.name, 'reason': reason}
        )
        return assignment

    @classmethod
    @transaction.atomic
    def set_primary(cls, assignment: UserRoleAssignment, changed_by: Optional[User] = None) -> UserRoleAssignment:
        """Make ``assignment`` the user's primary assignment."""
        if not assignment.is_active:
            raise ValidationError('Only active assignments can be primary.')
        cls._clear_primary(assignment.user)
        assignment.is_primary = True
        assignment.save(update_fields=['is_primary', 'updated_at'])
        AuditLog.log_action(
            action='primary_assignment_changed',
            user=changed_by,
            target_type='role_assignment',
            target_id=assignment.id,
            metadata={'target_user_id': str(assignment.user_id), 'role_name': assignment.role.name}
        )
        return assignment

    @classmethod
    def grant_additional_permission(cls, assignment: UserRoleAssignment, permission_name: str,
                                    granted_by: Optional[User] = None, reason: str = '',
                                    expires_at=None) -> AssignmentPermissionOverride:
        """
        Grant a permission the assignment's role does not carry.

        Args:
            assignment: Assignment to extend
            permission_name: Permission name (e.g. 'finances.read.regional')
            granted_by: Acting user
            reason: Why the permission is granted
            expires_at: When the grant lapses (None = never)

        Returns:
            AssignmentPermissionOverride instance

        Raises:
            NotFoundError: if the permission does not exist
        """
        return cls._set_override(
            assignment, permission_name, True, granted_by, reason, expires_at,
            AssignmentHistory.ACTION_PERMISSION_ADDED, 'permission_granted',
        )

    @classmethod
    def restrict_permission(cls, assignment: UserRoleAssignment, permission_name: str,
                            restricted_by: Optional[User] = None, reason: str = '',
                            expires_at=None) -> AssignmentPermissionOverride:
        """
        Withhold a permission the assignment's role carries.

        Restrictions win over the role's grants for this assignment only;
        another assignment of the same user may still contribute it.
        """
        return cls._set_override(
            assignment, permission_name, False, restricted_by, reason, expires_at,
            AssignmentHistory.ACTION_PERMISSION_RESTRICTED, 'permission_restricted',
        )

    @classmethod
    def expire_stale_assignments(cls, at=None) -> int:
        """
        Deactivate every active assignment whose validity window has closed.

        Returns:
            Number of assignments expired
        """
        at = at or timezone.now()
        expired = 0
        for assignment in UserRoleAssignment.objects.stale(at).select_related('role', 'user'):
            with transaction.atomic():
                cls._deactivate(assignment, 'Validity period ended', at=at)
                assignment.save(update_fields=[
                    'is_active', 'is_primary', 'deactivated_at', 'deactivation_reason', 'updated_at'
                ])
                cls._append_history(
                    assignment, AssignmentHistory.ACTION_EXPIRED, None, 'Validity period ended',
                    details={'valid_until': assignment.valid_until.isoformat()},
                )
                cls._ensure_primary(assignment.user)
                AuditLog.log_action(
                    action='assignment_expired',
                    target_type='role_assignment',
                    target_id=assignment.id,
                    metadata={'target_user_id': str(assignment.user_id), 'role_name': assignment.role.name}
                )
            expired += 1

        if expired:
            logger.info(f"Expired {expired} stale role assignments", extra={'expired_count': expired})
        return expired

    @classmethod
    @transaction.atomic
    def create_custom_role(cls, data: Dict[str, Any], created_by: Optional[User] = None,
                           permission_names: Optional[Iterable[str]] = None) -> Role:
        """
        Create a non-system role.

        Args:
            data: Role fields; must include ``name``, ``display_name`` and ``level``
            created_by: Acting user
            permission_names: Names of permissions the role grants

        Raises:
            ValidationError: duplicate name, level 0, global scope or unknown permissions
        """
        name = (data.get('name') or '').strip()
        if not name:
            raise ValidationError('Role name is required.')
        if Role.objects_with_deleted.filter(name=name).exists():
            raise ValidationError('A role with this name already exists.', details={'name': name})

        fields = {key: value for key, value in data.items() if key in cls.CUSTOM_ROLE_FIELDS}
        cls._validate_custom_role_fields(fields)
        if 'level' not in fields:
            raise ValidationError('Role level is required.')

        permissions = cls._lookup_permissions(permission_names or [])

        role = Role(name=name, is_system=False, has_global_scope=False, **fields)
        role.full_clean(exclude=['permissions'])
        if created_by is not None:
            cls.check_can_manage_role(created_by, role)
        role.save()

        for permission in permissions:
            RolePermission.objects.grant_permission(role, permission)

        AuditLog.log_action(
            action='role_created',
            user=created_by,
            target_type='role',
            target_id=role.id,
            diff={'name': name, 'level': role.level, 'permissions': sorted(p.name for p in permissions)},
        )
        return role

    @classmethod
    @transaction.atomic
    def update_custom_role(cls, role: Role, updates: Dict[str, Any], updated_by: Optional[User] = None,
                           permission_names: Optional[Iterable[str]] = None) -> Role:
        """
        Update a role that allows modification.

        Raises:
            ValidationError: role is not modifiable or an update is invalid
        """
        if not role.is_modifiable:
            raise ValidationError('This role cannot be modified.', details={'role': role.name})
        if updated_by is not None:
            cls.check_can_manage_role(updated_by, role)

        fields = {key: value for key, value in updates.items() if key in cls.CUSTOM_ROLE_FIELDS}
        if role.level == 0 and fields.get('level', 0) != 0:
            raise ValidationError('The level of a level 0 role cannot be changed.')
        if role.level != 0:
            cls._validate_custom_role_fields(fields)

        diff = {}
        for key, value in fields.items():
            old = getattr(role, key)
            if old != value:
                diff[key] = {'from': old, 'to': value}
                setattr(role, key, value)

        role.full_clean(exclude=['permissions'])
        if updated_by is not None:
            cls.check_can_manage_role(updated_by, role)
        role.save()

        if permission_names is not None:
            permissions = cls._lookup_permissions(permission_names)
            current = set(RolePermission.objects.for_role(role).values_list('permission__name', flat=True))
            wanted = {permission.name for permission in permissions}
            for permission in permissions:
                if permission.name not in current:
                    RolePermission.objects.grant_permission(role, permission)
            for permission in Permission.objects.filter(name__in=current - wanted):
                RolePermission.objects.revoke_permission(role, permission)
            if current != wanted:
                diff['permissions'] = {'added': sorted(wanted - current), 'removed': sorted(current - wanted)}

        AuditLog.log_action(
            action='role_updated',
            user=updated_by,
            target_type='role',
            target_id=role.id,
            diff=diff,
        )
        return role

    @classmethod
    @transaction.atomic
    def delete_custom_role(cls, role: Role, deleted_by: Optional[User] = None) -> None:
        """
        Soft-delete a deletable role with no active assignments.

        Raises:
            ValidationError: system or undeletable role, or role still assigned
        """
        if role.is_system or not role.is_deletable:
            raise ValidationError('This role cannot be deleted.', details={'role': role.name})
        if deleted_by is not None:
            cls.check_can_manage_role(deleted_by, role)
        if UserRoleAssignment.objects.active().filter(role=role).exists():
            raise ValidationError('Cannot delete a role that is assigned to users.', details={'role': role.name})

        role.delete()
        AuditLog.log_action(
            action='role_deleted',
            user=deleted_by,
            target_type='role',
            target_id=role.id,
            diff={'name': role.name},
        )

    @classmethod
    def best_role_level(cls, user: User) -> Optional[int]:
        """Lowest level among the user's valid assignments, or None if none."""
        levels = [
            definition.level
            for definition in (
                RoleRegistry.get(assignment.role_id)
                for assignment in UserRoleAssignment.objects.valid_for(user)
            )
            if definition is not None and definition.is_active
        ]
        return min(levels) if levels else None

    @classmethod
    def has_global_scope(cls, user: User) -> bool:
        for assignment in UserRoleAssignment.objects.valid_for(user):
            definition = RoleRegistry.get(assignment.role_id)
            if definition is not None and definition.is_active and definition.has_global_scope:
                return True
        return False

    @classmethod
    def check_can_manage_role(cls, actor: User, role: Role) -> None:
        """
        Ensure ``actor`` strictly outranks ``role``.

        Holders of a global-scope role may manage any role.

        Raises:
            PermissionDeniedError: otherwise
        """
        if cls.has_global_scope(actor):
            return
        level = cls.best_role_level(actor)
        if level is None or level >= role.level:
            raise PermissionDeniedError(
                'You cannot manage a role at or above your own level.',
                details={'role': role.name, 'actor_level': level, 'role_level': role.level}
            )

    @classmethod
    def validate_four_eyes(cls, assignment: UserRoleAssignment, approver: User) -> bool:
        """
        Validate four-eyes principle: the approver is neither the assignee
        nor the user who made the assignment.

        Raises:
            PermissionDeniedError: if the check fails
        """
        if approver.id in (assignment.user_id, assignment.assigned_by_id):
            raise PermissionDeniedError(
                'Four-eyes validation failed: an assignment must be approved by a different user.'
            )
        return True

    @classmethod
    def _set_override(cls, assignment, permission_name, granted, acting_user, reason, expires_at,
                      history_action, audit_action):
        permission = Permission.objects.by_name(permission_name)
        if permission is None:
            raise NotFoundError(f"Permission '{permission_name}' does not exist")
        if not assignment.is_active:
            raise ValidationError('Assignment is not active.')
        if expires_at is not None and expires_at <= timezone.now():
            raise ValidationError('expires_at must be in the future.')
        if acting_user is not None:
            cls.check_can_manage_role(acting_user, assignment.role)

        with transaction.atomic():
            override, created = AssignmentPermissionOverride.objects.update_or_create(
                assignment=assignment,
                permission=permission,
                defaults={
                    'granted': granted,
                    'granted_by': acting_user,
                    'reason': reason,
                    'expires_at': expires_at,
                }
            )
            cls._append_history(
                assignment, history_action, acting_user, reason,
                details={
                    'permission': permission_name,
                    'expires_at': expires_at.isoformat() if expires_at else None,
                    'replaced': not created,
                },
            )
            AuditLog.log_action(
                action=audit_action,
                user=acting_user,
                target_type='role_assignment',
                target_id=assignment.id,
                diff={'permission': permission_name, 'granted': granted},
                metadata={'target_user_id': str(assignment.user_id), 'reason': reason}
            )
        return override

    @classmethod
    def _validate_scope(cls, role: Role, scope: Dict[str, Iterable]):
        region_ids = [str(region_id) for region_id in scope.get('regions') or []]
        projects = [str(project) for project in scope.get('projects') or []]
        schemes = [str(scheme) for scheme in scope.get('schemes') or []]

        regions = list(Location.objects.filter(id__in=region_ids))
        if len(regions) != len(set(region_ids)):
            raise ValidationError('One or more regions do not exist.')

        allowed = set(role.allowed_scope_levels or [])
        if allowed and Role.SCOPE_LEVEL_GLOBAL not in allowed:
            bad_regions = [region.code for region in regions if region.type not in allowed]
            if bad_regions:
                raise ValidationError(
                    'Region type not allowed for this role.',
                    details={'regions': bad_regions, 'allowed_scope_levels': sorted(allowed)}
                )
            if projects and 'project' not in allowed:
                raise ValidationError('Project scope not allowed for this role.')
            if schemes and 'scheme' not in allowed:
                raise ValidationError('Scheme scope not allowed for this role.')

        total = len(regions) + len(projects) + len(schemes)
        if not role.allow_multiple_scopes and total > 1:
            raise ValidationError('This role allows a single scope entry only.')
        if role.max_scopes is not None and total > role.max_scopes:
            raise ValidationError(
                'Too many scope entries for this role.',
                details={'max_scopes': role.max_scopes, 'requested': total}
            )
        return regions, projects, schemes

    @classmethod
    def _validate_custom_role_fields(cls, fields: Dict[str, Any]) -> None:
        if 'level' in fields and fields['level'] == 0:
            raise ValidationError('Custom roles cannot be created at level 0.')
        if fields.get('default_scope_level') == Role.SCOPE_LEVEL_GLOBAL:
            raise ValidationError('Custom roles cannot default to global scope.')

    @classmethod
    def _lookup_permissions(cls, permission_names: Iterable[str]):
        names = set(permission_names)
        permissions = list(Permission.objects.active().filter(name__in=names))
        missing = names - {permission.name for permission in permissions}
        if missing:
            raise ValidationError(
                'Some permissions are invalid or inactive.',
                details={'permissions': sorted(missing)}
            )
        return permissions

    @classmethod
    def _holds_role(cls, user: User, role: Role) -> bool:
        return (
            UserRoleAssignment.objects.active()
            .filter(user=user, role=role)
            .exclude(approval_status__in=[UserRoleAssignment.STATUS_REJECTED, UserRoleAssignment.STATUS_REVOKED])
            .exists()
        )

    @classmethod
    def _has_primary(cls, user: User) -> bool:
        return UserRoleAssignment.objects.active().filter(user=user, is_primary=True).exists()

    @classmethod
    def _clear_primary(cls, user: User) -> None:
        UserRoleAssignment.objects.filter(user=user, is_primary=True).update(is_primary=False)

    @classmethod
    def _ensure_primary(cls, user: User) -> None:
        """Promote the highest-privilege active assignment when the user has no primary."""
        if cls._has_primary(user):
            return
        candidate = (
            UserRoleAssignment.objects.active()
            .filter(user=user)
            .order_by('role__level', 'created_at')
            .first()
        )
        if candidate is not None:
            candidate.is_primary = True
            candidate.save(update_fields=['is_primary', 'updated_at'])

    @classmethod
    def _deactivate(cls, assignment: UserRoleAssignment, reason: str, at=None) -> None:
        assignment.is_active = False
        assignment.is_primary = False
        assignment.deactivated_at = at or timezone.now()
        assignment.deactivation_reason = reason

    @classmethod
    def _require_pending(cls, assignment: UserRoleAssignment) -> None:
        if not assignment.is_active or assignment.approval_status != UserRoleAssignment.STATUS_PENDING:
            raise ValidationError('Assignment is not pending approval.')

    @classmethod
    def _append_history(cls, assignment, action, performed_by, reason, details=None):
        return AssignmentHistory.objects.create(
            assignment=assignment,
            action=action,
            performed_by=performed_by,
            reason=reason or '',
            details=details or {},
        )


class AuthService:
    """
    Service for authentication operations: JWT issue/validation and login.
    """

    @classmethod
    def generate_jwt(cls, user: User) -> str:
        """
        Generate JWT token for a user.

        Args:
            user: User instance

        Returns:
            JWT token string
        """
        now = datetime.now(dt_timezone.utc)
        payload = {
            'user_id': str(user.id),
            'email': user.email,
            'exp': now + timedelta(hours=getattr(settings, 'JWT_EXPIRATION_HOURS', 24)),
            'iat': now,
        }

        return jwt.encode(
            payload,
            settings.JWT_SECRET_KEY,
            algorithm=getattr(settings, 'JWT_ALGORITHM', 'HS256')
        )

    @classmethod
    def validate_jwt(cls, token: str) -> Optional[Dict[str, Any]]:
        """
        Validate JWT token and return payload.

        Args:
            token: JWT token string

        Returns:
            Decoded payload dict or None if invalid
        """
        try:
            return jwt.decode(
                token,
                settings.JWT_SECRET_KEY,
                algorithms=[getattr(settings, 'JWT_ALGORITHM', 'HS256')]
            )
        except jwt.ExpiredSignatureError:
            return None
        except jwt.InvalidTokenError:
            return None

    @classmethod
    def get_user_from_jwt(cls, token: str) -> Optional[User]:
        """
        Extract and return user from JWT token.

        Args:
            token: JWT token string

        Returns:
            User instance or None if invalid
        """
        payload = cls.validate_jwt(token)
        if not payload:
            return None

        user_id = payload.get('user_id')
        if not user_id:
            return None

        return User.objects.filter(id=user_id, is_active=True).first()

    @classmethod
    def login(cls, email: str, password: str) -> Optional[Dict[str, Any]]:
        """
        Authenticate user and return JWT token.

        Args:
            email: User email
            password: User password

        Returns:
            Dict with user and token, or None if authentication failed
        """
        user = User.objects.active().filter(email=User.objects.normalize_email(email)).first()
        if user is None or not user.check_password(password):
            return None

        user.update_last_login()
        token = cls.generate_jwt(user)

        AuditLog.log_action(
            action='user_login',
            user=user,
            target_type='user',
            target_id=user.id,
        )

        return {
            'user': user,
            'token': token,
        }
