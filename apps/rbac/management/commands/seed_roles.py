"""
Management command to seed the system roles.

Creates the eight system roles (super_admin through beneficiary) and syncs
their permission grants. Run ``seed_permissions`` first. This command is
idempotent and safe to re-run.
"""
from django.core.management.base import BaseCommand, CommandError
from django.db import transaction

from apps.rbac.models import Permission, Role, RolePermission
from apps.rbac.registry import invalidate_registries


REGIONAL_STAFF = [
    'users.read.regional', 'roles.read',
    'beneficiaries.create', 'beneficiaries.read.regional', 'beneficiaries.update.regional',
    'applications.read.regional', 'applications.update.regional', 'applications.approve',
    'projects.read.assigned', 'schemes.read.assigned',
    'reports.read.regional', 'dashboard.read.regional', 'locations.read',
]


class Command(BaseCommand):
    help = 'Seed system roles and their permissions (idempotent)'

    # 'ALL' grants every active permission
    DEFAULT_ROLES = {
        'super_admin': {
            'display_name': 'Super Administrator',
            'description': 'Full system access with all permissions',
            'level': 0,
            'category': 'admin',
            'allowed_scope_levels': ['global', 'state', 'district', 'area', 'unit', 'project', 'scheme'],
            'default_scope_level': 'global',
            'allow_multiple_scopes': True,
            'max_scopes': None,
            'max_users': 5,
            'requires_approval': True,
            'is_deletable': False,
            'is_modifiable': False,
            'approval_level': None,
            'permissions': 'ALL',
        },
        'state_admin': {
            'display_name': 'State Administrator',
            'description': 'State-level administrative access and final approval',
            'level': 1,
            'category': 'admin',
            'allowed_scope_levels': ['state'],
            'default_scope_level': 'state',
            'allow_multiple_scopes': False,
            'max_scopes': 1,
            'max_users': 10,
            'requires_approval': True,
            'is_deletable': False,
            'is_modifiable': True,
            'approval_level': Role.APPROVAL_STATE,
            'permissions': REGIONAL_STAFF + [
                'users.create', 'users.read.all', 'users.update.all', 'users.delete',
                'roles.create', 'roles.update', 'roles.delete', 'roles.assign',
                'permissions.read', 'permissions.manage', 'audit.read',
                'beneficiaries.read.all', 'applications.read.all',
                'projects.read.all', 'projects.manage', 'schemes.read.all', 'schemes.manage',
                'reports.read.all', 'reports.export',
                'finances.read.all', 'finances.read.regional', 'finances.manage',
                'locations.manage', 'dashboard.read.all',
            ],
        },
        'district_admin': {
            'display_name': 'District Administrator',
            'description': 'District-level administrative access',
            'level': 2,
            'category': 'admin',
            'allowed_scope_levels': ['district'],
            'default_scope_level': 'district',
            'allow_multiple_scopes': True,
            'max_scopes': 5,
            'max_users': 50,
            'requires_approval': True,
            'is_deletable': True,
            'is_modifiable': True,
            'approval_level': Role.APPROVAL_DISTRICT,
            'permissions': REGIONAL_STAFF + [
                'users.create', 'users.update.regional', 'roles.assign',
                'projects.read.all', 'schemes.read.all',
                'reports.export', 'finances.read.regional',
            ],
        },
        'area_admin': {
            'display_name': 'Area Administrator',
            'description': 'Area-level administrative access',
            'level': 3,
            'category': 'admin',
            'allowed_scope_levels': ['area'],
            'default_scope_level': 'area',
            'allow_multiple_scopes': True,
            'max_scopes': 10,
            'max_users': 100,
            'requires_approval': False,
            'is_deletable': True,
            'is_modifiable': True,
            'approval_level': Role.APPROVAL_AREA,
            'permissions': REGIONAL_STAFF + ['users.create', 'users.update.regional', 'roles.assign'],
        },
        'unit_admin': {
            'display_name': 'Unit Administrator',
            'description': 'Unit-level administrative access and first review',
            'level': 4,
            'category': 'admin',
            'allowed_scope_levels': ['unit'],
            'default_scope_level': 'unit',
            'allow_multiple_scopes': True,
            'max_scopes': 20,
            'max_users': 500,
            'requires_approval': False,
            'is_deletable': True,
            'is_modifiable': True,
            'approval_level': Role.APPROVAL_UNIT,
            'permissions': REGIONAL_STAFF,
        },
        'project_coordinator': {
            'display_name': 'Project Coordinator',
            'description': 'Project-specific coordination',
            'level': 5,
            'category': 'coordinator',
            'allowed_scope_levels': ['project'],
            'default_scope_level': 'project',
            'allow_multiple_scopes': True,
            'max_scopes': 10,
            'max_users': 200,
            'requires_approval': False,
            'is_deletable': True,
            'is_modifiable': True,
            'approval_level': None,
            'permissions': [
                'users.read.regional', 'beneficiaries.read.regional',
                'applications.read.assigned',
                'projects.read.assigned', 'projects.update.assigned',
                'reports.read.regional', 'locations.read',
            ],
        },
        'scheme_coordinator': {
            'display_name': 'Scheme Coordinator',
            'description': 'Scheme-specific coordination',
            'level': 5,
            'category': 'coordinator',
            'allowed_scope_levels': ['scheme'],
            'default_scope_level': 'scheme',
            'allow_multiple_scopes': True,
            'max_scopes': 10,
            'max_users': 200,
            'requires_approval': False,
            'is_deletable': True,
            'is_modifiable': True,
            'approval_level': None,
            'permissions': [
                'users.read.regional', 'beneficiaries.read.regional',
                'applications.read.assigned',
                'schemes.read.assigned', 'schemes.update.assigned',
                'reports.read.regional', 'locations.read',
            ],
        },
        'beneficiary': {
            'display_name': 'Beneficiary',
            'description': 'End user with access to own data and applications',
            'level': 6,
            'category': 'beneficiary',
            'allowed_scope_levels': ['unit'],
            'default_scope_level': 'unit',
            'allow_multiple_scopes': False,
            'max_scopes': 1,
            'max_users': None,
            'requires_approval': False,
            'is_deletable': True,
            'is_modifiable': False,
            'approval_level': None,
            'permissions': [
                'users.read.own', 'users.update.own',
                'beneficiaries.read.own', 'beneficiaries.update.own',
                'applications.create', 'applications.read.own', 'applications.cancel.own',
                'locations.read',
            ],
        },
    }

    @transaction.atomic
    def handle(self, *args, **options):
        """Create or update every system role and sync its grants."""
        if not Permission.objects.exists():
            raise CommandError('No permissions found. Run seed_permissions first.')

        self.stdout.write('Seeding system roles...\n')

        for role_name, role_config in self.DEFAULT_ROLES.items():
            config = dict(role_config)
            permission_names = config.pop('permissions')

            role, created = Role.objects.update_or_create(
                name=role_name,
                defaults={**config, 'is_system': True, 'is_active': True},
            )

            if permission_names == 'ALL':
                permissions = list(Permission.objects.active())
            else:
                permissions = list(Permission.objects.filter(name__in=set(permission_names)))
                missing = set(permission_names) - {p.name for p in permissions}
                if missing:
                    raise CommandError(
                        f"Role '{role_name}' references unknown permissions: {', '.join(sorted(missing))}"
                    )

            added, removed = self._sync_role_permissions(role, permissions)
            marker = '✓ Created' if created else '↻ Synced'
            self.stdout.write(
                self.style.SUCCESS(
                    f'{marker}: {role_name:<22} level {role.level}  '
                    f'{len(permissions)} permissions (+{added} / -{removed})'
                )
            )

        invalidate_registries()
        self.stdout.write(self.style.SUCCESS(f'\n✓ Seeded {len(self.DEFAULT_ROLES)} system roles'))

    def _sync_role_permissions(self, role, permissions):
        """
        Sync permissions for a role (idempotent).

        Ensures the role has exactly the specified permissions.

        Returns:
            tuple: (number added, number removed)
        """
        current_perm_ids = set(
            RolePermission.objects.filter(role=role).values_list('permission_id', flat=True)
        )
        target = {p.id: p for p in permissions}

        to_add = set(target) - current_perm_ids
        for perm_id in to_add:
            RolePermission.objects.grant_permission(role, target[perm_id])

        to_remove = current_perm_ids - set(target)
        if to_remove:
            RolePermission.objects.filter(role=role, permission_id__in=to_remove).delete()

        return len(to_add), len(to_remove)
