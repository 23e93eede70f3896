"""
Management command to seed canonical permissions.

Creates the system Permission records and their dependency edges. This
command is idempotent and safe to re-run; the dependency graph is validated
once seeding completes.
"""
from django.core.management.base import BaseCommand, CommandError
from django.db import transaction

from apps.core.exceptions import ConfigurationError
from apps.rbac.models import Permission
from apps.rbac.registry import PermissionRegistry, invalidate_registries


def _permission(name, display_name, scope, security_level='internal', audit_required=False,
                description='', **conditions):
    parts = name.split('.')
    return {
        'name': name,
        'display_name': display_name,
        'description': description or display_name,
        'module': parts[0],
        'action': parts[1],
        'resource': parts[0].rstrip('s'),
        'scope': scope,
        'security_level': security_level,
        'audit_required': audit_required,
        **conditions,
    }


GLOBAL = Permission.SCOPE_GLOBAL
REGIONAL = Permission.SCOPE_REGIONAL
ASSIGNED = Permission.SCOPE_ASSIGNED
OWN = Permission.SCOPE_OWN


class Command(BaseCommand):
    help = 'Seed canonical permissions and their dependencies (idempotent)'

    CANONICAL_PERMISSIONS = [
        # Users
        _permission('users.create', 'Create Users', REGIONAL, 'confidential'),
        _permission('users.read.all', 'Read All Users', GLOBAL),
        _permission('users.read.regional', 'Read Regional Users', REGIONAL),
        _permission('users.read.own', 'Read Own Profile', OWN, 'public'),
        _permission('users.update.all', 'Update All Users', GLOBAL, 'restricted'),
        _permission('users.update.regional', 'Update Regional Users', REGIONAL, 'confidential'),
        _permission('users.update.own', 'Update Own Profile', OWN, 'public'),
        _permission('users.delete', 'Delete Users', REGIONAL, 'restricted', audit_required=True),

        # Roles and permissions
        _permission('roles.create', 'Create Roles', GLOBAL, 'restricted', audit_required=True),
        _permission('roles.read', 'Read Roles', GLOBAL),
        _permission('roles.update', 'Update Roles', GLOBAL, 'restricted', audit_required=True),
        _permission('roles.delete', 'Delete Roles', GLOBAL, 'restricted', audit_required=True),
        _permission('roles.assign', 'Assign Roles', REGIONAL, 'confidential', audit_required=True),
        _permission('permissions.read', 'Read Permissions', GLOBAL),
        _permission('permissions.manage', 'Manage Permission Overrides', GLOBAL, 'top_secret', audit_required=True),
        _permission('audit.read', 'Read Audit Logs', GLOBAL, 'restricted', audit_required=True),

        # Beneficiaries
        _permission('beneficiaries.create', 'Register Beneficiaries', REGIONAL),
        _permission('beneficiaries.read.all', 'Read All Beneficiaries', GLOBAL, 'confidential'),
        _permission('beneficiaries.read.regional', 'Read Regional Beneficiaries', REGIONAL),
        _permission('beneficiaries.read.own', 'Read Own Beneficiary Record', OWN, 'public'),
        _permission('beneficiaries.update.regional', 'Update Regional Beneficiaries', REGIONAL),
        _permission('beneficiaries.update.own', 'Update Own Beneficiary Record', OWN, 'public'),

        # Applications
        _permission('applications.create', 'Submit Applications', OWN),
        _permission('applications.read.all', 'Read All Applications', GLOBAL, 'confidential'),
        _permission('applications.read.regional', 'Read Regional Applications', REGIONAL),
        _permission('applications.read.assigned', 'Read Project/Scheme Applications', ASSIGNED),
        _permission('applications.read.own', 'Read Own Applications', OWN, 'public'),
        _permission('applications.update.regional', 'Return Regional Applications', REGIONAL),
        _permission('applications.approve', 'Review Applications', REGIONAL, 'confidential', audit_required=True),
        _permission('applications.cancel.own', 'Cancel Own Applications', OWN, 'public'),

        # Projects and schemes
        _permission('projects.read.all', 'Read All Projects', GLOBAL),
        _permission('projects.read.assigned', 'Read Assigned Projects', ASSIGNED),
        _permission('projects.update.assigned', 'Update Assigned Projects', ASSIGNED),
        _permission('projects.manage', 'Manage Projects', GLOBAL, 'restricted'),
        _permission('schemes.read.all', 'Read All Schemes', GLOBAL),
        _permission('schemes.read.assigned', 'Read Assigned Schemes', ASSIGNED),
        _permission('schemes.update.assigned', 'Update Assigned Schemes', ASSIGNED),
        _permission('schemes.manage', 'Manage Schemes', GLOBAL, 'restricted'),

        # Reports and finances
        _permission('reports.read.all', 'Read All Reports', GLOBAL, 'confidential'),
        _permission('reports.read.regional', 'Read Regional Reports', REGIONAL),
        _permission(
            'reports.export', 'Export Reports', REGIONAL, 'confidential', audit_required=True,
            rate_limit_max_requests=10, rate_limit_window_seconds=3600,
        ),
        _permission('finances.read.all', 'Read All Finances', GLOBAL, 'restricted'),
        _permission('finances.read.regional', 'Read Regional Finances', REGIONAL, 'confidential'),
        _permission('finances.manage', 'Manage Finances', GLOBAL, 'top_secret', audit_required=True),

        # Locations and dashboard
        _permission('locations.read', 'Read Locations', GLOBAL, 'public'),
        _permission('locations.manage', 'Manage Locations', GLOBAL, 'confidential', audit_required=True),
        _permission('dashboard.read.all', 'Read Global Dashboard', GLOBAL),
        _permission('dashboard.read.regional', 'Read Regional Dashboard', REGIONAL),
    ]

    # (permission, required permission)
    REQUIRES = [
        ('finances.manage', 'finances.read.regional'),
        ('applications.approve', 'applications.read.regional'),
        ('applications.update.regional', 'applications.read.regional'),
        ('roles.assign', 'roles.read'),
        ('permissions.manage', 'permissions.read'),
        ('reports.export', 'reports.read.regional'),
    ]

    # (permission, implied permission)
    IMPLIES = [
        ('users.read.all', 'users.read.regional'),
        ('users.update.all', 'users.update.regional'),
        ('applications.read.all', 'applications.read.regional'),
        ('beneficiaries.read.all', 'beneficiaries.read.regional'),
        ('finances.read.all', 'finances.read.regional'),
        ('reports.read.all', 'reports.read.regional'),
        ('dashboard.read.all', 'dashboard.read.regional'),
        ('projects.manage', 'projects.read.all'),
        ('schemes.manage', 'schemes.read.all'),
    ]

    FIELDS = [
        'display_name', 'description', 'module', 'action', 'resource', 'scope',
        'security_level', 'audit_required', 'rate_limit_max_requests', 'rate_limit_window_seconds',
    ]

    @transaction.atomic
    def handle(self, *args, **options):
        """Create or update all canonical permissions and their edges."""
        created_count = 0
        updated_count = 0

        self.stdout.write('Seeding canonical permissions...\n')

        for perm_data in self.CANONICAL_PERMISSIONS:
            defaults = {key: perm_data.get(key) for key in self.FIELDS}
            permission, created = Permission.objects.get_or_create_permission(
                perm_data['name'], is_system=True, **defaults
            )

            if created:
                created_count += 1
                self.stdout.write(self.style.SUCCESS(f'✓ Created: {permission.name}'))
                continue

            changed = [key for key, value in defaults.items() if getattr(permission, key) != value]
            if changed:
                for key in changed:
                    setattr(permission, key, defaults[key])
                permission.save()
                updated_count += 1
                self.stdout.write(self.style.WARNING(f'↻ Updated: {permission.name} ({", ".join(changed)})'))
            else:
                self.stdout.write(self.style.HTTP_INFO(f'  Exists: {permission.name}'))

        self._link('requires', self.REQUIRES)
        self._link('implies', self.IMPLIES)

        invalidate_registries()
        try:
            PermissionRegistry.validate()
        except ConfigurationError as e:
            raise CommandError(str(e))

        self.stdout.write(
            self.style.SUCCESS(
                f'\n✓ Seeding complete: {created_count} created, {updated_count} updated, '
                f'{len(self.CANONICAL_PERMISSIONS) - created_count - updated_count} unchanged'
            )
        )

        self.stdout.write('\n' + '=' * 70)
        self.stdout.write('Permissions Summary by Module:')
        self.stdout.write('=' * 70)

        modules = Permission.objects.values_list('module', flat=True).distinct().order_by('module')
        for module in modules:
            self.stdout.write(f'\n{module.upper()}:')
            for perm in Permission.objects.filter(module=module).order_by('name'):
                self.stdout.write(f'  • {perm.name:<35} {perm.scope:<10} {perm.display_name}')

        self.stdout.write(f'\nTotal permissions: {Permission.objects.count()}')

    def _link(self, relation, pairs):
        for source_name, target_name in pairs:
            source = Permission.objects.get(name=source_name)
            target = Permission.objects.get(name=target_name)
            getattr(source, relation).add(target)
