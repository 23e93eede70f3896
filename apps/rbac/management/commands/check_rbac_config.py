"""
Management command to validate the RBAC configuration.

Checks the permission dependency graph for cycles, every permission's
conditions, and that each workflow approval level has a reviewing role.
Exits non-zero on any problem so it can gate deployments.
"""
from django.core.management.base import BaseCommand, CommandError

from apps.core.exceptions import ConfigurationError
from apps.rbac.models import Role
from apps.rbac.registry import PermissionRegistry, RoleRegistry


class Command(BaseCommand):
    help = 'Validate permission dependencies, conditions and approval roles'

    def handle(self, *args, **options):
        try:
            definitions = PermissionRegistry.validate()
        except ConfigurationError as e:
            raise CommandError(str(e))

        self.stdout.write(self.style.SUCCESS(f'✓ {len(definitions)} permissions, dependency graph acyclic'))

        problems = []
        RoleRegistry.invalidate()
        roles = RoleRegistry.all()
        for level in Role.APPROVAL_LEVEL_ORDER:
            if not any(r.approval_level == level and r.is_active for r in roles.values()):
                problems.append(f"No active role reviews applications at '{level}'")

        for role in roles.values():
            unknown = sorted(name for name in role.permission_names if name not in definitions)
            if unknown:
                problems.append(f"Role '{role.name}' grants unknown permissions: {', '.join(unknown)}")

        if problems:
            for problem in problems:
                self.stdout.write(self.style.ERROR(f'✗ {problem}'))
            raise CommandError(f'{len(problems)} RBAC configuration problem(s) found')

        self.stdout.write(self.style.SUCCESS(f'✓ {len(roles)} roles, every approval level covered'))
