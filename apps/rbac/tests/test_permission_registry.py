"""
Tests for the permission and role registries.
"""
import pytest
from io import StringIO
from django.core.management import call_command
from django.core.management.base import CommandError

from apps.core.exceptions import ConfigurationError
from apps.rbac.models import Permission, RolePermission
from apps.rbac.registry import PermissionRegistry, RoleRegistry, find_cycle


class TestFindCycle:
    """Tests for cycle detection on dependency graphs."""

    def test_acyclic_graph(self):
        graph = {'a': ('b', 'c'), 'b': ('c',), 'c': ()}
        assert find_cycle(graph) is None

    def test_self_loop(self):
        assert find_cycle({'a': ('a',)}) == ['a', 'a']

    def test_reports_cycle_path(self):
        cycle = find_cycle({'a': ('b',), 'b': ('c',), 'c': ('a',), 'd': ('a',)})

        assert cycle[0] == cycle[-1]
        assert set(cycle) == {'a', 'b', 'c'}

    def test_edges_to_unknown_nodes_are_ignored(self):
        assert find_cycle({'a': ('missing',)}) is None


@pytest.mark.django_db
class TestPermissionRegistry:
    """Tests for PermissionRegistry loading and validation."""

    def test_requires_cycle_raises_configuration_error(self, make_permission):
        first = make_permission('reports.read.regional')
        second = make_permission('reports.export', requires=[first])
        first.requires.add(second)

        with pytest.raises(ConfigurationError) as exc_info:
            PermissionRegistry.all()

        assert exc_info.value.details['graph'] == 'requires'

    def test_implies_cycle_raises_configuration_error(self, make_permission):
        first = make_permission('finances.read.all')
        second = make_permission('finances.read.regional', implies=[first])
        first.implies.add(second)

        with pytest.raises(ConfigurationError):
            PermissionRegistry.validate()

    def test_invalid_ip_condition_raises(self, make_permission):
        make_permission('audit.read', allowed_ips=['not-an-ip'])

        with pytest.raises(ConfigurationError) as exc_info:
            PermissionRegistry.validate()

        assert exc_info.value.details['permission'] == 'audit.read'

    def test_definitions_carry_dependencies(self, make_permission):
        read = make_permission('finances.read.regional')
        make_permission('finances.manage', requires=[read])

        definition = PermissionRegistry.get('finances.manage')

        assert definition.requires == ('finances.read.regional',)
        assert definition.scope == Permission.SCOPE_REGIONAL

    def test_mutation_invalidates_cached_definitions(self, make_permission):
        make_permission('audit.read')
        assert PermissionRegistry.get('audit.read').audit_required is False

        permission = Permission.objects.get(name='audit.read')
        permission.audit_required = True
        permission.save()

        assert PermissionRegistry.get('audit.read').audit_required is True

    def test_dependency_change_invalidates_cached_definitions(self, make_permission):
        read = make_permission('finances.read.regional')
        manage = make_permission('finances.manage')
        assert PermissionRegistry.get('finances.manage').requires == ()

        manage.requires.add(read)

        assert PermissionRegistry.get('finances.manage').requires == ('finances.read.regional',)


@pytest.mark.django_db
class TestRoleRegistry:
    """Tests for RoleRegistry snapshots."""

    def test_grant_and_revoke_invalidate_snapshot(self, make_permission, make_role):
        permission = make_permission('audit.read')
        role = make_role('auditor', 3)
        assert RoleRegistry.get(role.id).permission_names == frozenset()

        RolePermission.objects.grant_permission(role, permission)
        assert RoleRegistry.get(role.id).permission_names == {'audit.read'}

        RolePermission.objects.revoke_permission(role, permission)
        assert RoleRegistry.get(role.id).permission_names == frozenset()

    def test_level_zero_role_has_global_scope(self, make_role):
        role = make_role('root', 0)
        assert RoleRegistry.by_name('root').has_global_scope is True
        assert RoleRegistry.get(role.id).level == 0


@pytest.mark.django_db
class TestSeedCommands:
    """Tests for the seed and configuration check commands."""

    def test_seeded_catalogue_is_valid(self, rbac_seed):
        out = StringIO()
        call_command('check_rbac_config', stdout=out)

        definitions = PermissionRegistry.all()
        assert 'applications.approve' in definitions
        assert definitions['applications.approve'].audit_required is True
        assert set(rbac_seed) == {
            'super_admin', 'state_admin', 'district_admin', 'area_admin', 'unit_admin',
            'project_coordinator', 'scheme_coordinator', 'beneficiary',
        }

    def test_seeding_is_idempotent(self, rbac_seed):
        count = RolePermission.objects.count()

        call_command('seed_permissions', stdout=StringIO())
        call_command('seed_roles', stdout=StringIO())

        assert RolePermission.objects.count() == count

    def test_seed_roles_needs_permissions(self, db):
        with pytest.raises(CommandError):
            call_command('seed_roles', stdout=StringIO())
