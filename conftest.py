"""
Pytest configuration and fixtures.
"""
from io import StringIO

import pytest
from django.conf import settings
import django
from django.core.cache import cache
from django.core.management import call_command


def pytest_configure(config):
    """Configure Django settings for tests."""
    settings.DATABASES['default'] = {
        'ENGINE': 'django.db.backends.sqlite3',
        'NAME': ':memory:',
        'ATOMIC_REQUESTS': False,
    }
    settings.CACHES = {
        'default': {
            'BACKEND': 'django.core.cache.backends.locmem.LocMemCache',
            'LOCATION': 'welfare-tests',
        }
    }
    settings.CELERY_TASK_ALWAYS_EAGER = True
    settings.PASSWORD_HASHERS = ['django.contrib.auth.hashers.MD5PasswordHasher']
    django.setup()


@pytest.fixture(scope='session')
def django_db_setup(django_db_setup, django_db_blocker):
    """Set up test database with migrations."""
    with django_db_blocker.unblock():
        call_command('migrate', '--run-syncdb', verbosity=0)


@pytest.fixture(autouse=True)
def clear_cache():
    """Registry snapshots and rate-limit counters must not leak between tests."""
    cache.clear()
    yield
    cache.clear()


@pytest.fixture
def api_client():
    """Return DRF API client."""
    from rest_framework.test import APIClient
    return APIClient()


@pytest.fixture
def locations(db):
    """Seed the demo location tree and return it keyed by code."""
    from apps.locations.models import Location

    call_command('seed_locations', stdout=StringIO())
    return {location.code: location for location in Location.objects.all()}


@pytest.fixture
def rbac_seed(db):
    """Seed the permission catalogue and the system roles."""
    from apps.rbac.models import Role

    call_command('seed_permissions', stdout=StringIO())
    call_command('seed_roles', stdout=StringIO())
    return {role.name: role for role in Role.objects.all()}


@pytest.fixture
def make_user(db):
    """Factory creating active users."""
    from apps.rbac.models import User

    counter = {'value': 0}

    def _make_user(email=None, password='testpass123', **extra):
        counter['value'] += 1
        email = email or f"user{counter['value']}@example.org"
        return User.objects.create_user(email=email, password=password, **extra)

    return _make_user


@pytest.fixture
def grant_role(rbac_seed):
    """
    Factory assigning a seeded role to a user and approving it.

    Usage:
        grant_role(user, 'unit_admin', regions=[unit])
    """
    from apps.rbac.models import UserRoleAssignment
    from apps.rbac.services import RBACService

    def _grant_role(user, role_name, regions=(), projects=(), schemes=(), **kwargs):
        assignment = RBACService.assign_role(
            user,
            rbac_seed[role_name],
            scope={
                'regions': [region.id for region in regions],
                'projects': list(projects),
                'schemes': list(schemes),
            },
            **kwargs
        )
        if assignment.approval_status == UserRoleAssignment.STATUS_PENDING:
            UserRoleAssignment.objects.filter(pk=assignment.pk).update(
                approval_status=UserRoleAssignment.STATUS_APPROVED
            )
            assignment.refresh_from_db()
        return assignment

    return _grant_role


@pytest.fixture
def make_permission(db):
    """
    Factory creating a permission named ``<module>.<action>[.<suffix>]``.

    Usage:
        make_permission('finances.manage', requires=[read], rate_limit_max_requests=2, ...)
    """
    from apps.rbac.models import Permission

    def _make_permission(name, scope=Permission.SCOPE_REGIONAL, requires=(), implies=(), conflicts=(), **fields):
        module, action = name.split('.')[:2]
        permission = Permission.objects.create(
            name=name,
            display_name=name.replace('.', ' ').title(),
            module=module,
            action=action,
            scope=scope,
            **fields
        )
        permission.requires.add(*requires)
        permission.implies.add(*implies)
        permission.conflicts.add(*conflicts)
        return permission

    return _make_permission


@pytest.fixture
def make_role(db):
    """Factory creating an active role granting the given permissions."""
    from apps.rbac.models import Role, RolePermission

    def _make_role(name, level, permissions=(), **fields):
        fields.setdefault('display_name', name.replace('_', ' ').title())
        role = Role.objects.create(name=name, level=level, **fields)
        for permission in permissions:
            RolePermission.objects.grant_permission(role, permission)
        return role

    return _make_role


@pytest.fixture
def assign(db):
    """Factory assigning an arbitrary role through RBACService."""
    from apps.rbac.services import RBACService

    def _assign(user, role, regions=(), **kwargs):
        return RBACService.assign_role(
            user, role, scope={'regions': [region.id for region in regions]}, **kwargs
        )

    return _assign


@pytest.fixture
def make_application(db):
    """
    Factory creating an application pending at unit level without going
    through the workflow.

    Usage:
        make_application(applicant, locations['KL-TVM-NYT-01'], scheme_id='SCH-1')
    """
    from apps.applications.models import Application
    from apps.locations.services import LocationHierarchy

    def _make_application(applicant, unit, **fields):
        chain = LocationHierarchy.get_chain(unit)
        fields.setdefault('title', 'Housing assistance')
        return Application.objects.create(
            application_id=Application.objects.next_application_id(),
            applicant=applicant,
            state=chain['state'],
            district=chain['district'],
            area=chain['area'],
            unit=chain['unit'],
            **fields
        )

    return _make_application
