"""
Tests for AccessDecision.

Covers time windows, IP lists, per-permission rate limits, auditing of
audit-required permissions and failing closed on errors.
"""
from datetime import datetime, timezone as dt_timezone
from unittest.mock import patch

import pytest
from django.db import OperationalError

from apps.core.exceptions import PermissionDeniedError, RateLimitExceeded
from apps.rbac.access import AccessContext, AccessDecision
from apps.rbac.models import AuditLog
from apps.rbac.resolver import PermissionResolver

# A Monday
MONDAY_10AM = datetime(2026, 1, 5, 10, 0, tzinfo=dt_timezone.utc)
MONDAY_10_10AM = datetime(2026, 1, 5, 10, 10, tzinfo=dt_timezone.utc)
MONDAY_11PM = datetime(2026, 1, 5, 23, 0, tzinfo=dt_timezone.utc)
SATURDAY_10AM = datetime(2026, 1, 10, 10, 0, tzinfo=dt_timezone.utc)
ASSIGNED_SINCE = datetime(2025, 12, 1, tzinfo=dt_timezone.utc)


@pytest.fixture(autouse=True)
def utc_rbac_timezone(settings):
    settings.RBAC_TIMEZONE = 'UTC'


@pytest.fixture
def holder(make_user, make_role, assign):
    """Assign a role granting the given permission to a fresh user, valid before the fixed timestamps."""
    def _holder(permission):
        user = make_user()
        role = make_role(f'{permission.module}_{permission.action}_holder', 3, [permission])
        assign(user, role, valid_from=ASSIGNED_SINCE)
        return user
    return _holder


@pytest.mark.django_db
class TestTimeWindow:
    """Tests for hour and weekday restrictions."""

    def test_inside_office_hours(self, holder, make_permission):
        user = holder(make_permission('reports.read.regional', allowed_hours_start=9, allowed_hours_end=17))

        decision = AccessDecision.has_permission(user, 'reports.read.regional', AccessContext(timestamp=MONDAY_10AM))

        assert decision.allowed

    def test_outside_office_hours(self, holder, make_permission):
        user = holder(make_permission('reports.read.regional', allowed_hours_start=9, allowed_hours_end=17))

        decision = AccessDecision.has_permission(user, 'reports.read.regional', AccessContext(timestamp=MONDAY_11PM))

        assert decision.is_denied
        assert decision.reason == AccessDecision.REASON_TIME

    def test_window_wrapping_midnight(self, holder, make_permission):
        user = holder(make_permission('reports.read.regional', allowed_hours_start=22, allowed_hours_end=6))

        assert AccessDecision.has_permission(user, 'reports.read.regional', AccessContext(timestamp=MONDAY_11PM))
        assert not AccessDecision.has_permission(user, 'reports.read.regional', AccessContext(timestamp=MONDAY_10AM))

    def test_weekday_restriction(self, holder, make_permission):
        user = holder(make_permission(
            'reports.read.regional',
            allowed_days=['monday', 'tuesday', 'wednesday', 'thursday', 'friday'],
        ))

        assert AccessDecision.has_permission(user, 'reports.read.regional', AccessContext(timestamp=MONDAY_10AM))
        decision = AccessDecision.has_permission(user, 'reports.read.regional', AccessContext(timestamp=SATURDAY_10AM))
        assert decision.reason == AccessDecision.REASON_TIME

    def test_hours_evaluated_in_configured_timezone(self, settings, holder, make_permission):
        settings.RBAC_TIMEZONE = 'Asia/Kolkata'
        user = holder(make_permission('reports.read.regional', allowed_hours_start=9, allowed_hours_end=17))

        # 10:00 UTC is 15:30 in Kolkata, 23:00 UTC is 04:30 the next day
        assert AccessDecision.has_permission(user, 'reports.read.regional', AccessContext(timestamp=MONDAY_10AM))
        assert not AccessDecision.has_permission(user, 'reports.read.regional', AccessContext(timestamp=MONDAY_11PM))


@pytest.mark.django_db
class TestIPRestrictions:
    """Tests for allow and block lists."""

    def test_allow_list_accepts_matching_cidr(self, holder, make_permission):
        user = holder(make_permission('finances.manage', allowed_ips=['10.0.0.0/8']))

        context = AccessContext(timestamp=MONDAY_10AM, ip_address='10.1.2.3')
        assert AccessDecision.has_permission(user, 'finances.manage', context)

    def test_allow_list_rejects_other_addresses(self, holder, make_permission):
        user = holder(make_permission('finances.manage', allowed_ips=['10.0.0.0/8']))

        context = AccessContext(timestamp=MONDAY_10AM, ip_address='192.168.1.10')
        decision = AccessDecision.has_permission(user, 'finances.manage', context)

        assert decision.reason == AccessDecision.REASON_IP

    def test_allow_list_rejects_unknown_address(self, holder, make_permission):
        user = holder(make_permission('finances.manage', allowed_ips=['10.0.0.0/8']))

        decision = AccessDecision.has_permission(user, 'finances.manage', AccessContext(timestamp=MONDAY_10AM))

        assert decision.reason == AccessDecision.REASON_IP

    def test_block_list_wins_over_allow_list(self, holder, make_permission):
        user = holder(make_permission(
            'finances.manage', allowed_ips=['10.0.0.0/8'], blocked_ips=['10.6.6.6'],
        ))

        context = AccessContext(timestamp=MONDAY_10AM, ip_address='10.6.6.6')
        assert not AccessDecision.has_permission(user, 'finances.manage', context)

    def test_ip_checked_after_time_window(self, holder, make_permission):
        user = holder(make_permission(
            'finances.manage', allowed_hours_start=9, allowed_hours_end=17, allowed_ips=['10.0.0.0/8'],
        ))

        context = AccessContext(timestamp=MONDAY_11PM, ip_address='192.168.1.10')
        decision = AccessDecision.has_permission(user, 'finances.manage', context)

        assert decision.reason == AccessDecision.REASON_TIME


@pytest.mark.django_db
class TestRateLimit:
    """Tests for per-permission rate limits."""

    def test_call_after_limit_is_rate_limited(self, holder, make_permission):
        user = holder(make_permission(
            'reports.export', rate_limit_max_requests=2, rate_limit_window_seconds=3600,
        ))
        context = AccessContext(timestamp=MONDAY_10_10AM)

        first = AccessDecision.has_permission(user, 'reports.export', context)
        second = AccessDecision.has_permission(user, 'reports.export', context)
        third = AccessDecision.has_permission(user, 'reports.export', context)

        assert first.allowed and second.allowed
        assert third.is_rate_limited
        assert third.retry_after == 3000

    def test_denied_checks_do_not_consume_quota(self, holder, make_permission):
        user = holder(make_permission(
            'reports.export', allowed_hours_start=9, allowed_hours_end=17,
            rate_limit_max_requests=1, rate_limit_window_seconds=86400,
        ))

        AccessDecision.has_permission(user, 'reports.export', AccessContext(timestamp=MONDAY_10AM.replace(hour=8)))

        assert AccessDecision.has_permission(user, 'reports.export', AccessContext(timestamp=MONDAY_10AM))

    def test_require_permission_raises_rate_limit(self, holder, make_permission):
        user = holder(make_permission(
            'reports.export', rate_limit_max_requests=1, rate_limit_window_seconds=3600,
        ))
        context = AccessContext(timestamp=MONDAY_10_10AM)
        AccessDecision.require_permission(user, 'reports.export', context)

        with pytest.raises(RateLimitExceeded) as exc_info:
            AccessDecision.require_permission(user, 'reports.export', context)

        assert exc_info.value.retry_after == 3000


@pytest.mark.django_db
class TestAuditing:
    """Tests for audit entries on audit-required permissions."""

    def test_audit_required_permission_writes_one_record(self, holder, make_permission):
        user = holder(make_permission('finances.approve', audit_required=True))

        AccessDecision.has_permission(
            user, 'finances.approve', AccessContext(timestamp=MONDAY_10AM, request_id='req-1', ip_address='10.0.0.1')
        )

        logs = AuditLog.objects.by_target('permission', 'finances.approve')
        assert logs.count() == 1
        entry = logs.get()
        assert entry.action == AccessDecision.AUDIT_ALLOWED
        assert entry.request_id == 'req-1'
        assert entry.ip_address == '10.0.0.1'
        assert entry.user == user

    def test_denial_of_audit_required_permission_is_recorded(self, make_user, make_permission):
        make_permission('finances.approve', audit_required=True)

        AccessDecision.has_permission(make_user(), 'finances.approve', AccessContext(timestamp=MONDAY_10AM))

        assert AuditLog.objects.by_action(AccessDecision.AUDIT_DENIED).count() == 1

    def test_ordinary_permission_is_not_audited(self, holder, make_permission):
        user = holder(make_permission('reports.read.regional'))

        AccessDecision.has_permission(user, 'reports.read.regional', AccessContext(timestamp=MONDAY_10AM))

        assert not AuditLog.objects.by_target('permission').exists()


@pytest.mark.django_db
class TestFailClosed:
    """Tests for denials on internal errors."""

    def test_resolution_error_denies(self, holder, make_permission):
        user = holder(make_permission('reports.read.regional', audit_required=True))

        with patch('apps.rbac.access.PermissionResolver.get_permission', side_effect=RuntimeError('boom')):
            decision = AccessDecision.has_permission(user, 'reports.read.regional')

        assert decision.is_denied
        assert decision.reason == AccessDecision.REASON_ERROR
        assert not AuditLog.objects.by_target('permission').exists()

    def test_rate_limiter_error_denies(self, holder, make_permission):
        user = holder(make_permission(
            'reports.export', rate_limit_max_requests=5, rate_limit_window_seconds=60,
        ))

        with patch('apps.rbac.access.PermissionRateLimiter.hit', side_effect=ConnectionError('cache down')):
            decision = AccessDecision.has_permission(user, 'reports.export')

        assert decision.reason == AccessDecision.REASON_ERROR

    def test_transient_database_error_is_retried(self, holder, make_permission):
        user = holder(make_permission('reports.read.regional'))
        get_permission = PermissionResolver.get_permission
        calls = []

        def flaky(*args, **kwargs):
            calls.append(args)
            if len(calls) == 1:
                raise OperationalError('connection reset')
            return get_permission(*args, **kwargs)

        with patch('apps.rbac.access.PermissionResolver.get_permission', side_effect=flaky):
            decision = AccessDecision.has_permission(user, 'reports.read.regional')

        assert decision.allowed
        assert len(calls) == 2

    def test_persistent_database_error_denies_after_retries(self, settings, holder, make_permission):
        settings.RBAC_READ_RETRY_ATTEMPTS = 2
        user = holder(make_permission('reports.read.regional'))

        with patch(
            'apps.rbac.access.PermissionResolver.get_permission', side_effect=OperationalError('db gone')
        ) as get_permission:
            decision = AccessDecision.has_permission(user, 'reports.read.regional')

        assert decision.reason == AccessDecision.REASON_ERROR
        assert get_permission.call_count == 2

    def test_audit_write_failure_keeps_decision(self, holder, make_permission):
        user = holder(make_permission('finances.approve', audit_required=True))

        with patch.object(AuditLog.objects, 'create', side_effect=OperationalError('audit table locked')):
            decision = AccessDecision.has_permission(user, 'finances.approve', AccessContext(timestamp=MONDAY_10AM))

        assert decision.allowed
        assert not AuditLog.objects.by_target('permission', 'finances.approve').exists()

    def test_missing_permission_raises_denied(self, make_user, make_permission):
        make_permission('roles.create')

        with pytest.raises(PermissionDeniedError) as exc_info:
            AccessDecision.require_permission(make_user(), 'roles.create')

        assert exc_info.value.details['reason'] == AccessDecision.REASON_MISSING

    def test_anonymous_user_is_denied(self, make_permission):
        from django.contrib.auth.models import AnonymousUser
        make_permission('roles.create')

        assert not AccessDecision.has_permission(AnonymousUser(), 'roles.create')


@pytest.mark.django_db
class TestCombinators:
    """Tests for has_any_permission and has_all_permissions."""

    def test_any_allows_when_one_held(self, holder, make_permission):
        make_permission('applications.read.all', scope='global')
        user = holder(make_permission('applications.read.regional'))

        decision = AccessDecision.has_any_permission(
            user, ['applications.read.all', 'applications.read.regional']
        )

        assert decision.allowed
        assert decision.permission == 'applications.read.regional'

    def test_all_stops_at_first_missing(self, holder, make_permission):
        make_permission('applications.approve')
        user = holder(make_permission('applications.read.regional'))

        decision = AccessDecision.has_all_permissions(
            user, ['applications.read.regional', 'applications.approve']
        )

        assert not decision.allowed
        assert decision.permission == 'applications.approve'
