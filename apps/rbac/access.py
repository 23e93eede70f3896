"""
Access decisions.

AccessDecision is the single entry point for "may this user do X now,
from here". Views (through HasPermission), the workflow and the services
all ask it; nothing compares role names.

A decision is one of:
- allowed
- denied (reason: missing, time, ip or error)
- rate_limited (with retry_after seconds)

Checks fail closed: any error while resolving permissions or counting
uses produces a denial with reason ``error``.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional

from django.conf import settings
from django.db import OperationalError
from django.utils import timezone
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    wait_exponential,
    wait_random,
)

from apps.core.exceptions import PermissionDeniedError, RateLimitExceeded
from apps.core.logging import SecurityLogger
from apps.core.middleware import get_client_ip
from apps.core.rate_limiting import PermissionRateLimiter
from apps.rbac.registry import PermissionRegistry
from apps.rbac.resolver import PermissionResolver, ResolvedPermission

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AccessContext:
    """Where and when an access check happens."""

    timestamp: datetime = field(default_factory=timezone.now)
    ip_address: Optional[str] = None
    request_id: Optional[str] = None
    path: Optional[str] = None

    @classmethod
    def from_request(cls, request) -> 'AccessContext':
        return cls(
            timestamp=timezone.now(),
            ip_address=get_client_ip(request),
            request_id=getattr(request, 'request_id', None),
            path=getattr(request, 'path', None),
        )


@dataclass(frozen=True)
class Decision:
    """Outcome of an access check. Truthy only when allowed."""

    ALLOWED = 'allowed'
    DENIED = 'denied'
    RATE_LIMITED = 'rate_limited'

    outcome: str
    permission: str
    reason: Optional[str] = None
    retry_after: Optional[int] = None

    @property
    def allowed(self) -> bool:
        return self.outcome == self.ALLOWED

    @property
    def is_denied(self) -> bool:
        return self.outcome == self.DENIED

    @property
    def is_rate_limited(self) -> bool:
        return self.outcome == self.RATE_LIMITED

    def __bool__(self):
        return self.allowed

    @classmethod
    def allow(cls, permission: str) -> 'Decision':
        return cls(cls.ALLOWED, permission)

    @classmethod
    def deny(cls, permission: str, reason: str) -> 'Decision':
        return cls(cls.DENIED, permission, reason=reason)

    @classmethod
    def rate_limit(cls, permission: str, retry_after: int) -> 'Decision':
        return cls(cls.RATE_LIMITED, permission, reason='rate_limit', retry_after=retry_after)


def _stop_after_configured_attempts(retry_state) -> bool:
    return retry_state.attempt_number >= getattr(settings, 'RBAC_READ_RETRY_ATTEMPTS', 3)


class AccessDecision:
    """
    Service answering permission checks.

    Usage:
        decision = AccessDecision.has_permission(user, 'applications.approve', context)
        if decision.allowed: ...

        AccessDecision.require_permission(user, 'roles.create', context)  # raises
    """

    REASON_MISSING = 'missing'
    REASON_TIME = 'time'
    REASON_IP = 'ip'
    REASON_ERROR = 'error'

    AUDIT_ALLOWED = 'access_allowed'
    AUDIT_DENIED = 'access_denied'
    AUDIT_RATE_LIMITED = 'rate_limited'

    @classmethod
    def has_permission(cls, user, permission_name: str, context: Optional[AccessContext] = None) -> Decision:
        """
        Decide whether ``user`` may use ``permission_name`` in ``context``.

        Conditions are evaluated in order: time window, IP lists, rate
        limit. The rate-limit counter is only touched once the other
        conditions pass.

        Args:
            user: User instance
            permission_name: Permission name (e.g. 'applications.approve')
            context: AccessContext (defaults to now, no IP)

        Returns:
            Decision
        """
        context = context or AccessContext()
        user_id = getattr(user, 'id', None)

        try:
            permission = cls._resolve(user, permission_name, context.timestamp)
            decision = cls._evaluate(user_id, permission_name, permission, context)
            audit_required = (
                permission.audit_required if permission is not None
                else cls._definition_audit_required(permission_name)
            )
        except Exception as e:
            logger.error(
                f"Access check failed for {permission_name}: {e.__class__.__name__}",
                extra={'user_id': str(user_id) if user_id else None, 'permission': permission_name},
                exc_info=True
            )
            SecurityLogger.log_access_check_failed(user_id, permission_name, e.__class__.__name__)
            # Not audited: the registry may be what failed
            return Decision.deny(permission_name, cls.REASON_ERROR)

        cls._record(user, decision, context, audit_required)
        return decision

    @classmethod
    def has_any_permission(cls, user, permission_names: Iterable[str], context: Optional[AccessContext] = None) -> Decision:
        """
        Allowed as soon as one permission is allowed.

        A rate-limited result is returned only when no permission was
        allowed; otherwise the last denial is returned.
        """
        context = context or AccessContext()
        rate_limited = None
        decision = None
        for permission_name in permission_names:
            decision = cls.has_permission(user, permission_name, context)
            if decision.allowed:
                return decision
            if decision.is_rate_limited and rate_limited is None:
                rate_limited = decision
        if rate_limited is not None:
            return rate_limited
        return decision if decision is not None else Decision.deny('', cls.REASON_MISSING)

    @classmethod
    def has_all_permissions(cls, user, permission_names: Iterable[str], context: Optional[AccessContext] = None) -> Decision:
        """Allowed only if every permission is allowed; stops at the first failure."""
        context = context or AccessContext()
        decision = None
        for permission_name in permission_names:
            decision = cls.has_permission(user, permission_name, context)
            if not decision.allowed:
                return decision
        return decision if decision is not None else Decision.deny('', cls.REASON_MISSING)

    @classmethod
    def require_permission(cls, user, permission_name: str, context: Optional[AccessContext] = None) -> Decision:
        """
        Raise unless the check is allowed.

        Raises:
            RateLimitExceeded: if the permission is rate limited
            PermissionDeniedError: on any denial
        """
        decision = cls.has_permission(user, permission_name, context)
        if decision.is_rate_limited:
            raise RateLimitExceeded(
                'Rate limit exceeded for this action.',
                retry_after=decision.retry_after,
                details={'permission': permission_name},
            )
        if not decision.allowed:
            raise PermissionDeniedError(
                'You do not have permission to perform this action.',
                details={'permission': permission_name, 'reason': decision.reason},
            )
        return decision

    @classmethod
    @retry(
        stop=_stop_after_configured_attempts,
        wait=wait_exponential(multiplier=0.05, max=0.5) + wait_random(0, 0.05),
        retry=retry_if_exception_type(OperationalError),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    def _resolve(cls, user, permission_name: str, at) -> Optional[ResolvedPermission]:
        return PermissionResolver.get_permission(user, permission_name, at)

    @classmethod
    def _definition_audit_required(cls, permission_name: str) -> bool:
        definition = PermissionRegistry.get(permission_name)
        return bool(definition and definition.audit_required)

    @classmethod
    def _evaluate(cls, user_id, permission_name: str, permission: Optional[ResolvedPermission],
                  context: AccessContext) -> Decision:
        if permission is None:
            return Decision.deny(permission_name, cls.REASON_MISSING)

        conditions = permission.conditions

        if not conditions.is_within_time_window(context.timestamp):
            return Decision.deny(permission_name, cls.REASON_TIME)

        if not conditions.is_ip_allowed(context.ip_address):
            return Decision.deny(permission_name, cls.REASON_IP)

        if conditions.is_rate_limited:
            is_allowed, retry_after = PermissionRateLimiter.hit(
                user_id,
                permission_name,
                conditions.rate_limit_max_requests,
                conditions.rate_limit_window_seconds,
                now=context.timestamp.timestamp(),
            )
            if not is_allowed:
                return Decision.rate_limit(permission_name, retry_after)

        return Decision.allow(permission_name)

    @classmethod
    def _record(cls, user, decision: Decision, context: AccessContext, audit_required: bool) -> None:
        from apps.rbac.models import AuditLog

        user_id = getattr(user, 'id', None)

        if decision.is_rate_limited:
            SecurityLogger.log_rate_limit_exceeded(
                endpoint=decision.permission,
                ip_address=context.ip_address,
                user_id=user_id,
                limit=f"retry after {decision.retry_after}s",
            )
            action = cls.AUDIT_RATE_LIMITED
        elif decision.is_denied:
            SecurityLogger.log_permission_denied(
                user_id, decision.permission, decision.reason, ip_address=context.ip_address
            )
            action = cls.AUDIT_DENIED
        else:
            action = cls.AUDIT_ALLOWED

        if not audit_required:
            return

        AuditLog.log_action(
            action=action,
            user=user if user_id else None,
            target_type='permission',
            target_id=decision.permission,
            metadata={
                'permission': decision.permission,
                'outcome': decision.outcome,
                'reason': decision.reason,
                'retry_after': decision.retry_after,
                'path': context.path,
                'evaluated_at': context.timestamp.isoformat(),
            },
            ip_address=context.ip_address,
            request_id=context.request_id,
        )
