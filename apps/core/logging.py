"""
Structured JSON logging and security event logging.

Redaction of tokens, passwords and beneficiary identifiers is shared with
the console formatter through ``apps.core.log_sanitizer``.
"""
import json
import logging
import traceback
from datetime import datetime, timezone as dt_timezone
from django.utils import timezone

from apps.core.log_sanitizer import sanitize_dict_for_logging, sanitize_text
from apps.core.sentry_utils import capture_message


def _sanitize_value(value):
    if isinstance(value, dict):
        return sanitize_dict_for_logging(value)
    if isinstance(value, str):
        return sanitize_text(value)
    return value


class JSONFormatter(logging.Formatter):
    """
    Format log records as one JSON object per line.

    Standard fields come first (timestamp, level, logger, message, source
    location, request or task id); fields passed through ``extra`` follow
    after redaction. Values that are not JSON serializable are logged as
    their redacted ``str()``.
    """

    RESERVED_ATTRS = {
        'name', 'msg', 'args', 'created', 'filename', 'funcName',
        'levelname', 'levelno', 'lineno', 'module', 'msecs', 'message',
        'pathname', 'process', 'processName', 'relativeCreated',
        'thread', 'threadName', 'exc_info', 'exc_text', 'stack_info',
        'taskName',
    }

    def format(self, record):
        log_data = {
            'timestamp': datetime.now(dt_timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': sanitize_text(record.getMessage()),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
        }

        if record.exc_info:
            log_data['exception'] = {
                'type': record.exc_info[0].__name__,
                'message': sanitize_text(str(record.exc_info[1])),
                'traceback': [sanitize_text(line) for line in traceback.format_exception(*record.exc_info)],
            }

        extras = {
            key: value for key, value in record.__dict__.items()
            if key not in self.RESERVED_ATTRS and not key.startswith('_')
        }
        # Key-based redaction first (email, phone, aadhaar fields), then text patterns
        for key, value in sanitize_dict_for_logging(extras).items():
            log_data.setdefault(key, _sanitize_value(value))

        return json.dumps(log_data, default=lambda value: sanitize_text(str(value)))


class SecurityLogger:
    """
    Centralized security event logging for access-control events.

    Logs security-related events with structured data on the ``security``
    logger and sends critical events to Sentry for alerting.

    All security events are logged with:
    - Event type
    - Timestamp
    - Additional context (user id, permission, ip address, ...)

    Context never includes the list of regions or users the caller could
    not see; callers pass only identifiers of the subject of the event.
    """

    # Event types that alert via Sentry
    CRITICAL_EVENTS = {
        'configuration_error',
        'access_check_failed',
        'suspicious_activity',
    }

    @staticmethod
    def log_event(event_type: str, level: str = 'warning', **context):
        """
        Log a security event with structured data.

        Args:
            event_type: Type of security event (e.g., 'permission_denied', 'scope_violation')
            level: Log level ('info', 'warning', 'error', 'critical')
            **context: Additional context data (ip_address, user_id, permission, etc.)

        Example:
            >>> SecurityLogger.log_event(
            ...     'permission_denied',
            ...     user_id='7d1c...',
            ...     permission='applications.approve',
            ...     reason='time',
            ... )
        """
        logger = logging.getLogger('security')

        log_data = {
            'event_type': event_type,
            'event_timestamp': timezone.now().isoformat(),
        }
        log_data.update(context)
        log_data = sanitize_dict_for_logging(log_data)

        log_method = getattr(logger, level, logger.warning)
        log_method(
            f"Security event: {event_type}",
            extra=log_data
        )

        if event_type in SecurityLogger.CRITICAL_EVENTS:
            capture_message(f"Critical security event: {event_type}", level='error', event_type=event_type)

    @staticmethod
    def log_failed_login(email: str, ip_address: str, user_agent: str = None, reason: str = None):
        """
        Log a failed login attempt.

        Args:
            email: Email address used in login attempt
            ip_address: IP address of the request
            user_agent: User agent string (optional)
            reason: Reason for failure (optional)
        """
        SecurityLogger.log_event(
            'failed_login',
            level='warning',
            email=email,
            ip_address=ip_address,
            user_agent=user_agent,
            reason=reason
        )

    @staticmethod
    def log_permission_denied(user_id, permission: str, reason: str, ip_address: str = None):
        """
        Log a permission denial from the access decision engine.

        Args:
            user_id: Id of the user that was denied
            permission: Permission name that was checked
            reason: Denial reason ('missing', 'time', 'ip', 'error', ...)
            ip_address: IP address of the request
        """
        SecurityLogger.log_event(
            'permission_denied',
            level='warning',
            user_id=str(user_id) if user_id else None,
            permission=permission,
            reason=reason,
            ip_address=ip_address
        )

    @staticmethod
    def log_rate_limit_exceeded(
        endpoint: str,
        ip_address: str = None,
        user_id=None,
        limit: str = None
    ):
        """
        Log a rate limit violation.

        Args:
            endpoint: API endpoint or permission name that was rate limited
            ip_address: IP address of the request
            user_id: Id of the user (if authenticated)
            limit: Rate limit that was exceeded (e.g., '5/min')
        """
        SecurityLogger.log_event(
            'rate_limit_exceeded',
            level='warning',
            endpoint=endpoint,
            ip_address=ip_address,
            user_id=str(user_id) if user_id else None,
            limit=limit
        )

    @staticmethod
    def log_scope_violation(user_id, resource_type: str, resource_id, ip_address: str = None):
        """
        Log an attempt to act on a resource outside the caller's scope.

        Args:
            user_id: Id of the acting user
            resource_type: Scoped resource name (e.g., 'applications')
            resource_id: Id of the targeted resource
            ip_address: IP address of the request
        """
        SecurityLogger.log_event(
            'scope_violation',
            level='warning',
            user_id=str(user_id) if user_id else None,
            resource_type=resource_type,
            resource_id=str(resource_id),
            ip_address=ip_address
        )

    @staticmethod
    def log_access_check_failed(user_id, permission: str, error: str):
        """
        Log a backing-store failure during an access check.

        The check itself is denied; this event alerts operators that
        users are being locked out by infrastructure, not policy.
        """
        SecurityLogger.log_event(
            'access_check_failed',
            level='error',
            user_id=str(user_id) if user_id else None,
            permission=permission,
            error=error
        )

    @staticmethod
    def log_configuration_error(description: str, **additional_context):
        """
        Log an invalid RBAC configuration (e.g., a dependency cycle).

        Args:
            description: Human-readable description of the problem
            **additional_context: Offending permission names, cycle path, etc.
        """
        SecurityLogger.log_event(
            'configuration_error',
            level='error',
            description=description,
            **additional_context
        )

    @staticmethod
    def log_suspicious_activity(
        activity_type: str,
        description: str,
        ip_address: str = None,
        user_id=None,
        **additional_context
    ):
        """
        Log suspicious activity that doesn't fit other categories.

        Args:
            activity_type: Type of suspicious activity
            description: Human-readable description
            ip_address: IP address of the request
            user_id: Id of the user (if known)
            **additional_context: Any additional context data
        """
        SecurityLogger.log_event(
            'suspicious_activity',
            level='error',
            activity_type=activity_type,
            description=description,
            ip_address=ip_address,
            user_id=str(user_id) if user_id else None,
            **additional_context
        )
