"""
Sentry helpers used by authentication, the approval workflow and Celery tasks.

Every helper is a no-op when ``SENTRY_DSN`` is not configured, so callers
never need to check for Sentry themselves.
"""
import sentry_sdk
from django.conf import settings


def _enabled():
    return bool(settings.SENTRY_DSN)


def set_actor_context(user, role_names=None):
    """
    Attach the acting user to the current Sentry scope.

    Only the user id is sent as the Sentry user; role names go in as a tag
    so an error report shows which part of the hierarchy hit it. Email
    addresses never leave the service (``send_default_pii`` is off too).

    Args:
        user: Authenticated user
        role_names: Optional iterable of the user's active role names
    """
    if not _enabled():
        return

    sentry_sdk.set_user({"id": str(user.id)})
    if role_names:
        sentry_sdk.set_tag("rbac.roles", ",".join(sorted(role_names)))


def add_breadcrumb(category, message, level="info", data=None):
    """
    Record a breadcrumb such as a task start or a workflow transition.

    Args:
        category: Breadcrumb category ("task", "workflow", "rbac")
        message: Human-readable message
        level: Severity level (debug, info, warning, error)
        data: Optional dictionary of identifiers
    """
    if not _enabled():
        return

    sentry_sdk.add_breadcrumb(category=category, message=message, level=level, data=data or {})


def capture_exception(exception, **contexts):
    """
    Report an exception with named context blocks.

    Args:
        exception: The exception to report
        **contexts: Context name to dict, e.g. ``task={...}`` or ``application={...}``
    """
    if not _enabled():
        return

    with sentry_sdk.new_scope() as scope:
        for name, values in contexts.items():
            scope.set_context(name, values)
        sentry_sdk.capture_exception(exception)


def start_transaction(name, op):
    """
    Start a performance transaction, or return None without Sentry.

    Args:
        name: Transaction name, e.g. "task.apps.applications.tasks.refresh_sla_status_task"
        op: Operation type, e.g. "celery.task"
    """
    if not _enabled():
        return None

    return sentry_sdk.start_transaction(name=name, op=op)


def capture_message(message, level="error", **tags):
    """
    Send an alert message, e.g. for a critical security event.

    Args:
        message: Alert text (must not contain personal data)
        level: Sentry level
        **tags: Tag name to value, set on the event scope
    """
    if not _enabled():
        return

    with sentry_sdk.new_scope() as scope:
        for name, value in tags.items():
            scope.set_tag(name, value)
        sentry_sdk.capture_message(message, level=level)
