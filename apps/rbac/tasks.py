"""
Celery tasks for RBAC housekeeping.
"""
from celery import shared_task

from apps.core.tasks import LoggedTask


@shared_task(base=LoggedTask, bind=True, max_retries=3, default_retry_delay=60)
def expire_stale_assignments_task(self):
    """
    Deactivate role assignments whose validity period has ended.

    Scheduled periodically by Celery beat. Access checks already ignore
    expired assignments; this task records the expiry in each
    assignment's history.

    Returns:
        dict: Number of assignments expired
    """
    from apps.rbac.services import RBACService

    expired = RBACService.expire_stale_assignments()
    return {'expired': expired}
