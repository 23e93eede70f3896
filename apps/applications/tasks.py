"""
Celery tasks for the application workflow.
"""
from celery import shared_task
import logging

from apps.core.tasks import LoggedTask

logger = logging.getLogger(__name__)


@shared_task(base=LoggedTask, bind=True, max_retries=3, default_retry_delay=60)
def notify_application_decision(self, application_pk: str, status: str, actor_id: str):
    """
    Notify the applicant of a final decision on their application.

    Dispatched after the transaction recording an approval, rejection or
    cancellation commits. Delivery channels (SMS, email) plug in here; for
    now the decision is logged.

    Args:
        application_pk: UUID of the application
        status: Terminal status reached
        actor_id: UUID of the user who took the decision

    Returns:
        dict: Result of the notification
    """
    from apps.applications.models import Application

    try:
        application = Application.objects.select_related('applicant').get(pk=application_pk)

        if application.status != status:
            logger.warning(
                f"Skipping decision notification for {application.application_id} - "
                f"status is {application.status}, expected {status}"
            )
            return {'status': 'skipped', 'reason': f'status is {application.status}'}

        logger.info(
            f"Decision notification for application {application.application_id}: {status}",
            extra={
                'application_id': application.application_id,
                'applicant_id': str(application.applicant_id),
                'decision': status,
                'actor_id': actor_id,
            }
        )

        return {
            'status': 'sent',
            'application_id': application.application_id,
            'decision': status,
        }

    except Application.DoesNotExist:
        logger.error(f"Application {application_pk} not found")
        return {'status': 'error', 'reason': 'application not found'}

    except Exception as e:
        logger.error(
            f"Failed to send decision notification for application {application_pk}: {str(e)}",
            exc_info=True
        )
        raise self.retry(exc=e, countdown=60 * (2 ** self.request.retries))


@shared_task(base=LoggedTask, bind=True, max_retries=3, default_retry_delay=60)
def refresh_sla_status_task(self):
    """
    Recompute SLA status of open applications.

    Scheduled periodically by Celery beat.

    Returns:
        dict: Number of applications whose SLA status changed
    """
    from apps.applications.workflow import ApplicationWorkflow

    changed = ApplicationWorkflow.refresh_sla_status()
    return {'changed': changed}
