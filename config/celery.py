"""
Celery configuration for the Welfare Administration API.

Tasks derive from ``apps.core.tasks.LoggedTask``, which logs each run and
reports failures to Sentry.
"""
import os
from celery import Celery

# Set the default Django settings module
os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'config.settings')

app = Celery('welfare')

# Load configuration from Django settings with CELERY_ prefix
app.config_from_object('django.conf:settings', namespace='CELERY')

# Auto-discover tasks in all installed apps
app.autodiscover_tasks()


# Celery Beat Schedule for Periodic Tasks
app.conf.beat_schedule = {
    # Deactivate role assignments past their valid_until every hour
    'expire-stale-role-assignments': {
        'task': 'apps.rbac.tasks.expire_stale_assignments_task',
        'schedule': 3600.0,
    },

    # Recompute SLA status of open applications every 15 minutes
    'refresh-application-sla-status': {
        'task': 'apps.applications.tasks.refresh_sla_status_task',
        'schedule': 900.0,
    },
}

app.conf.timezone = 'UTC'
