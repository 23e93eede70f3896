"""
Base Celery task class with structured logging and Sentry reporting.
"""
import logging

from celery import Task
from celery.exceptions import Retry

from apps.core.log_sanitizer import sanitize_dict_for_logging
from apps.core.sentry_utils import add_breadcrumb, capture_exception, start_transaction

logger = logging.getLogger(__name__)


class LoggedTask(Task):
    """
    Base task for background work (notifications, SLA refresh, expiry).

    Each run is logged on start and on completion with a truncated result,
    and wrapped in a Sentry transaction. Failures are logged with traceback
    and reported to Sentry; a ``self.retry()`` is logged as a retry, not as
    a failure. Keyword arguments go through ``sanitize_dict_for_logging``.
    """

    result_preview_length = 200

    def __call__(self, *args, **kwargs):
        context = self._task_context(args, kwargs)
        transaction = start_transaction(name=f"task.{self.name}", op="celery.task")

        logger.info(f"Task started: {self.name}", extra=context)
        add_breadcrumb(category="task", message=f"Task started: {self.name}", data={'task_id': context['task_id']})

        try:
            result = super().__call__(*args, **kwargs)
        except Retry:
            self._finish(transaction, "aborted")
            raise
        except Exception as exc:
            logger.error(
                f"Task failed: {self.name}",
                extra={**context, 'exception': str(exc)},
                exc_info=True
            )
            capture_exception(exc, task=context)
            self._finish(transaction, "internal_error")
            raise

        logger.info(
            f"Task completed: {self.name}",
            extra={**context, 'result': self._preview(result)}
        )
        self._finish(transaction, "ok")
        return result

    def on_retry(self, exc, task_id, args, kwargs, einfo):
        logger.warning(
            f"Task retry: {self.name} (attempt {self.request.retries}/{self.max_retries})",
            extra={
                'task_id': task_id,
                'task_name': self.name,
                'retry_count': self.request.retries,
                'max_retries': self.max_retries,
                'exception': str(exc),
            }
        )
        super().on_retry(exc, task_id, args, kwargs, einfo)

    def _task_context(self, args, kwargs):
        # Positional arguments are ids and decision names, never contact data
        return {
            'task_id': self.request.id,
            'task_name': self.name,
            'task_args': [str(arg) for arg in args],
            'task_kwargs': sanitize_dict_for_logging(dict(kwargs)),
        }

    def _preview(self, result):
        if result is None:
            return None
        text = str(result)
        if len(text) > self.result_preview_length:
            return text[:self.result_preview_length] + '... (truncated)'
        return text

    @staticmethod
    def _finish(transaction, status):
        if transaction is None:
            return
        transaction.set_status(status)
        transaction.finish()
