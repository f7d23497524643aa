"""
Base Celery task classes with logging and Sentry integration.
"""
import logging
from celery import Task
from apps.core.logging import PIIMasker
from apps.core.sentry_utils import add_breadcrumb, capture_exception, start_transaction

logger = logging.getLogger(__name__)


class LoggedTask(Task):
    """
    Base task class with logging and Sentry integration.

    This task class automatically:
    - Logs task start and completion
    - Logs failures and sends them to Sentry with context
    - Logs retry attempts with reason
    - Creates Sentry transactions for performance monitoring
    """

    def __call__(self, *args, **kwargs):
        task_id = self.request.id
        task_name = self.name

        transaction = start_transaction(
            name=f"task.{task_name}",
            op="celery.task"
        )

        try:
            logger.info(
                f"Task started: {task_name}",
                extra={
                    'task_id': task_id,
                    'task_name': task_name,
                    'task_kwargs': self._sanitize_kwargs(kwargs),
                }
            )
            add_breadcrumb(
                category="task",
                message=f"Task started: {task_name}",
                data={'task_id': task_id, 'task_name': task_name}
            )

            result = super().__call__(*args, **kwargs)

            logger.info(
                f"Task completed: {task_name}",
                extra={
                    'task_id': task_id,
                    'task_name': task_name,
                }
            )

            if transaction:
                transaction.set_status("ok")
                transaction.finish()

            return result

        except Exception as exc:
            logger.error(
                f"Task failed: {task_name}",
                extra={
                    'task_id': task_id,
                    'task_name': task_name,
                    'exception': str(exc),
                    'task_kwargs': self._sanitize_kwargs(kwargs),
                },
                exc_info=True
            )
            capture_exception(
                exc,
                task={
                    'task_id': task_id,
                    'task_name': task_name,
                    'retries': self.request.retries,
                }
            )

            if transaction:
                transaction.set_status("internal_error")
                transaction.finish()

            raise

    def on_retry(self, exc, task_id, args, kwargs, einfo):
        """
        Log task retry attempts.
        """
        logger.warning(
            f"Task retry: {self.name}",
            extra={
                'task_id': task_id,
                'task_name': self.name,
                'reason': str(exc),
                'retry_count': self.request.retries,
            }
        )
        super().on_retry(exc, task_id, args, kwargs, einfo)

    @staticmethod
    def _sanitize_kwargs(kwargs):
        return PIIMasker.mask_dict(dict(kwargs))
