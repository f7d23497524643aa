"""
Celery tasks for the access-control audit trail.
"""
import logging
from celery import shared_task

from apps.core.exceptions import AuditWriteFailure
from apps.core.tasks import LoggedTask
from apps.rbac.services.audit_service import AuditService

logger = logging.getLogger(__name__)


@shared_task(
    bind=True,
    base=LoggedTask,
    autoretry_for=(AuditWriteFailure,),
    retry_backoff=True,
    retry_backoff_max=600,
    retry_jitter=True,
    max_retries=10,
    acks_late=True,
)
def retry_audit_entry(self, entry):
    """
    Write an audit entry whose on-commit write failed.

    Args:
        entry: Flattened entry from AuditService.build_entry

    Returns:
        dict: The id of the written entry
    """
    audit_log = AuditService.write_entry(entry)
    logger.info(
        "Deferred audit entry written",
        extra={
            'audit_action': entry['action'],
            'audit_log_id': str(audit_log.pk),
            'retry_count': self.request.retries,
        }
    )
    return {'audit_log_id': str(audit_log.pk)}
