"""
Audit trail writer and reader.

Mutations schedule their entry with ``record_on_commit`` so an entry is only
written once the change it describes has committed. A failed write never
touches the committed mutation: it is alerted on and handed to Celery for
retry.
"""
import json
import logging
from collections import namedtuple
from datetime import datetime

from django.conf import settings
from django.core.exceptions import ValidationError
from django.core.serializers.json import DjangoJSONEncoder
from django.core.validators import validate_ipv46_address
from django.db import DatabaseError, transaction
from django.utils import timezone
from kombu.exceptions import OperationalError as BrokerError

from apps.core.exceptions import AuditWriteFailure
from apps.core.logging import SecurityLogger
from apps.core.middleware import get_current_request_id

logger = logging.getLogger(__name__)

AuditPage = namedtuple('AuditPage', ['results', 'count', 'page', 'page_size'])


def _json_safe(values):
    if values is None:
        return None
    return json.loads(json.dumps(values, cls=DjangoJSONEncoder))


def _pk(value):
    if value is None:
        return None
    return str(getattr(value, 'pk', value))


class AuditService:
    """Append-only access-control audit log."""

    @staticmethod
    def client_ip(request):
        """
        Client IP from X-Forwarded-For or REMOTE_ADDR.

        Values that are not IPv4/IPv6 addresses are skipped, since the audit
        column only stores valid addresses.
        """
        if request is None:
            return None
        x_forwarded_for = request.META.get('HTTP_X_FORWARDED_FOR')
        candidates = [x_forwarded_for.split(',')[0].strip()] if x_forwarded_for else []
        candidates.append(request.META.get('REMOTE_ADDR'))
        for candidate in candidates:
            if not candidate:
                continue
            try:
                validate_ipv46_address(candidate)
            except ValidationError:
                logger.warning("Ignoring malformed client address", extra={'client_address': candidate[:64]})
                continue
            return candidate
        return None

    @classmethod
    def build_entry(cls, actor, action, resource_type, resource_id=None, old_values=None,
                    new_values=None, organization=None, ip_address=None, user_agent=None,
                    request=None, occurred_at=None):
        """
        Flatten an audit entry into JSON-safe primitives.

        The result can be inserted directly or passed to a Celery task.
        """
        if organization is None and actor is not None:
            organization = getattr(actor, 'organization_id', None)

        request_id = getattr(request, 'request_id', None) or get_current_request_id() or ''
        if request is not None:
            ip_address = ip_address or cls.client_ip(request)
            user_agent = user_agent or request.META.get('HTTP_USER_AGENT', '')

        occurred_at = occurred_at or timezone.now()

        return {
            'actor_id': _pk(actor),
            'organization_id': _pk(organization),
            'action': action,
            'resource_type': resource_type,
            'resource_id': _pk(resource_id) or '',
            'old_values': _json_safe(old_values),
            'new_values': _json_safe(new_values),
            'ip_address': ip_address,
            'user_agent': (user_agent or '')[:1000],
            'request_id': request_id,
            'occurred_at': occurred_at.isoformat(),
        }

    @classmethod
    def record(cls, actor, action, resource_type, resource_id=None, old_values=None,
               new_values=None, organization=None, ip_address=None, user_agent=None,
               request=None, occurred_at=None):
        """
        Write one entry synchronously.

        Raises:
            AuditWriteFailure: if the entry could not be persisted
        """
        entry = cls.build_entry(
            actor, action, resource_type,
            resource_id=resource_id,
            old_values=old_values,
            new_values=new_values,
            organization=organization,
            ip_address=ip_address,
            user_agent=user_agent,
            request=request,
            occurred_at=occurred_at,
        )
        return cls.write_entry(entry)

    @classmethod
    def record_on_commit(cls, actor, action, resource_type, **kwargs):
        """
        Schedule an entry for after the surrounding transaction commits.

        If the transaction rolls back the entry is never written.
        """
        entry = cls.build_entry(actor, action, resource_type, **kwargs)
        transaction.on_commit(lambda: cls._record_or_defer(entry))
        return entry

    @classmethod
    def write_entry(cls, entry):
        """Insert a flattened entry, keeping created_at monotonic per actor and resource."""
        from apps.rbac.models import AuditLog

        occurred_at = datetime.fromisoformat(entry['occurred_at'])
        try:
            with transaction.atomic():
                created_at = cls._monotonic_timestamp(
                    entry['actor_id'], entry['resource_type'], entry['resource_id'], occurred_at
                )
                return AuditLog.objects.create(
                    actor_id=entry['actor_id'],
                    organization_id=entry['organization_id'],
                    action=entry['action'],
                    resource_type=entry['resource_type'],
                    resource_id=entry['resource_id'],
                    old_values=entry['old_values'],
                    new_values=entry['new_values'],
                    ip_address=entry['ip_address'],
                    user_agent=entry['user_agent'],
                    request_id=entry['request_id'],
                    created_at=created_at,
                )
        except DatabaseError as e:
            raise AuditWriteFailure(
                f"Failed to write audit entry '{entry['action']}'",
                details={'error': str(e)},
            ) from e

    @staticmethod
    def _monotonic_timestamp(actor_id, resource_type, resource_id, occurred_at):
        from apps.rbac.models import AuditLog

        latest = (
            AuditLog.objects.filter(actor_id=actor_id)
            .for_resource(resource_type, resource_id)
            .order_by('-created_at')
            .values_list('created_at', flat=True)
            .first()
        )

        if latest is not None and latest > occurred_at:
            return latest
        return occurred_at

    @classmethod
    def _record_or_defer(cls, entry):
        try:
            cls.write_entry(entry)
        except AuditWriteFailure as e:
            SecurityLogger.log_audit_write_failure(
                action=entry['action'],
                resource_type=entry['resource_type'],
                resource_id=entry['resource_id'],
                actor_id=entry['actor_id'],
                error=str(e.details.get('error', e.message)),
            )
            cls._enqueue_retry(entry)

    @staticmethod
    def _enqueue_retry(entry):
        from apps.rbac.tasks import retry_audit_entry

        try:
            retry_audit_entry.delay(entry)
        except BrokerError:
            # Entry survives only in the log line below
            logger.critical(
                "Audit entry could not be queued for retry",
                extra={'audit_entry': entry},
                exc_info=True
            )

    @classmethod
    def query(cls, organization, action=None, resource_type=None, actor_id=None,
              page=1, page_size=None, max_page_size=None):
        """
        One page of an organization's audit trail, newest first.

        ``page_size`` is clamped to ``[1, max_page_size]``.
        """
        from apps.rbac.models import AuditLog

        max_page_size = max_page_size or settings.AUDIT_MAX_PAGE_SIZE
        page_size = page_size or settings.AUDIT_PAGE_SIZE
        page_size = max(1, min(int(page_size), max_page_size))
        page = max(1, int(page))

        qs = AuditLog.objects.for_organization(organization).select_related('actor')
        if action:
            qs = qs.filter(action=action)
        if resource_type:
            qs = qs.filter(resource_type=resource_type)
        if actor_id:
            qs = qs.filter(actor_id=actor_id)
        qs = qs.order_by('-created_at', '-id')

        offset = (page - 1) * page_size
        return AuditPage(
            results=list(qs[offset:offset + page_size]),
            count=qs.count(),
            page=page,
            page_size=page_size,
        )
