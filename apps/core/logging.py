"""
Custom logging formatters for structured JSON logging, plus the security
event logger.
"""
import json
import logging
import re
import traceback
from datetime import datetime, timezone as dt_timezone
from django.utils import timezone
import sentry_sdk


class PIIMasker:
    """
    Utility class to mask sensitive data in logs.
    """

    EMAIL_PATTERN = re.compile(r'\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b')
    SECRET_PATTERN = re.compile(
        r'(api[_-]?key|token|secret|password|authorization)["\']?\s*[:=]\s*["\']?([^"\'\s,}]+)',
        re.IGNORECASE
    )
    BEARER_PATTERN = re.compile(r'Bearer\s+[A-Za-z0-9\-_.]+', re.IGNORECASE)

    # Field names whose values are never written to logs
    SENSITIVE_FIELDS = {
        'password', 'password_hash', 'passwd',
        'token', 'access_token', 'refresh_token', 'bearer_token', 'authorization',
        'secret', 'secret_key', 'jwt_secret_key',
        'email', 'user_email',
    }

    @classmethod
    def mask_email(cls, text):
        if not isinstance(text, str):
            return text

        def mask_email_match(match):
            username, _, domain = match.group(0).partition('@')
            masked_username = username[0] + '*' * (len(username) - 1) if len(username) > 1 else username
            return f"{masked_username}@{domain}"

        return cls.EMAIL_PATTERN.sub(mask_email_match, text)

    @classmethod
    def mask_secrets(cls, text):
        if not isinstance(text, str):
            return text
        text = cls.BEARER_PATTERN.sub('Bearer ********', text)
        return cls.SECRET_PATTERN.sub(r'\1: ********', text)

    @classmethod
    def mask_text(cls, text):
        """Apply all masking patterns to text."""
        if not isinstance(text, str):
            return text
        return cls.mask_secrets(cls.mask_email(text))

    @classmethod
    def mask_value(cls, value):
        if isinstance(value, dict):
            return cls.mask_dict(value)
        if isinstance(value, (list, tuple)):
            return [cls.mask_value(item) for item in value]
        if isinstance(value, str):
            return cls.mask_text(value)
        return value

    @classmethod
    def mask_dict(cls, data):
        """Recursively mask sensitive data in dictionaries."""
        if not isinstance(data, dict):
            return data

        masked = {}
        for key, value in data.items():
            if str(key).lower() in cls.SENSITIVE_FIELDS and value and not isinstance(value, (dict, list)):
                masked[key] = '********'
            else:
                masked[key] = cls.mask_value(value)
        return masked


# Attributes every LogRecord carries; anything else came in through ``extra``
_RESERVED_ATTRS = {
    'name', 'msg', 'args', 'created', 'filename', 'funcName',
    'levelname', 'levelno', 'lineno', 'module', 'msecs', 'message',
    'pathname', 'process', 'processName', 'relativeCreated',
    'thread', 'threadName', 'exc_info', 'exc_text', 'stack_info',
    'taskName', 'request_id', 'organization_id', 'task_id', 'task_name',
}


class JSONFormatter(logging.Formatter):
    """
    Format log records as JSON for structured logging.
    Includes request_id and organization_id when available and masks
    sensitive data in the message and extra fields.
    """

    def format(self, record):
        log_data = {
            'timestamp': datetime.now(dt_timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': PIIMasker.mask_text(record.getMessage()),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
        }

        for attr in ('request_id', 'organization_id', 'task_id', 'task_name'):
            value = getattr(record, attr, None)
            if value is not None:
                log_data[attr] = str(value)

        if record.exc_info:
            log_data['exception'] = {
                'type': record.exc_info[0].__name__,
                'message': PIIMasker.mask_text(str(record.exc_info[1])),
                'traceback': [PIIMasker.mask_text(line) for line in traceback.format_exception(*record.exc_info)],
            }

        for key, value in record.__dict__.items():
            if key in _RESERVED_ATTRS or key.startswith('_'):
                continue
            masked_value = PIIMasker.mask_dict({key: value})[key]
            try:
                json.dumps(masked_value)
                log_data[key] = masked_value
            except (TypeError, ValueError):
                log_data[key] = PIIMasker.mask_text(str(value))

        return json.dumps(log_data)


class MaskingFormatter(logging.Formatter):
    """Plain-text formatter that masks the rendered line."""

    def format(self, record):
        return PIIMasker.mask_text(super().format(record))


class SecurityLogger:
    """
    Centralized security event logging.

    Events go to the ``security`` logger with structured context. Critical
    event types are also sent to Sentry, which is the operational alerting
    channel.
    """

    CRITICAL_EVENTS = {
        'audit_write_failure',
        'tenant_mismatch',
        'suspicious_activity',
    }

    @staticmethod
    def log_event(event_type: str, level: str = 'warning', **context):
        """
        Log a security event with structured data.

        Args:
            event_type: Type of security event (e.g., 'permission_denied')
            level: Log level ('info', 'warning', 'error', 'critical')
            **context: Additional context data (user_id, organization_id, etc.)

        Example:
            >>> SecurityLogger.log_event(
            ...     'tenant_mismatch',
            ...     user_id='5b0c...',
            ...     resource_type='role',
            ... )
        """
        logger = logging.getLogger('security')

        log_data = {
            'event_type': event_type,
            'event_time': timezone.now().isoformat(),
        }
        log_data.update(context)
        log_data = PIIMasker.mask_dict(log_data)

        log_method = getattr(logger, level, logger.warning)
        log_method(
            f"Security event: {event_type}",
            extra=log_data
        )

        if event_type in SecurityLogger.CRITICAL_EVENTS:
            sentry_sdk.capture_message(
                f"Critical security event: {event_type}",
                level='error',
                extras=log_data
            )

    @staticmethod
    def log_permission_denied(user_id, organization_id, required_permissions, path=None, reason=None):
        """
        Log a resolver denial.

        Args:
            user_id: ID of the caller
            organization_id: Caller's organization
            required_permissions: Keys the endpoint demanded
            path: Request path
            reason: Why resolution denied (missing keys, inactive user, store error)
        """
        SecurityLogger.log_event(
            'permission_denied',
            level='warning',
            user_id=str(user_id) if user_id else None,
            organization_id=str(organization_id) if organization_id else None,
            required_permissions=sorted(required_permissions),
            path=path,
            reason=reason,
        )

    @staticmethod
    def log_tenant_mismatch(user_id, organization_id, resource_type, resource_id, path=None):
        """
        Log an attempt to address another organization's row.

        A permitted caller reaching for a foreign row is either a bug in a
        client or a probe, so this is alerted on.
        """
        SecurityLogger.log_event(
            'tenant_mismatch',
            level='error',
            user_id=str(user_id) if user_id else None,
            organization_id=str(organization_id) if organization_id else None,
            resource_type=resource_type,
            resource_id=str(resource_id),
            path=path,
        )

    @staticmethod
    def log_authentication_failed(reason: str, ip_address: str = None, path: str = None):
        SecurityLogger.log_event(
            'authentication_failed',
            level='warning',
            reason=reason,
            ip_address=ip_address,
            path=path,
        )

    @staticmethod
    def log_rate_limit_exceeded(endpoint: str, ip_address: str, user_id: str = None, organization_id: str = None):
        SecurityLogger.log_event(
            'rate_limit_exceeded',
            level='warning',
            endpoint=endpoint,
            ip_address=ip_address,
            user_id=user_id,
            organization_id=organization_id,
        )

    @staticmethod
    def log_audit_write_failure(action: str, resource_type: str, resource_id=None, actor_id=None, error: str = None):
        """
        Log a failed audit write.

        The mutation it describes has already committed, so the entry is
        retried asynchronously; operators must still be told.
        """
        SecurityLogger.log_event(
            'audit_write_failure',
            level='critical',
            audit_action=action,
            resource_type=resource_type,
            resource_id=str(resource_id) if resource_id else None,
            actor_id=str(actor_id) if actor_id else None,
            error=error,
        )

    @staticmethod
    def log_suspicious_activity(activity_type: str, description: str, **additional_context):
        SecurityLogger.log_event(
            'suspicious_activity',
            level='error',
            activity_type=activity_type,
            description=description,
            **additional_context
        )
