"""
Error taxonomy and the DRF exception handler.

Every error leaves the API as ``{"error": {"code", "message"}, "request_id"}``.
Denials, cross-organization access and missing rows share one response so
callers cannot probe for the existence of another organization's rows.
"""
import logging
from django.core.exceptions import ObjectDoesNotExist, ValidationError as DjangoValidationError
from django.db import DatabaseError
from django.http import Http404, JsonResponse
from django_ratelimit.exceptions import Ratelimited
from rest_framework import exceptions as drf_exceptions
from rest_framework import status
from rest_framework.response import Response
from rest_framework.views import exception_handler

logger = logging.getLogger(__name__)

NOT_AUTHORIZED_CODE = 'NOT_AUTHORIZED'
NOT_AUTHORIZED_MESSAGE = 'Not authorized.'
RATE_LIMIT_RETRY_AFTER = 60


class WorkshopError(Exception):
    """Base exception for access-control errors."""

    code = 'ERROR'
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = 'Request failed.'

    def __init__(self, message=None, details=None):
        self.message = message or self.default_message
        self.details = details or {}
        super().__init__(self.message)


class ValidationFailed(WorkshopError):
    """Malformed input or an unknown permission key."""
    code = 'VALIDATION_ERROR'
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = 'Invalid input.'


class NotFound(WorkshopError):
    code = 'NOT_FOUND'
    status_code = status.HTTP_404_NOT_FOUND
    default_message = 'Resource not found.'


class Forbidden(WorkshopError):
    """The resolver denied the request."""
    code = 'FORBIDDEN'
    status_code = status.HTTP_403_FORBIDDEN
    default_message = 'Permission denied.'


class TenantMismatch(WorkshopError):
    """A row from another organization was addressed."""
    code = 'TENANT_MISMATCH'
    status_code = status.HTTP_404_NOT_FOUND
    default_message = 'Resource belongs to another organization.'


class Conflict(WorkshopError):
    code = 'CONFLICT'
    status_code = status.HTTP_409_CONFLICT
    default_message = 'Request conflicts with the current state.'


class AuditWriteFailure(WorkshopError):
    """
    The audit entry could not be persisted.

    Raised only inside the audit pipeline; the business mutation it describes
    has already committed and the entry is queued for retry.
    """
    code = 'AUDIT_WRITE_FAILURE'
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message = 'Audit entry could not be written.'


class StoreError(WorkshopError):
    """Underlying persistence failure. Safe to retry only for reads."""
    code = 'STORE_ERROR'
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_message = 'Storage is temporarily unavailable.'


# Codes that collapse into the uniform not-authorized response
CONCEALED_ERRORS = (NotFound, Forbidden, TenantMismatch)


def error_body(code, message, request_id=None, details=None):
    body = {'error': {'code': code, 'message': message}}
    if details:
        body['error']['details'] = details
    if request_id:
        body['request_id'] = request_id
    return body


def not_authorized_body(request_id=None):
    return error_body(NOT_AUTHORIZED_CODE, NOT_AUTHORIZED_MESSAGE, request_id)


def not_authorized_response(request):
    """Uniform denial for code paths that run outside DRF (middleware)."""
    return JsonResponse(
        not_authorized_body(getattr(request, 'request_id', None)),
        status=status.HTTP_403_FORBIDDEN,
    )


def _client_ip(request):
    x_forwarded_for = request.META.get('HTTP_X_FORWARDED_FOR')
    if x_forwarded_for:
        return x_forwarded_for.split(',')[0].strip()
    return request.META.get('REMOTE_ADDR', 'unknown')


def _log_rate_limit(request):
    from apps.core.logging import SecurityLogger

    user = getattr(request, 'user', None)
    organization = getattr(request, 'organization', None)
    SecurityLogger.log_rate_limit_exceeded(
        endpoint=request.path,
        ip_address=_client_ip(request),
        user_id=str(user.id) if getattr(user, 'is_authenticated', False) else None,
        organization_id=str(organization.id) if organization else None,
    )


def ratelimit_view(request, exception):
    """
    Custom view for django-ratelimit to return 429 instead of 403.

    Called by django-ratelimit when a limit is exceeded with block=True
    outside of DRF's exception handling.
    """
    _log_rate_limit(request)

    response = JsonResponse(
        error_body(
            'RATE_LIMIT_EXCEEDED',
            'Rate limit exceeded. Please try again later.',
            getattr(request, 'request_id', None),
        ),
        status=status.HTTP_429_TOO_MANY_REQUESTS,
    )
    response['Retry-After'] = str(RATE_LIMIT_RETRY_AFTER)
    return response


def _log_concealed(exc, request, code):
    """Keep the real reason server side; the caller only sees NOT_AUTHORIZED."""
    user = getattr(request, 'user', None) if request else None
    logger.warning(
        "Request denied",
        extra={
            'denial_code': code,
            'reason': str(exc),
            'details': getattr(exc, 'details', None),
            'user_id': str(user.id) if getattr(user, 'is_authenticated', False) else None,
            'path': request.path if request else None,
            'method': request.method if request else None,
            'request_id': getattr(request, 'request_id', None) if request else None,
        }
    )


def custom_exception_handler(exc, context):
    """
    Custom exception handler that logs errors and returns consistent format.
    """
    request = context.get('request')
    request_id = getattr(request, 'request_id', None) if request else None

    if isinstance(exc, Ratelimited):
        if request is not None:
            _log_rate_limit(request)
        response = Response(
            error_body('RATE_LIMIT_EXCEEDED', 'Rate limit exceeded. Please try again later.', request_id),
            status=status.HTTP_429_TOO_MANY_REQUESTS,
        )
        response['Retry-After'] = str(RATE_LIMIT_RETRY_AFTER)
        return response

    if isinstance(exc, CONCEALED_ERRORS):
        _log_concealed(exc, request, exc.code)
        return Response(not_authorized_body(request_id), status=status.HTTP_403_FORBIDDEN)

    if isinstance(exc, (Http404, ObjectDoesNotExist, drf_exceptions.NotFound)):
        _log_concealed(exc, request, NotFound.code)
        return Response(not_authorized_body(request_id), status=status.HTTP_403_FORBIDDEN)

    if isinstance(exc, drf_exceptions.PermissionDenied):
        _log_concealed(exc, request, Forbidden.code)
        return Response(not_authorized_body(request_id), status=status.HTTP_403_FORBIDDEN)

    if isinstance(exc, WorkshopError):
        log_method = logger.error if exc.status_code >= 500 else logger.info
        log_method(
            f"API error: {exc.code}",
            extra={
                'error_code': exc.code,
                'reason': exc.message,
                'request_id': request_id,
                'path': request.path if request else None,
            }
        )
        return Response(
            error_body(exc.code, exc.message, request_id, exc.details),
            status=exc.status_code,
        )

    if isinstance(exc, DjangoValidationError):
        details = exc.message_dict if hasattr(exc, 'error_dict') else {'non_field_errors': exc.messages}
        return Response(
            error_body(ValidationFailed.code, ValidationFailed.default_message, request_id, details),
            status=status.HTTP_400_BAD_REQUEST,
        )

    if isinstance(exc, DatabaseError):
        logger.error(
            "Storage failure while handling request",
            extra={
                'request_id': request_id,
                'path': request.path if request else None,
            },
            exc_info=True
        )
        from apps.core.sentry_utils import capture_exception
        capture_exception(exc, request={'request_id': request_id, 'path': request.path if request else None})
        return Response(
            error_body(StoreError.code, StoreError.default_message, request_id),
            status=StoreError.status_code,
        )

    # Call DRF's default exception handler for the remaining framework errors
    response = exception_handler(exc, context)

    if response is None:
        logger.error(
            f"Unhandled API exception: {exc.__class__.__name__}",
            extra={
                'request_id': request_id,
                'path': request.path if request else None,
                'method': request.method if request else None,
            },
            exc_info=True
        )
        from apps.core.sentry_utils import capture_exception
        capture_exception(exc, request={'request_id': request_id, 'path': request.path if request else None})
        return Response(
            error_body('INTERNAL_ERROR', 'An unexpected error occurred.', request_id),
            status=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )

    if isinstance(exc, drf_exceptions.ValidationError):
        code = ValidationFailed.code
        message = ValidationFailed.default_message
        details = response.data
    elif isinstance(exc, (drf_exceptions.NotAuthenticated, drf_exceptions.AuthenticationFailed)):
        code = 'UNAUTHENTICATED'
        message = 'Authentication credentials were not provided or are invalid.'
        details = None
    else:
        code = getattr(exc, 'default_code', 'error').upper()
        message = str(getattr(exc, 'detail', exc))
        details = None

    response.data = error_body(code, message, request_id, details)
    return response
