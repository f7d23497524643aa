"""
Core middleware for request processing.
"""
import threading
import uuid
import logging
from django.utils.deprecation import MiddlewareMixin

logger = logging.getLogger(__name__)

_request_context = threading.local()


def get_current_request_id():
    return getattr(_request_context, 'request_id', None)


def set_current_organization_id(organization_id):
    _request_context.organization_id = str(organization_id) if organization_id else None


class RequestIDMiddleware(MiddlewareMixin):
    """
    Inject a unique request_id into each request for tracing.
    The request_id is added to the request object and to log records.
    """

    def process_request(self, request):
        """Generate and attach request_id to the request."""
        request_id = request.META.get('HTTP_X_REQUEST_ID') or str(uuid.uuid4())
        request.request_id = request_id
        _request_context.request_id = request_id
        _request_context.organization_id = None

    def process_response(self, request, response):
        """Add request_id to response headers."""
        if hasattr(request, 'request_id'):
            response['X-Request-ID'] = request.request_id
        _request_context.request_id = None
        _request_context.organization_id = None
        return response


class LoggingFilter(logging.Filter):
    """
    Add request_id and organization_id to log records from thread-local storage.
    """

    def filter(self, record):
        if not hasattr(record, 'request_id'):
            record.request_id = getattr(_request_context, 'request_id', None)
        if not hasattr(record, 'organization_id'):
            record.organization_id = getattr(_request_context, 'organization_id', None)
        return True
