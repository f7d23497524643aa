"""
Core API views.
"""
import logging
from django.core.cache import cache
from django.db import DatabaseError, connection
from drf_spectacular.utils import extend_schema
from rest_framework import status
from rest_framework.response import Response
from rest_framework.views import APIView

logger = logging.getLogger(__name__)


class HealthCheckView(APIView):
    """
    Health check endpoint to verify system dependencies.

    GET /v1/health

    Returns 200 if all dependencies are healthy, 503 otherwise.
    """
    authentication_classes = []
    permission_classes = []

    @extend_schema(
        tags=['System'],
        summary="Health check",
        description="Check the health of the database and cache",
        responses={
            200: {
                'type': 'object',
                'properties': {
                    'status': {'type': 'string'},
                    'database': {'type': 'string'},
                    'cache': {'type': 'string'},
                }
            },
            503: {
                'type': 'object',
                'properties': {
                    'status': {'type': 'string'},
                    'database': {'type': 'string'},
                    'cache': {'type': 'string'},
                    'errors': {'type': 'array', 'items': {'type': 'string'}},
                }
            }
        }
    )
    def get(self, request):
        health_status = {
            'status': 'healthy',
            'database': 'unknown',
            'cache': 'unknown',
        }
        errors = []

        try:
            with connection.cursor() as cursor:
                cursor.execute("SELECT 1")
            health_status['database'] = 'healthy'
        except DatabaseError:
            health_status['database'] = 'unhealthy'
            errors.append("Database unavailable")
            logger.error("Database health check failed", exc_info=True)

        try:
            cache.set('health_check', 'ok', timeout=10)
            if cache.get('health_check') == 'ok':
                health_status['cache'] = 'healthy'
            else:
                health_status['cache'] = 'unhealthy'
                errors.append("Cache: Unable to read test key")
        except Exception:
            # django-redis raises its own ConnectionInterrupted family
            health_status['cache'] = 'unhealthy'
            errors.append("Cache unavailable")
            logger.error("Cache health check failed", exc_info=True)

        if errors:
            health_status['status'] = 'unhealthy'
            health_status['errors'] = errors
            return Response(health_status, status=status.HTTP_503_SERVICE_UNAVAILABLE)

        return Response(health_status, status=status.HTTP_200_OK)
