"""
Request-boundary access control.

OrganizationContextMiddleware authenticates the bearer token and derives the
organization from the user row. TenantIsolationMiddleware then checks every
row addressed in the URL against that organization before the view, and so
before any permission check, runs.
"""
import logging
import uuid

from django.contrib.auth.models import AnonymousUser
from django.db import DatabaseError
from django.http import JsonResponse
from django.utils.deprecation import MiddlewareMixin

from apps.core.exceptions import StoreError, error_body, not_authorized_response
from apps.core.logging import SecurityLogger
from apps.core.middleware import set_current_organization_id
from apps.core.sentry_utils import set_organization_context, set_user_context
from apps.rbac.models import Role, User, UserPermissionOverride, UserRole
from apps.rbac.services import AuditService, AuthService, RequestAccess

logger = logging.getLogger(__name__)

SAFE_METHODS = ('GET', 'HEAD', 'OPTIONS')


def _unauthenticated(request, message='Authentication credentials were not provided or are invalid.'):
    response = JsonResponse(
        error_body('UNAUTHENTICATED', message, getattr(request, 'request_id', None)),
        status=401,
    )
    response['WWW-Authenticate'] = 'Bearer realm="api"'
    return response


def _store_unavailable(request):
    return JsonResponse(
        error_body(StoreError.code, StoreError.default_message, getattr(request, 'request_id', None)),
        status=StoreError.status_code,
    )


class OrganizationContextMiddleware(MiddlewareMixin):
    """
    Authenticate the caller and attach organization scope.

    Sets on every non-public request:
    - request.user: the active User named by the token
    - request.organization: the user's organization (never client supplied)
    - request.access: a RequestAccess resolver handle for this request only

    Public endpoints (health check, schema) bypass authentication.
    """

    PUBLIC_PATHS = [
        '/v1/health',
        '/schema',
    ]

    def process_request(self, request):
        request.organization = None
        request.access = None

        if self._is_public_path(request.path):
            request.user = AnonymousUser()
            return None

        token = AuthService.extract_bearer_token(request)
        if not token:
            request.user = AnonymousUser()
            return _unauthenticated(request)

        payload = AuthService.validate_jwt(token)
        if not payload:
            SecurityLogger.log_authentication_failed(
                reason='invalid_token',
                ip_address=AuditService.client_ip(request),
                path=request.path,
            )
            request.user = AnonymousUser()
            return _unauthenticated(request)

        try:
            user_id = uuid.UUID(str(payload['user_id']))
        except ValueError:
            request.user = AnonymousUser()
            return _unauthenticated(request)

        try:
            user = User.objects.select_related('organization').filter(pk=user_id).first()
        except DatabaseError:
            logger.error(
                "Failed to load user for bearer token",
                extra={'path': request.path},
                exc_info=True
            )
            request.user = AnonymousUser()
            return _store_unavailable(request)

        if user is None:
            SecurityLogger.log_authentication_failed(
                reason='unknown_user',
                ip_address=AuditService.client_ip(request),
                path=request.path,
            )
            request.user = AnonymousUser()
            return _unauthenticated(request)

        claimed_organization = payload.get('organization_id')
        if claimed_organization and claimed_organization != str(user.organization_id):
            SecurityLogger.log_suspicious_activity(
                'organization_claim_mismatch',
                'Token organization differs from the user row',
                user_id=str(user.id),
                claimed_organization_id=claimed_organization,
                organization_id=str(user.organization_id),
                path=request.path,
            )
            request.user = AnonymousUser()
            return _unauthenticated(request)

        if not user.is_active or not user.organization.is_active:
            logger.warning(
                "Inactive user or organization denied",
                extra={
                    'user_id': str(user.id),
                    'user_active': user.is_active,
                    'organization_active': user.organization.is_active,
                    'path': request.path,
                }
            )
            request.user = AnonymousUser()
            return not_authorized_response(request)

        request.user = user
        request.organization = user.organization
        request.access = RequestAccess(user)

        set_current_organization_id(user.organization_id)
        set_user_context(user)
        set_organization_context(user.organization)

        logger.debug(
            "Organization context set",
            extra={'user_id': str(user.id), 'path': request.path}
        )
        return None

    def process_response(self, request, response):
        user = getattr(request, 'user', None)
        if user is None or not user.is_authenticated:
            return response

        version = user.access_version
        if request.method not in SAFE_METHODS:
            # The request may have changed the caller's own access
            try:
                version = User.objects.filter(pk=user.pk).values_list('access_version', flat=True).first() or version
            except DatabaseError:
                logger.warning("Could not refresh access version", exc_info=True)
        response['X-Access-Version'] = str(version)
        return response

    def _is_public_path(self, path):
        """Check if path is public and doesn't require authentication."""
        return any(path.startswith(public_path) for public_path in self.PUBLIC_PATHS)


class TenantIsolationMiddleware(MiddlewareMixin):
    """
    Verify that rows named in the URL belong to the caller's organization.

    Runs in ``process_view`` so URL kwargs are available. A missing row and a
    foreign row produce the same response as a permission denial.
    """

    # URL kwarg -> (model, lookup path to the owning organization id)
    SCOPED_KWARGS = {
        'role_id': (Role, 'organization_id'),
        'user_id': (User, 'organization_id'),
        'override_id': (UserPermissionOverride, 'user__organization_id'),
        'assignment_id': (UserRole, 'user__organization_id'),
    }

    def process_view(self, request, view_func, view_args, view_kwargs):
        organization = getattr(request, 'organization', None)
        if organization is None:
            return None

        for kwarg, (model, organization_path) in self.SCOPED_KWARGS.items():
            if kwarg not in view_kwargs:
                continue

            resource_id = view_kwargs[kwarg]
            try:
                rows = list(
                    model.objects.filter(pk=resource_id).values_list(organization_path, flat=True)[:1]
                )
            except DatabaseError:
                logger.error(
                    "Tenant isolation lookup failed",
                    extra={'resource_type': model.__name__, 'path': request.path},
                    exc_info=True
                )
                return _store_unavailable(request)

            if not rows:
                logger.info(
                    "Addressed row does not exist",
                    extra={
                        'resource_type': model.__name__,
                        'resource_id': str(resource_id),
                        'path': request.path,
                    }
                )
                return not_authorized_response(request)

            owner_id = rows[0]
            # Global roles carry no organization and are shared
            if owner_id is not None and owner_id != organization.id:
                SecurityLogger.log_tenant_mismatch(
                    user_id=request.user.id,
                    organization_id=organization.id,
                    resource_type=model.__name__,
                    resource_id=resource_id,
                    path=request.path,
                )
                return not_authorized_response(request)

        return None
