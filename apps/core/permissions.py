"""
DRF permission classes and decorators for permission-key enforcement.

This module provides:
- HasPermissionKeys: DRF permission class that asks the resolver about the
  keys a view method requires
- @requires_permissions: Decorator to declare required keys on views
"""
import logging
from rest_framework.permissions import BasePermission

logger = logging.getLogger(__name__)


def _required_permissions(request, view):
    """
    Keys required for this request.

    Method-level declarations win over the class-level one so that a single
    view can demand different keys for GET and PUT.
    """
    handler = getattr(view, request.method.lower(), None)
    required = getattr(handler, 'required_permissions', None)
    if required is None:
        required = getattr(view, 'required_permissions', None)
    if not required:
        return set()
    if isinstance(required, str):
        return {required}
    return set(required)


class HasPermissionKeys(BasePermission):
    """
    Enforces declared permission keys through the per-request resolver.

    The resolver handle is ``request.access`` (set by
    OrganizationContextMiddleware). Every declared key must be held. A request
    without an authenticated user or resolver handle is denied whenever keys
    are required.

    ``has_object_permission`` checks that a row belongs to the caller's
    organization. URL-addressed rows are checked by TenantIsolationMiddleware;
    rows named in request bodies go through this method via
    ``apps.rbac.views.get_scoped_object``.

    Usage:
        class RoleDetailView(APIView):
            @requires_permissions('roles.view')
            def get(self, request, role_id):
                ...
    """

    def has_permission(self, request, view):
        required = _required_permissions(request, view)
        if not required:
            return True

        access = getattr(request, 'access', None)
        if access is None:
            return False

        missing = {key for key in required if not access.has_permission(key)}
        if missing:
            from apps.core.logging import SecurityLogger
            SecurityLogger.log_permission_denied(
                user_id=access.user_id,
                organization_id=access.organization_id,
                required_permissions=required,
                path=request.path,
                reason=f"missing: {', '.join(sorted(missing))}",
            )
            logger.warning(
                "Permission denied",
                extra={
                    'user_id': str(access.user_id),
                    'missing_permissions': sorted(missing),
                    'view': view.__class__.__name__,
                    'method': request.method,
                    'path': request.path,
                }
            )
            return False

        return True

    def has_object_permission(self, request, view, obj):
        organization = getattr(request, 'organization', None)
        if organization is None:
            return False

        object_organization_id = getattr(obj, 'organization_id', None)
        if object_organization_id is None:
            # Global rows (catalog permissions, global roles) are shared
            return True

        if object_organization_id != organization.id:
            from apps.core.logging import SecurityLogger
            user = getattr(request, 'user', None)
            SecurityLogger.log_tenant_mismatch(
                user_id=getattr(user, 'id', None),
                organization_id=organization.id,
                resource_type=obj.__class__.__name__,
                resource_id=getattr(obj, 'id', None),
                path=request.path,
            )
            return False

        return True


def requires_permissions(*keys):
    """
    Declare the permission keys a view class or handler method requires.

    On a class the keys apply to every method; on a method they replace the
    class-level declaration for that HTTP method.
    """
    def decorator(view_or_method):
        view_or_method.required_permissions = frozenset(keys)
        return view_or_method

    return decorator


def ensure_permissions(request, *keys):
    """
    Imperative check for keys that depend on the request body or query.

    Raises:
        Forbidden: if the caller lacks any key (rendered as the uniform denial)
    """
    from apps.core.exceptions import Forbidden
    from apps.core.logging import SecurityLogger

    access = getattr(request, 'access', None)
    missing = sorted(key for key in keys if access is None or not access.has_permission(key))
    if missing:
        SecurityLogger.log_permission_denied(
            user_id=getattr(access, 'user_id', None),
            organization_id=getattr(access, 'organization_id', None),
            required_permissions=keys,
            path=request.path,
            reason=f"missing: {', '.join(missing)}",
        )
        raise Forbidden(details={'missing_permissions': missing})
