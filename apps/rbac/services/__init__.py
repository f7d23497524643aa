"""
Access-control services.
"""
from apps.rbac.services.audit_service import AuditService
from apps.rbac.services.auth_service import AuthService
from apps.rbac.services.override_service import OverrideService
from apps.rbac.services.policy_service import PolicyService
from apps.rbac.services.resolver import (
    AccessSnapshot,
    PermissionResolver,
    RequestAccess,
    resolve_effective_permissions,
)

__all__ = [
    'AccessSnapshot',
    'AuditService',
    'AuthService',
    'OverrideService',
    'PermissionResolver',
    'PolicyService',
    'RequestAccess',
    'resolve_effective_permissions',
]
