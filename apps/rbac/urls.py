"""
RBAC API URLs.

Provides endpoints for:
- Permission catalog, checks and overrides
- Role management (CRUD, permission sets, holders, assignments)
- User role and status changes
- Audit log viewing
"""
from django.urls import path
from apps.rbac.views import (
    AuditLogListView,
    MyPermissionsView,
    OverrideCreateView,
    OverrideDetailView,
    PermissionCheckAnyView,
    PermissionCheckView,
    PermissionListView,
    RoleAssignmentDetailView,
    RoleAssignView,
    RoleDetailView,
    RoleListView,
    RolePermissionsView,
    RoleUsersView,
    UserOverridesView,
    UserRolesView,
    UserStatusView,
)

app_name = 'rbac'

urlpatterns = [
    # Permission endpoints
    path('permissions', PermissionListView.as_view(), name='permission-list'),
    path('permissions/me', MyPermissionsView.as_view(), name='permission-me'),
    path('permissions/check', PermissionCheckView.as_view(), name='permission-check'),
    path('permissions/check-any', PermissionCheckAnyView.as_view(), name='permission-check-any'),
    path('permissions/overrides', OverrideCreateView.as_view(), name='override-create'),
    path('permissions/overrides/<uuid:override_id>', OverrideDetailView.as_view(), name='override-detail'),

    # Role endpoints
    path('roles', RoleListView.as_view(), name='role-list'),
    path('roles/assign', RoleAssignView.as_view(), name='role-assign'),
    path('roles/assignments/<uuid:assignment_id>', RoleAssignmentDetailView.as_view(), name='role-assignment-detail'),
    path('roles/<uuid:role_id>', RoleDetailView.as_view(), name='role-detail'),
    path('roles/<uuid:role_id>/permissions', RolePermissionsView.as_view(), name='role-permissions'),
    path('roles/<uuid:role_id>/users', RoleUsersView.as_view(), name='role-users'),

    # User endpoints
    path('users/<uuid:user_id>/roles', UserRolesView.as_view(), name='user-roles'),
    path('users/<uuid:user_id>/status', UserStatusView.as_view(), name='user-status'),
    path('users/<uuid:user_id>/permission-overrides', UserOverridesView.as_view(), name='user-overrides'),

    # Audit log endpoints
    path('audit-logs', AuditLogListView.as_view(), name='audit-log-list'),
]
