"""
RBAC REST API views.

Implements endpoints for:
- Permission catalog and permission checks
- Role management (CRUD, permission sets, holders)
- Role assignments and user role/status changes
- Per-user permission overrides
- Audit log viewing

Rows addressed in the URL were already checked against the caller's
organization by TenantIsolationMiddleware. Rows named in request bodies are
checked here with ``get_scoped_object``.
"""
import logging

from django.conf import settings
from django.utils.decorators import method_decorator
from django_ratelimit.decorators import ratelimit
from drf_spectacular.types import OpenApiTypes
from drf_spectacular.utils import OpenApiExample, OpenApiParameter, extend_schema, extend_schema_view
from rest_framework import status
from rest_framework.pagination import PageNumberPagination
from rest_framework.response import Response
from rest_framework.views import APIView

from apps.core.exceptions import NotFound, TenantMismatch, ValidationFailed
from apps.core.permissions import HasPermissionKeys, ensure_permissions, requires_permissions
from apps.rbac.models import Permission, Role, User, UserPermissionOverride, UserRole
from apps.rbac.serializers import (
    AuditLogSerializer,
    OverrideCreateSerializer,
    OverrideReplaceSerializer,
    PermissionCheckAnySerializer,
    PermissionCheckQuerySerializer,
    PermissionSerializer,
    RoleAssignSerializer,
    RoleCreateSerializer,
    RoleDetailSerializer,
    RolePermissionsSerializer,
    RoleSerializer,
    RoleUpdateSerializer,
    UserPermissionOverrideSerializer,
    UserRoleSerializer,
    UserRolesReplaceSerializer,
    UserSerializer,
    UserStatusSerializer,
)
from apps.rbac.services import AuditService, OverrideService, PermissionResolver, PolicyService

logger = logging.getLogger(__name__)

check_rate_limit = method_decorator(
    ratelimit(key='user', rate=settings.RATELIMIT_CHECK_RATE, method='ALL', block=True)
)

NOT_AUTHORIZED_RESPONSE = OpenApiExample(
    'Not authorized',
    value={'error': {'code': 'NOT_AUTHORIZED', 'message': 'Not authorized.'}, 'request_id': '...'},
    response_only=True,
    status_codes=['403'],
)


class StandardResultsSetPagination(PageNumberPagination):
    """Standard pagination for list endpoints."""
    page_size = 50
    page_size_query_param = 'page_size'
    max_page_size = 100


def get_scoped_object(request, model, pk, allow_global=False):
    """
    Load a row named in a request body and check it belongs to the caller.

    Ownership is decided by HasPermissionKeys.has_object_permission, which
    also logs the tenant mismatch.

    Raises:
        NotFound: the row does not exist, or is a global row where only
            organization rows are accepted
        TenantMismatch: the row belongs to another organization
    """
    details = {'resource_type': model.__name__, 'resource_id': str(pk)}
    obj = model.objects.filter(pk=pk).first()
    if obj is None or (obj.organization_id is None and not allow_global):
        raise NotFound(details=details)

    if not HasPermissionKeys().has_object_permission(request, None, obj):
        raise TenantMismatch(details=details)
    return obj


# ===== PERMISSIONS =====

@extend_schema_view(
    get=extend_schema(
        tags=['RBAC - Permissions'],
        summary='List permissions',
        description='''
List the permission catalog in display order (category, display_order).

**Required permission:** `roles.view`

Query parameters:
- `category`: Filter by catalog category (e.g., 'financial')
- `resource`: Filter by resource (e.g., 'invoices'); unknown resources are rejected
        ''',
        parameters=[
            OpenApiParameter('category', OpenApiTypes.STR, description='Filter by category'),
            OpenApiParameter('resource', OpenApiTypes.STR, description='Filter by resource'),
        ],
        responses={200: PermissionSerializer(many=True), 400: OpenApiTypes.OBJECT},
    )
)
@requires_permissions('roles.view')
class PermissionListView(APIView):
    """
    GET /v1/permissions
    """

    def get(self, request):
        permissions = PolicyService.list_permissions(
            category=request.query_params.get('category') or None,
            resource=request.query_params.get('resource') or None,
        )
        serializer = PermissionSerializer(permissions, many=True)
        return Response({
            'count': len(serializer.data),
            'permissions': serializer.data,
        })


@extend_schema_view(
    get=extend_schema(
        tags=['RBAC - Permissions'],
        summary='My effective permissions',
        description='''
Effective permissions of the authenticated user, for client-side gating.

**No permission required.**

Clients cache the result and discard it when `access_version` (also sent as
the `X-Access-Version` response header) changes.
        ''',
        responses={200: OpenApiTypes.OBJECT},
        examples=[
            OpenApiExample(
                'Success Response',
                value={
                    'user_id': '123e4567-e89b-12d3-a456-426614174000',
                    'is_admin': False,
                    'roles': ['customer_service'],
                    'permissions': ['customers.view', 'vehicles.view'],
                    'access_version': 4,
                },
                response_only=True
            )
        ]
    )
)
class MyPermissionsView(APIView):
    """
    GET /v1/permissions/me
    """

    def get(self, request):
        access = request.access
        snapshot = access.snapshot
        roles = list(
            Role.objects.filter(user_roles__user=request.user).order_by('-is_system', 'name')
            .values_list('key', flat=True)
        )
        return Response({
            'user_id': str(request.user.id),
            'is_admin': access.is_admin,
            'roles': roles,
            'permissions': sorted(access.permissions),
            'access_version': snapshot.access_version,
        })


def _check_target(request, user_id):
    """The user a check is about; anyone but yourself needs ``users.view``."""
    if user_id is None or user_id == request.user.id:
        return None
    ensure_permissions(request, 'users.view')
    return get_scoped_object(request, User, user_id)


@extend_schema_view(
    get=extend_schema(
        tags=['RBAC - Permissions'],
        summary='Check one permission',
        description='''
Check whether a user holds a permission key.

**Required permission:** none for yourself, `users.view` for another user of
your organization. Unknown keys are rejected with VALIDATION_ERROR.
        ''',
        parameters=[
            OpenApiParameter('permission', OpenApiTypes.STR, required=True, description='Permission key'),
            OpenApiParameter('user_id', OpenApiTypes.UUID, description='User to check (defaults to caller)'),
        ],
        responses={200: OpenApiTypes.OBJECT, 400: OpenApiTypes.OBJECT, 429: OpenApiTypes.OBJECT},
    )
)
class PermissionCheckView(APIView):
    """
    GET /v1/permissions/check?user_id=&permission=
    """

    @check_rate_limit
    def get(self, request):
        serializer = PermissionCheckQuerySerializer(data=request.query_params)
        serializer.is_valid(raise_exception=True)

        key = serializer.validated_data['permission']
        target = _check_target(request, serializer.validated_data.get('user_id'))
        if target is None:
            allowed = request.access.has_permission(key)
        else:
            allowed = PermissionResolver.has_permission(target.id, key)

        return Response({'has_permission': allowed})


@extend_schema_view(
    post=extend_schema(
        tags=['RBAC - Permissions'],
        summary='Check any of several permissions',
        description='''
Check whether a user holds at least one of the given keys.

**Required permission:** none for yourself, `users.view` for another user.
        ''',
        request=PermissionCheckAnySerializer,
        responses={200: OpenApiTypes.OBJECT, 400: OpenApiTypes.OBJECT, 429: OpenApiTypes.OBJECT},
    )
)
class PermissionCheckAnyView(APIView):
    """
    POST /v1/permissions/check-any
    """

    @check_rate_limit
    def post(self, request):
        serializer = PermissionCheckAnySerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        keys = serializer.validated_data['permissions']
        target = _check_target(request, serializer.validated_data.get('user_id'))
        if target is None:
            allowed = request.access.has_any_permission(keys)
        else:
            allowed = PermissionResolver.has_any_permission(target.id, keys)

        return Response({'has_any_permission': allowed})


# ===== ROLES =====

@extend_schema_view(
    get=extend_schema(
        tags=['RBAC - Roles'],
        summary='List roles',
        description='''
List the organization's roles with permission and holder counts.

**Required permission:** `roles.view`
        ''',
        responses={200: RoleSerializer(many=True)},
    ),
    post=extend_schema(
        tags=['RBAC - Roles'],
        summary='Create role',
        description='''
Create a custom role. Keys and names must be unique within the organization
(CONFLICT otherwise). Custom roles are never system roles.

**Required permission:** `roles.create`
        ''',
        request=RoleCreateSerializer,
        responses={201: RoleDetailSerializer, 400: OpenApiTypes.OBJECT, 409: OpenApiTypes.OBJECT},
        examples=[
            OpenApiExample(
                'Create Request',
                value={
                    'name': 'Parts Clerk',
                    'description': 'Inventory only',
                    'permission_ids': ['123e4567-e89b-12d3-a456-426614174000'],
                },
                request_only=True
            )
        ]
    )
)
class RoleListView(APIView):
    """
    GET /v1/roles
    POST /v1/roles
    """

    @requires_permissions('roles.view')
    def get(self, request):
        roles = PolicyService.list_roles(request.organization)
        serializer = RoleSerializer(roles, many=True)
        return Response({
            'count': len(serializer.data),
            'roles': serializer.data,
        })

    @requires_permissions('roles.create')
    def post(self, request):
        serializer = RoleCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        role = PolicyService.create_role(
            request.organization,
            serializer.validated_data,
            actor=request.user,
            request=request,
        )
        return Response(RoleDetailSerializer(role).data, status=status.HTTP_201_CREATED)


@extend_schema_view(
    get=extend_schema(
        tags=['RBAC - Roles'],
        summary='Get role details',
        description='''
Role with its full permission list.

**Required permission:** `roles.view`
        ''',
        responses={200: RoleDetailSerializer, 403: OpenApiTypes.OBJECT},
        examples=[NOT_AUTHORIZED_RESPONSE],
    ),
    put=extend_schema(
        tags=['RBAC - Roles'],
        summary='Update role',
        description='''
Update a role's key, name, description or active flag. System roles accept
only name and description; `is_system` is never changeable.

**Required permission:** `roles.update`
        ''',
        request=RoleUpdateSerializer,
        responses={200: RoleDetailSerializer, 400: OpenApiTypes.OBJECT, 409: OpenApiTypes.OBJECT},
    ),
    patch=extend_schema(
        tags=['RBAC - Roles'],
        summary='Partially update role',
        request=RoleUpdateSerializer,
        responses={200: RoleDetailSerializer, 400: OpenApiTypes.OBJECT, 409: OpenApiTypes.OBJECT},
    ),
    delete=extend_schema(
        tags=['RBAC - Roles'],
        summary='Delete role',
        description='''
Delete a role. System roles and roles still assigned to users cannot be
deleted (CONFLICT); the role is left unchanged.

**Required permission:** `roles.delete`
        ''',
        responses={204: None, 409: OpenApiTypes.OBJECT},
    )
)
class RoleDetailView(APIView):
    """
    GET/PUT/PATCH/DELETE /v1/roles/{role_id}
    """

    @requires_permissions('roles.view')
    def get(self, request, role_id):
        role = Role.objects.get(pk=role_id)
        return Response(RoleDetailSerializer(role).data)

    @requires_permissions('roles.update')
    def put(self, request, role_id):
        serializer = RoleUpdateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        role = PolicyService.update_role(
            Role.objects.get(pk=role_id),
            serializer.validated_data,
            actor=request.user,
            request=request,
        )
        return Response(RoleDetailSerializer(role).data)

    @requires_permissions('roles.update')
    def patch(self, request, role_id):
        return self.put(request, role_id)

    @requires_permissions('roles.delete')
    def delete(self, request, role_id):
        PolicyService.delete_role(Role.objects.get(pk=role_id), actor=request.user, request=request)
        return Response(status=status.HTTP_204_NO_CONTENT)


@extend_schema_view(
    get=extend_schema(
        tags=['RBAC - Roles'],
        summary="List a role's permissions",
        description='**Required permission:** `roles.view`',
        responses={200: PermissionSerializer(many=True)},
    ),
    put=extend_schema(
        tags=['RBAC - Roles'],
        summary="Replace a role's permissions",
        description='''
Replace the role's permission set. Only the difference is written, in one
transaction, so holders never see an empty set. System roles cannot be
edited (CONFLICT).

**Required permission:** `roles.manage_permissions`
        ''',
        request=RolePermissionsSerializer,
        responses={200: PermissionSerializer(many=True), 400: OpenApiTypes.OBJECT, 409: OpenApiTypes.OBJECT},
    )
)
class RolePermissionsView(APIView):
    """
    GET/PUT /v1/roles/{role_id}/permissions
    """

    @requires_permissions('roles.view')
    def get(self, request, role_id):
        role = Role.objects.get(pk=role_id)
        permissions = PolicyService.get_role_permissions(role)
        return Response({
            'role_id': str(role.id),
            'permissions': PermissionSerializer(permissions, many=True).data,
        })

    @requires_permissions('roles.manage_permissions')
    def put(self, request, role_id):
        serializer = RolePermissionsSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        role = Role.objects.get(pk=role_id)
        permissions = PolicyService.set_role_permissions(
            role,
            serializer.validated_data['permission_ids'],
            actor=request.user,
            request=request,
        )
        return Response({
            'role_id': str(role.id),
            'permissions': PermissionSerializer(permissions, many=True).data,
        })


@extend_schema_view(
    get=extend_schema(
        tags=['RBAC - Roles'],
        summary='List users holding a role',
        description='**Required permission:** `roles.view`',
        responses={200: UserSerializer(many=True)},
    )
)
@requires_permissions('roles.view')
class RoleUsersView(APIView):
    """
    GET /v1/roles/{role_id}/users
    """
    pagination_class = StandardResultsSetPagination

    def get(self, request, role_id):
        role = Role.objects.get(pk=role_id)
        users = PolicyService.role_users(role).filter(organization=request.organization)

        paginator = self.pagination_class()
        page = paginator.paginate_queryset(users, request)
        serializer = UserSerializer(page, many=True)
        return paginator.get_paginated_response(serializer.data)


# ===== ASSIGNMENTS AND USERS =====

@extend_schema_view(
    post=extend_schema(
        tags=['RBAC - Assignments'],
        summary='Assign role to user',
        description='''
Add a role to a user's role set. Roles are additive.

**Required permission:** `users.manage_roles`
        ''',
        request=RoleAssignSerializer,
        responses={201: UserRoleSerializer, 409: OpenApiTypes.OBJECT},
    )
)
@requires_permissions('users.manage_roles')
class RoleAssignView(APIView):
    """
    POST /v1/roles/assign
    """

    def post(self, request):
        serializer = RoleAssignSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        user = get_scoped_object(request, User, serializer.validated_data['user_id'])
        role = get_scoped_object(request, Role, serializer.validated_data['role_id'], allow_global=True)

        user_role = PolicyService.assign_role(user, role, actor=request.user, request=request)
        return Response(UserRoleSerializer(user_role).data, status=status.HTTP_201_CREATED)


@extend_schema_view(
    delete=extend_schema(
        tags=['RBAC - Assignments'],
        summary='Remove role assignment',
        description='**Required permission:** `users.manage_roles`',
        responses={204: None},
    )
)
@requires_permissions('users.manage_roles')
class RoleAssignmentDetailView(APIView):
    """
    DELETE /v1/roles/assignments/{assignment_id}
    """

    def delete(self, request, assignment_id):
        user_role = UserRole.objects.select_related('user', 'role').get(pk=assignment_id)
        PolicyService.remove_role_assignment(user_role, actor=request.user, request=request)
        return Response(status=status.HTTP_204_NO_CONTENT)


@extend_schema_view(
    get=extend_schema(
        tags=['RBAC - Users'],
        summary="List a user's roles",
        description='**Required permission:** none for yourself, `users.view` otherwise',
        responses={200: RoleSerializer(many=True)},
    ),
    put=extend_schema(
        tags=['RBAC - Users'],
        summary="Replace a user's roles",
        description='''
Replace the user's role set in one transaction (old assignments removed, new
ones inserted).

**Required permission:** `users.manage_roles`
        ''',
        request=UserRolesReplaceSerializer,
        responses={200: RoleSerializer(many=True), 403: OpenApiTypes.OBJECT},
    )
)
class UserRolesView(APIView):
    """
    GET/PUT /v1/users/{user_id}/roles
    """

    def get(self, request, user_id):
        if user_id != request.user.id:
            ensure_permissions(request, 'users.view')
        roles = Role.objects.filter(user_roles__user_id=user_id).order_by('-is_system', 'name')
        return Response({'roles': RoleSerializer(roles, many=True).data})

    @requires_permissions('users.manage_roles')
    def put(self, request, user_id):
        serializer = UserRolesReplaceSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        roles = PolicyService.replace_user_roles(
            User.objects.get(pk=user_id),
            serializer.validated_data['role_ids'],
            actor=request.user,
            request=request,
        )
        return Response({'roles': RoleSerializer(roles, many=True).data})


@extend_schema_view(
    patch=extend_schema(
        tags=['RBAC - Users'],
        summary='Activate or deactivate a user',
        description='''
Inactive users are denied every permission. You cannot deactivate yourself.

**Required permission:** `users.update`
        ''',
        request=UserStatusSerializer,
        responses={200: UserSerializer, 409: OpenApiTypes.OBJECT},
    )
)
@requires_permissions('users.update')
class UserStatusView(APIView):
    """
    PATCH /v1/users/{user_id}/status
    """

    def patch(self, request, user_id):
        serializer = UserStatusSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        user = PolicyService.set_user_active(
            User.objects.get(pk=user_id),
            serializer.validated_data['is_active'],
            actor=request.user,
            request=request,
        )
        return Response(UserSerializer(user).data)


# ===== OVERRIDES =====

@extend_schema_view(
    get=extend_schema(
        tags=['RBAC - Overrides'],
        summary="List a user's active overrides",
        description='''
Overrides that have not expired. Expired rows are kept but never returned.

**Required permission:** none for yourself, `users.manage_permissions` otherwise
        ''',
        responses={200: UserPermissionOverrideSerializer(many=True)},
    ),
    put=extend_schema(
        tags=['RBAC - Overrides'],
        summary="Replace a user's overrides",
        description='''
Make the user's overrides equal to the submitted set. Computed as a diff and
applied in one transaction under a lock on the user, so concurrent saves
never interleave. Each permission may appear once.

**Required permission:** `users.manage_permissions`
        ''',
        request=OverrideReplaceSerializer,
        responses={200: UserPermissionOverrideSerializer(many=True), 400: OpenApiTypes.OBJECT},
        examples=[
            OpenApiExample(
                'Replace Request',
                value={
                    'overrides': [
                        {
                            'permission_id': '123e4567-e89b-12d3-a456-426614174000',
                            'is_granted': False,
                            'reason': 'Temporarily restricted',
                            'expires_at': None,
                        }
                    ]
                },
                request_only=True
            )
        ]
    )
)
class UserOverridesView(APIView):
    """
    GET/PUT /v1/users/{user_id}/permission-overrides
    """

    def get(self, request, user_id):
        if user_id != request.user.id:
            ensure_permissions(request, 'users.manage_permissions')
        overrides = OverrideService.list_active_overrides(user_id)
        return Response({
            'user_id': str(user_id),
            'overrides': UserPermissionOverrideSerializer(overrides, many=True).data,
        })

    @requires_permissions('users.manage_permissions')
    def put(self, request, user_id):
        serializer = OverrideReplaceSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        overrides = OverrideService.replace_overrides(
            User.objects.get(pk=user_id),
            serializer.validated_data['overrides'],
            actor=request.user,
            request=request,
        )
        return Response({
            'user_id': str(user_id),
            'overrides': UserPermissionOverrideSerializer(overrides, many=True).data,
        })


@extend_schema_view(
    post=extend_schema(
        tags=['RBAC - Overrides'],
        summary='Grant or revoke a permission for a user',
        description='''
Create or replace the user's override for one permission. Revocations win over
role grants and over grant overrides.

**Required permission:** `users.manage_permissions`
        ''',
        request=OverrideCreateSerializer,
        responses={201: UserPermissionOverrideSerializer, 200: UserPermissionOverrideSerializer},
    )
)
@requires_permissions('users.manage_permissions')
class OverrideCreateView(APIView):
    """
    POST /v1/permissions/overrides
    """

    def post(self, request):
        serializer = OverrideCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        user = get_scoped_object(request, User, data['user_id'])
        permission = Permission.objects.filter(pk=data['permission_id']).first()
        if permission is None:
            raise ValidationFailed(
                "Unknown permission",
                details={'unknown_permissions': [str(data['permission_id'])]},
            )

        override, created = OverrideService.upsert_override(
            user,
            permission,
            data['is_granted'],
            actor=request.user,
            reason=data.get('reason', ''),
            expires_at=data.get('expires_at'),
            request=request,
        )
        return Response(
            UserPermissionOverrideSerializer(override).data,
            status=status.HTTP_201_CREATED if created else status.HTTP_200_OK,
        )


@extend_schema_view(
    delete=extend_schema(
        tags=['RBAC - Overrides'],
        summary='Delete an override',
        description='**Required permission:** `users.manage_permissions`',
        responses={204: None},
    )
)
@requires_permissions('users.manage_permissions')
class OverrideDetailView(APIView):
    """
    DELETE /v1/permissions/overrides/{override_id}
    """

    def delete(self, request, override_id):
        override = UserPermissionOverride.objects.select_related('user', 'permission').get(pk=override_id)
        OverrideService.delete_override(override, actor=request.user, request=request)
        return Response(status=status.HTTP_204_NO_CONTENT)


# ===== AUDIT =====

@extend_schema_view(
    get=extend_schema(
        tags=['RBAC - Audit'],
        summary='List audit logs',
        description='''
The organization's audit trail, newest first. `page_size` is capped at the
configured maximum.

**Required permission:** `audit_logs.view`

Query parameters:
- `action`: Filter by action (e.g., 'role_permissions_replaced')
- `resource_type`: Filter by resource type (e.g., 'role')
- `actor_id`: Filter by acting user
        ''',
        parameters=[
            OpenApiParameter('action', OpenApiTypes.STR, description='Filter by action'),
            OpenApiParameter('resource_type', OpenApiTypes.STR, description='Filter by resource type'),
            OpenApiParameter('actor_id', OpenApiTypes.UUID, description='Filter by actor'),
            OpenApiParameter('page', OpenApiTypes.INT, description='Page number (from 1)'),
            OpenApiParameter('page_size', OpenApiTypes.INT, description='Entries per page'),
        ],
        responses={200: AuditLogSerializer(many=True)},
    )
)
@requires_permissions('audit_logs.view')
class AuditLogListView(APIView):
    """
    GET /v1/audit-logs
    """

    def get(self, request):
        params = request.query_params
        try:
            page = int(params.get('page', 1))
            page_size = int(params.get('page_size', settings.AUDIT_PAGE_SIZE))
        except ValueError:
            raise ValidationFailed("page and page_size must be integers")

        result = AuditService.query(
            request.organization,
            action=params.get('action') or None,
            resource_type=params.get('resource_type') or None,
            actor_id=params.get('actor_id') or None,
            page=page,
            page_size=page_size,
        )
        return Response({
            'count': result.count,
            'page': result.page,
            'page_size': result.page_size,
            'results': AuditLogSerializer(result.results, many=True).data,
        })
