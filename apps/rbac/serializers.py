"""
RBAC serializers for REST API endpoints.

Provides serialization for:
- Permissions, roles and role assignments
- Permission overrides
- Permission checks
- Audit logs
"""
from django.utils import timezone
from rest_framework import serializers

from apps.rbac.models import (
    AuditLog, Permission, Role, User, UserPermissionOverride, UserRole
)
from apps.rbac.registry import validate_keys


class PermissionSerializer(serializers.ModelSerializer):
    """Serializer for Permission model."""

    class Meta:
        model = Permission
        fields = [
            'id', 'key', 'resource', 'action', 'label', 'description',
            'category', 'display_order', 'is_active'
        ]
        read_only_fields = fields


class UserSerializer(serializers.ModelSerializer):

    full_name = serializers.CharField(source='get_full_name', read_only=True)

    class Meta:
        model = User
        fields = [
            'id', 'email', 'first_name', 'last_name', 'full_name',
            'is_active', 'access_version', 'created_at'
        ]
        read_only_fields = fields


class RoleSerializer(serializers.ModelSerializer):
    """Serializer for Role model."""

    permission_count = serializers.SerializerMethodField()
    user_count = serializers.SerializerMethodField()

    class Meta:
        model = Role
        fields = [
            'id', 'key', 'name', 'description', 'is_system', 'is_active',
            'permission_count', 'user_count',
            'created_at', 'updated_at'
        ]
        read_only_fields = fields

    def get_permission_count(self, obj):
        """Annotated by PolicyService.list_roles; counted otherwise."""
        count = getattr(obj, 'permission_count', None)
        return obj.role_permissions.count() if count is None else count

    def get_user_count(self, obj):
        count = getattr(obj, 'user_count', None)
        return obj.user_roles.count() if count is None else count


class RoleDetailSerializer(RoleSerializer):
    """Detailed serializer for Role with full permission list."""

    permissions = serializers.SerializerMethodField()

    class Meta(RoleSerializer.Meta):
        fields = RoleSerializer.Meta.fields + ['permissions']
        read_only_fields = fields

    def get_permissions(self, obj):
        from apps.rbac.services import PolicyService
        return PermissionSerializer(PolicyService.get_role_permissions(obj), many=True).data


class RoleCreateSerializer(serializers.Serializer):
    """Serializer for creating roles."""

    name = serializers.CharField(max_length=100)
    key = serializers.SlugField(max_length=100, required=False)
    description = serializers.CharField(required=False, allow_blank=True, default='')
    permission_ids = serializers.ListField(
        child=serializers.UUIDField(),
        required=False,
        default=list,
        help_text="Initial permission set"
    )

    def validate_name(self, value):
        if not value.strip():
            raise serializers.ValidationError("Role name cannot be empty.")
        return value.strip()


class RoleUpdateSerializer(serializers.Serializer):
    """
    Serializer for patching roles. ``is_system`` is deliberately absent.
    """

    name = serializers.CharField(max_length=100, required=False)
    key = serializers.SlugField(max_length=100, required=False)
    description = serializers.CharField(required=False, allow_blank=True)
    is_active = serializers.BooleanField(required=False)

    def validate(self, attrs):
        if 'is_system' in self.initial_data:
            raise serializers.ValidationError({'is_system': "This field cannot be changed."})
        if not attrs:
            raise serializers.ValidationError("No changes supplied.")
        return attrs


class RolePermissionsSerializer(serializers.Serializer):
    """Full replacement of a role's permission set."""

    permission_ids = serializers.ListField(
        child=serializers.UUIDField(),
        allow_empty=True,
        help_text="Complete permission set for the role"
    )


class UserRoleSerializer(serializers.ModelSerializer):
    """Serializer for role assignments."""

    role = RoleSerializer(read_only=True)
    user_id = serializers.UUIDField(read_only=True)
    assigned_by_id = serializers.UUIDField(read_only=True)

    class Meta:
        model = UserRole
        fields = ['id', 'user_id', 'role', 'assigned_by_id', 'created_at']
        read_only_fields = fields


class RoleAssignSerializer(serializers.Serializer):

    user_id = serializers.UUIDField()
    role_id = serializers.UUIDField()


class UserRolesReplaceSerializer(serializers.Serializer):

    role_ids = serializers.ListField(
        child=serializers.UUIDField(),
        allow_empty=True,
        help_text="Complete role set for the user"
    )

    def validate_role_ids(self, value):
        if len(set(value)) != len(value):
            raise serializers.ValidationError("Duplicate role ids.")
        return value


class UserStatusSerializer(serializers.Serializer):

    is_active = serializers.BooleanField()


class UserPermissionOverrideSerializer(serializers.ModelSerializer):
    """Serializer for permission overrides."""

    permission = PermissionSerializer(read_only=True)
    user_id = serializers.UUIDField(read_only=True)
    granted_by_id = serializers.UUIDField(read_only=True)

    class Meta:
        model = UserPermissionOverride
        fields = [
            'id', 'user_id', 'permission', 'is_granted', 'reason',
            'granted_by_id', 'expires_at', 'created_at', 'updated_at'
        ]
        read_only_fields = fields


class OverrideItemSerializer(serializers.Serializer):
    """One desired override in a bulk replace."""

    permission_id = serializers.UUIDField()
    is_granted = serializers.BooleanField()
    reason = serializers.CharField(required=False, allow_blank=True, default='')
    expires_at = serializers.DateTimeField(required=False, allow_null=True, default=None)


class OverrideCreateSerializer(OverrideItemSerializer):
    """Serializer for POST /permissions/overrides."""

    user_id = serializers.UUIDField()

    def validate_expires_at(self, value):
        if value is not None and value <= timezone.now():
            raise serializers.ValidationError("Expiry must be in the future.")
        return value


class OverrideReplaceSerializer(serializers.Serializer):

    overrides = OverrideItemSerializer(many=True, allow_empty=True)

    def validate_overrides(self, value):
        seen = set()
        duplicates = set()
        for item in value:
            if item['permission_id'] in seen:
                duplicates.add(str(item['permission_id']))
            seen.add(item['permission_id'])
        if duplicates:
            raise serializers.ValidationError(
                f"Duplicate permission ids: {', '.join(sorted(duplicates))}"
            )
        return value


class PermissionCheckQuerySerializer(serializers.Serializer):
    """Query parameters for GET /permissions/check."""

    user_id = serializers.UUIDField(required=False)
    permission = serializers.CharField()

    def validate_permission(self, value):
        validate_keys([value])
        return value


class PermissionCheckAnySerializer(serializers.Serializer):

    user_id = serializers.UUIDField(required=False)
    permissions = serializers.ListField(
        child=serializers.CharField(),
        allow_empty=False,
    )

    def validate_permissions(self, value):
        validate_keys(value)
        return value


class AuditLogSerializer(serializers.ModelSerializer):
    """Serializer for AuditLog model."""

    actor_id = serializers.UUIDField(read_only=True)
    actor_email = serializers.EmailField(source='actor.email', read_only=True, default=None)

    class Meta:
        model = AuditLog
        fields = [
            'id', 'actor_id', 'actor_email', 'action',
            'resource_type', 'resource_id', 'old_values', 'new_values',
            'ip_address', 'user_agent', 'request_id', 'created_at'
        ]
        read_only_fields = fields
