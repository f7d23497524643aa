"""
RBAC models for organization-scoped access control.

Implements:
- User (identity as seen by the engine: organization, active flag, access version)
- Permission (global catalog of resource.action keys)
- Role (per-organization bundles; is_system marks the bypass role)
- RolePermission (maps permissions to roles)
- UserRole (additive multi-role membership)
- UserPermissionOverride (per-user grant/revoke with optional expiry)
- AuditLog (append-only audit trail)
"""
import logging
import uuid
from django.contrib.auth.hashers import make_password, check_password
from django.core.exceptions import ValidationError
from django.db import models
from django.db.models import Q
from django.utils import timezone

from apps.core.exceptions import Conflict, ValidationFailed
from apps.core.models import BaseModel
from apps.rbac.registry import Action, Resource, is_valid_key

logger = logging.getLogger(__name__)


class UserManager(models.Manager):
    """Manager for User queries."""

    def active(self):
        """Return only active users."""
        return self.filter(is_active=True)

    def for_organization(self, organization):
        return self.filter(organization=organization)

    def by_email(self, email):
        """Find user by email."""
        return self.filter(email=self.normalize_email(email)).first()

    def create_user(self, email, organization, password=None, **extra_fields):
        """Create a new user with hashed password."""
        if not email:
            raise ValueError('Email address is required')

        extra_fields.setdefault('is_active', True)
        user = self.model(
            email=self.normalize_email(email),
            organization=organization,
            **extra_fields
        )
        if password:
            user.set_password(password)
        user.save(using=self._db)
        return user

    @staticmethod
    def normalize_email(email):
        """
        Normalize the email address by lowercasing the domain part.
        """
        email = (email or '').strip()
        try:
            email_name, domain_part = email.rsplit('@', 1)
        except ValueError:
            return email
        return email_name + '@' + domain_part.lower()

    def get_by_natural_key(self, email):
        return self.get(**{self.model.USERNAME_FIELD: email})

    def bump_access_version(self, user_ids):
        """
        Increment access_version for the given users.

        Must run inside the transaction that changed their access so clients
        never see a new version before the change is visible.
        """
        return self.filter(pk__in=user_ids).update(
            access_version=models.F('access_version') + 1
        )


class User(BaseModel):
    """
    A person working inside one organization.

    The identity subsystem owns credentials; the access-control engine reads
    ``organization``, ``is_active`` and ``access_version``.
    """

    organization = models.ForeignKey(
        'organizations.Organization',
        on_delete=models.PROTECT,
        related_name='users',
        help_text="Organization this user belongs to"
    )
    email = models.EmailField(
        unique=True,
        help_text="User email address (unique globally)"
    )
    password_hash = models.CharField(
        max_length=255,
        blank=True,
        help_text="Hashed password"
    )
    first_name = models.CharField(max_length=100, blank=True)
    last_name = models.CharField(max_length=100, blank=True)
    is_active = models.BooleanField(
        default=True,
        db_index=True,
        help_text="Inactive users are denied every permission"
    )
    access_version = models.PositiveIntegerField(
        default=1,
        help_text="Incremented whenever the user's effective permissions may have changed"
    )

    USERNAME_FIELD = 'email'
    REQUIRED_FIELDS = []

    objects = UserManager()

    class Meta:
        db_table = 'users'
        ordering = ['email']
        indexes = [
            models.Index(fields=['organization', 'is_active']),
        ]

    def __str__(self):
        return self.email

    @property
    def password(self):
        return self.password_hash

    def check_password(self, raw_password):
        return check_password(raw_password, self.password_hash)

    def set_password(self, raw_password):
        self.password_hash = make_password(raw_password)

    def get_full_name(self):
        """Return full name or email if name not set."""
        if self.first_name or self.last_name:
            return f"{self.first_name} {self.last_name}".strip()
        return self.email

    @property
    def is_authenticated(self):
        return True

    @property
    def is_anonymous(self):
        return False

    def natural_key(self):
        return (self.email,)


class PermissionManager(models.Manager):
    """Manager for Permission queries."""

    def active(self):
        return self.filter(is_active=True)

    def by_key(self, key):
        return self.filter(key=key).first()

    def catalog(self, category=None, resource=None):
        """Active permissions in display order, optionally filtered."""
        qs = self.active()
        if category:
            qs = qs.filter(category=category)
        if resource:
            qs = qs.filter(resource=resource)
        return qs.order_by('category', 'display_order', 'key')


class Permission(BaseModel):
    """
    Global permission definitions shared by every organization.

    ``key`` is always ``resource + "." + action`` and must exist in the
    registry. Once any role or override references a permission its key is
    frozen; retire a permission with ``is_active`` instead of repurposing it.
    """

    key = models.CharField(
        max_length=100,
        unique=True,
        help_text="Unique permission key (e.g., 'invoices.view')"
    )
    resource = models.CharField(
        max_length=50,
        choices=Resource.choices,
        db_index=True,
    )
    action = models.CharField(
        max_length=50,
        choices=Action.choices,
    )
    label = models.CharField(
        max_length=255,
        help_text="Human-readable label (e.g., 'View Invoices')"
    )
    description = models.TextField(blank=True)
    category = models.CharField(
        max_length=50,
        db_index=True,
        help_text="Catalog grouping (e.g., 'operations', 'financial')"
    )
    display_order = models.PositiveIntegerField(default=0)
    is_active = models.BooleanField(default=True, db_index=True)

    objects = PermissionManager()

    class Meta:
        db_table = 'permissions'
        ordering = ['category', 'display_order', 'key']
        indexes = [
            models.Index(fields=['category', 'display_order']),
        ]

    def __str__(self):
        return self.key

    def is_referenced(self):
        return self.role_permissions.exists() or self.user_overrides.exists()

    def save(self, *args, **kwargs):
        expected_key = f"{self.resource}.{self.action}"
        if self.key != expected_key:
            raise ValidationFailed(
                f"Permission key '{self.key}' does not match '{expected_key}'",
                details={'key': self.key},
            )
        if not is_valid_key(self.key):
            raise ValidationFailed(
                f"Unknown permission key: {self.key}",
                details={'key': self.key},
            )

        if not self._state.adding:
            stored_key = Permission.objects.filter(pk=self.pk).values_list('key', flat=True).first()
            if stored_key is not None and stored_key != self.key and self.is_referenced():
                raise Conflict(
                    "Permission key cannot change once it is referenced",
                    details={'key': stored_key},
                )

        super().save(*args, **kwargs)


class RoleManager(models.Manager):
    """Manager for Role queries with organization scoping."""

    def for_organization(self, organization):
        """Roles visible to an organization: its own plus global ones."""
        return self.filter(
            Q(organization=organization) | Q(organization__isnull=True)
        )

    def by_key(self, organization, key):
        return self.filter(organization=organization, key=key).first()

    def system_roles(self, organization):
        return self.filter(organization=organization, is_system=True)


class Role(BaseModel):
    """
    A named bundle of permissions.

    ``is_system`` marks the built-in administrator role: holding it (while
    the role is active) allows everything. System roles cannot be deleted and
    their permission set cannot be edited.
    """

    organization = models.ForeignKey(
        'organizations.Organization',
        on_delete=models.CASCADE,
        null=True,
        blank=True,
        related_name='roles',
        help_text="Owning organization (null for global roles)"
    )
    key = models.SlugField(
        max_length=100,
        help_text="Stable identifier (e.g., 'customer_service')"
    )
    name = models.CharField(max_length=100)
    description = models.TextField(blank=True)
    is_system = models.BooleanField(
        default=False,
        db_index=True,
        help_text="Administrator role; bypasses resolution"
    )
    is_active = models.BooleanField(
        default=True,
        help_text="Inactive roles grant nothing"
    )
    created_by = models.ForeignKey(
        User,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='roles_created',
    )

    objects = RoleManager()

    class Meta:
        db_table = 'roles'
        unique_together = [('organization', 'key'), ('organization', 'name')]
        ordering = ['-is_system', 'name']

    def __str__(self):
        return self.name

    def permission_keys(self):
        return sorted(
            self.role_permissions.values_list('permission__key', flat=True)
        )


class RolePermission(BaseModel):
    """
    Maps permissions to roles.
    """

    role = models.ForeignKey(
        Role,
        on_delete=models.CASCADE,
        related_name='role_permissions',
    )
    permission = models.ForeignKey(
        Permission,
        on_delete=models.PROTECT,
        related_name='role_permissions',
    )
    granted_by = models.ForeignKey(
        User,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='role_permissions_granted',
    )

    class Meta:
        db_table = 'role_permissions'
        unique_together = [('role', 'permission')]
        ordering = ['role', 'permission']

    def __str__(self):
        return f"{self.role.name} -> {self.permission.key}"


class UserRole(BaseModel):
    """
    Maps roles to users. A user may hold several roles; their permissions add up.
    """

    user = models.ForeignKey(
        User,
        on_delete=models.CASCADE,
        related_name='user_roles',
    )
    role = models.ForeignKey(
        Role,
        on_delete=models.PROTECT,
        related_name='user_roles',
    )
    assigned_by = models.ForeignKey(
        User,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='role_assignments_made',
    )

    class Meta:
        db_table = 'user_roles'
        unique_together = [('user', 'role')]
        ordering = ['user', 'role']

    def __str__(self):
        return f"{self.user.email} -> {self.role.name}"

    def clean(self):
        """Validate that the role is global or belongs to the user's organization."""
        super().clean()
        if self.user_id and self.role_id:
            role_organization_id = self.role.organization_id
            if role_organization_id is not None and role_organization_id != self.user.organization_id:
                raise ValidationError(
                    "User and Role must belong to the same organization"
                )

    def save(self, *args, **kwargs):
        self.clean()
        super().save(*args, **kwargs)


class OverrideQuerySet(models.QuerySet):

    def active(self, now=None):
        """Overrides that have not expired at ``now``."""
        now = now or timezone.now()
        return self.filter(Q(expires_at__isnull=True) | Q(expires_at__gt=now))


class UserPermissionOverride(BaseModel):
    """
    Per-user exception to role-derived permissions.

    At most one override exists per (user, permission); a new decision for
    the same key replaces the prior row. Expired rows stay in place and are
    ignored at read time.
    """

    user = models.ForeignKey(
        User,
        on_delete=models.CASCADE,
        related_name='permission_overrides',
    )
    permission = models.ForeignKey(
        Permission,
        on_delete=models.PROTECT,
        related_name='user_overrides',
    )
    is_granted = models.BooleanField(
        help_text="True grants the permission, False revokes it"
    )
    reason = models.TextField(blank=True)
    granted_by = models.ForeignKey(
        User,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='overrides_granted',
    )
    expires_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="Null means permanent"
    )

    objects = OverrideQuerySet.as_manager()

    class Meta:
        db_table = 'user_permission_overrides'
        unique_together = [('user', 'permission')]
        ordering = ['user', 'permission']
        indexes = [
            models.Index(fields=['user', 'expires_at']),
        ]

    def __str__(self):
        verb = 'grant' if self.is_granted else 'revoke'
        return f"{self.user.email} {verb} {self.permission.key}"

    def is_active_at(self, now):
        return self.expires_at is None or self.expires_at > now


class AuditLogQuerySet(models.QuerySet):
    """Audit entries can be inserted and read, nothing else."""

    def update(self, **kwargs):
        raise Conflict("Audit log entries are immutable")

    def delete(self):
        raise Conflict("Audit log entries are immutable")

    def for_organization(self, organization):
        return self.filter(organization=organization)

    def for_resource(self, resource_type, resource_id):
        return self.filter(resource_type=resource_type, resource_id=str(resource_id))


class AuditLog(models.Model):
    """
    Append-only audit trail for access-control mutations.

    Entries are written by AuditService after the mutation commits and are
    never updated or deleted. ``created_at`` is UTC and never earlier than the
    previous entry for the same actor and resource.
    """

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    organization = models.ForeignKey(
        'organizations.Organization',
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='audit_logs',
    )
    actor = models.ForeignKey(
        User,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='audit_logs',
        help_text="User who performed the action (null for system actions)"
    )
    action = models.CharField(
        max_length=100,
        db_index=True,
        help_text="Action performed (e.g., 'role_permissions_replaced')"
    )
    resource_type = models.CharField(
        max_length=50,
        db_index=True,
        help_text="Type of target entity (e.g., 'role', 'user_permission_override')"
    )
    resource_id = models.CharField(
        max_length=64,
        blank=True,
        default='',
    )
    old_values = models.JSONField(null=True, blank=True)
    new_values = models.JSONField(null=True, blank=True)
    ip_address = models.GenericIPAddressField(null=True, blank=True)
    user_agent = models.TextField(blank=True, default='')
    request_id = models.CharField(max_length=64, blank=True, default='')
    created_at = models.DateTimeField(default=timezone.now, db_index=True)

    objects = AuditLogQuerySet.as_manager()

    class Meta:
        db_table = 'audit_logs'
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['organization', 'created_at']),
            models.Index(fields=['actor', 'resource_type', 'resource_id', 'created_at']),
            models.Index(fields=['organization', 'action', 'created_at']),
        ]

    def __str__(self):
        actor = self.actor_id or 'system'
        return f"{actor} {self.action} {self.resource_type}:{self.resource_id}"

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise Conflict("Audit log entries are immutable")
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise Conflict("Audit log entries are immutable")
