"""
Permission resolution.

The resolver turns a user's role memberships and active overrides into an
effective permission set:

    effective = (role permissions ∪ granted overrides) − revoked overrides

An active system role short-circuits everything and allows every key.
Inactive or unknown users resolve to the empty set. Any storage error while
loading the inputs resolves to deny.
"""
import logging
from dataclasses import dataclass, field
from typing import FrozenSet, Iterable, Optional

from django.db import DatabaseError, transaction
from django.utils import timezone

from apps.rbac.registry import EDIT_ACTIONS, permission_keys, validate_resource

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AccessSnapshot:
    """Consistent view of everything resolution needs for one user."""

    user_exists: bool = False
    is_active: bool = False
    is_admin: bool = False
    role_permissions: FrozenSet[str] = field(default_factory=frozenset)
    granted: FrozenSet[str] = field(default_factory=frozenset)
    revoked: FrozenSet[str] = field(default_factory=frozenset)
    access_version: Optional[int] = None
    denial_reason: Optional[str] = None

    @classmethod
    def deny(cls, reason, access_version=None):
        return cls(denial_reason=reason, access_version=access_version)

    def allows(self, key):
        if not (self.user_exists and self.is_active):
            return False
        if self.is_admin:
            return True
        return key in resolve_effective_permissions(self)


def resolve_effective_permissions(snapshot: AccessSnapshot) -> FrozenSet[str]:
    """
    Compute the effective permission set from a snapshot.

    Pure function: no I/O, no hidden state. Revocations win over role grants
    and over grant overrides for the same key, whatever order they were written.
    """
    if not (snapshot.user_exists and snapshot.is_active):
        return frozenset()
    if snapshot.is_admin:
        return frozenset(permission_keys())
    return (snapshot.role_permissions | snapshot.granted) - snapshot.revoked


class PermissionResolver:
    """
    Loads snapshots from the database and answers permission queries.

    Nothing is cached here; per-request memoization lives in RequestAccess.
    """

    @classmethod
    def load_snapshot(cls, user_id, now=None) -> AccessSnapshot:
        """
        Read the user, their active roles and active overrides.

        Raises DatabaseError on storage failure; callers that need fail-closed
        behaviour use ``snapshot_or_deny``.
        """
        from apps.rbac.models import Permission, Role, User, UserPermissionOverride

        now = now or timezone.now()

        with transaction.atomic():
            user = User.objects.filter(pk=user_id).values('is_active', 'access_version').first()
            if user is None:
                return AccessSnapshot.deny('user_not_found')
            if not user['is_active']:
                return AccessSnapshot(
                    user_exists=True,
                    access_version=user['access_version'],
                    denial_reason='user_inactive',
                )

            active_roles = Role.objects.filter(user_roles__user_id=user_id, is_active=True)
            if active_roles.filter(is_system=True).exists():
                return AccessSnapshot(
                    user_exists=True,
                    is_active=True,
                    is_admin=True,
                    access_version=user['access_version'],
                )

            role_permissions = frozenset(
                Permission.objects.filter(
                    is_active=True,
                    role_permissions__role__in=active_roles,
                ).values_list('key', flat=True).distinct()
            )

            granted = set()
            revoked = set()
            overrides = UserPermissionOverride.objects.filter(user_id=user_id).active(now).values_list(
                'permission__key', 'permission__is_active', 'is_granted'
            )
            for key, permission_active, is_granted in overrides:
                if not is_granted:
                    revoked.add(key)
                elif permission_active:
                    granted.add(key)

        return AccessSnapshot(
            user_exists=True,
            is_active=True,
            role_permissions=role_permissions,
            granted=frozenset(granted),
            revoked=frozenset(revoked),
            access_version=user['access_version'],
        )

    @classmethod
    def snapshot_or_deny(cls, user_id, now=None) -> AccessSnapshot:
        try:
            return cls.load_snapshot(user_id, now)
        except DatabaseError:
            logger.error(
                "Permission resolution failed; denying",
                extra={'user_id': str(user_id)},
                exc_info=True
            )
            return AccessSnapshot.deny('store_error')

    @classmethod
    def effective_permissions(cls, user_id, now=None) -> FrozenSet[str]:
        return resolve_effective_permissions(cls.snapshot_or_deny(user_id, now))

    @classmethod
    def has_permission(cls, user_id, key, now=None) -> bool:
        return cls.snapshot_or_deny(user_id, now).allows(key)

    @classmethod
    def has_any_permission(cls, user_id, keys: Iterable[str], now=None) -> bool:
        """True if the user holds at least one key. An empty list is False."""
        snapshot = cls.snapshot_or_deny(user_id, now)
        return any(snapshot.allows(key) for key in keys)

    @classmethod
    def has_all_permissions(cls, user_id, keys: Iterable[str], now=None) -> bool:
        """True if the user holds every key. An empty list is False."""
        keys = list(keys)
        if not keys:
            return False
        snapshot = cls.snapshot_or_deny(user_id, now)
        return all(snapshot.allows(key) for key in keys)

    @classmethod
    def has_resource_access(cls, user_id, resource, require_edit=False, now=None) -> bool:
        """
        Resource-level check: ``<resource>.view`` and, when ``require_edit``,
        at least one of create/update/delete.
        """
        return resource_access(cls.snapshot_or_deny(user_id, now), resource, require_edit)


def resource_access(snapshot, resource, require_edit=False):
    validate_resource(resource)
    if not snapshot.allows(f"{resource}.view"):
        return False
    if not require_edit:
        return True
    return any(snapshot.allows(f"{resource}.{action}") for action in EDIT_ACTIONS)


class RequestAccess:
    """
    Per-request resolver handle attached as ``request.access``.

    The snapshot is loaded on first use and reused for the rest of the request,
    so a request sees one consistent decision set and nothing leaks into the
    next request.
    """

    def __init__(self, user, now=None):
        self.user_id = user.id
        self.organization_id = user.organization_id
        self.now = now or timezone.now()
        self._snapshot = None

    @property
    def snapshot(self) -> AccessSnapshot:
        if self._snapshot is None:
            self._snapshot = PermissionResolver.snapshot_or_deny(self.user_id, self.now)
        return self._snapshot

    @property
    def is_admin(self):
        snapshot = self.snapshot
        return snapshot.is_admin and snapshot.is_active

    @property
    def permissions(self) -> FrozenSet[str]:
        return resolve_effective_permissions(self.snapshot)

    @property
    def denial_reason(self):
        return self.snapshot.denial_reason

    def has_permission(self, key) -> bool:
        return self.snapshot.allows(key)

    def has_any_permission(self, keys) -> bool:
        return any(self.has_permission(key) for key in keys)

    def has_all_permissions(self, keys) -> bool:
        keys = list(keys)
        return bool(keys) and all(self.has_permission(key) for key in keys)

    def has_resource_access(self, resource, require_edit=False) -> bool:
        return resource_access(self.snapshot, resource, require_edit)
