"""
Per-user permission overrides.

Every write locks the user row first, so two administrators editing the same
user are serialized and the persisted set is always exactly one of the
submitted sets.
"""
import logging

from django.db import transaction
from django.utils import timezone

from apps.core.exceptions import ValidationFailed
from apps.rbac.models import Permission, User, UserPermissionOverride
from apps.rbac.services.audit_service import AuditService

logger = logging.getLogger(__name__)

RESOURCE_TYPE = 'user_permission_override'


def _override_state(override):
    return {
        'permission_id': str(override.permission_id),
        'permission': override.permission.key,
        'is_granted': override.is_granted,
        'reason': override.reason,
        'expires_at': override.expires_at.isoformat() if override.expires_at else None,
    }


class OverrideService:

    @classmethod
    def list_active_overrides(cls, user, now=None):
        """Overrides for ``user`` that have not expired at ``now``."""
        return (
            UserPermissionOverride.objects
            .filter(user=user)
            .active(now or timezone.now())
            .select_related('permission', 'granted_by')
            .order_by('permission__category', 'permission__display_order')
        )

    @classmethod
    def replace_overrides(cls, user, desired, actor, request=None):
        """
        Make the user's overrides equal to ``desired``.

        ``desired`` is a list of dicts with ``permission_id``, ``is_granted`` and
        optional ``reason`` and ``expires_at``. Only the difference is written:
        unchanged rows keep their ids, changed rows are updated in place, and
        rows missing from ``desired`` are deleted. All of it happens in one
        transaction.

        Raises:
            ValidationFailed: duplicate or unknown permission ids
        """
        wanted = {}
        duplicates = set()
        for item in desired:
            permission_id = str(item['permission_id'])
            if permission_id in wanted:
                duplicates.add(permission_id)
            wanted[permission_id] = item
        if duplicates:
            raise ValidationFailed(
                "Each permission may appear only once",
                details={'duplicate_permission_ids': sorted(duplicates)},
            )

        permissions = {
            str(permission.id): permission
            for permission in Permission.objects.filter(id__in=list(wanted))
        }
        unknown = sorted(set(wanted) - set(permissions))
        if unknown:
            raise ValidationFailed(
                "Unknown permissions",
                details={'unknown_permissions': unknown},
            )

        with transaction.atomic():
            User.objects.select_for_update().get(pk=user.pk)

            current = {
                str(override.permission_id): override
                for override in UserPermissionOverride.objects.filter(user=user).select_related('permission')
            }
            old_values = sorted(
                (_override_state(o) for o in current.values()), key=lambda s: s['permission']
            )

            stale_ids = [o.id for pid, o in current.items() if pid not in wanted]
            to_create = []
            updated = 0

            for permission_id, item in wanted.items():
                fields = {
                    'is_granted': bool(item['is_granted']),
                    'reason': item.get('reason') or '',
                    'expires_at': item.get('expires_at'),
                }
                existing = current.get(permission_id)
                if existing is None:
                    to_create.append(UserPermissionOverride(
                        user=user,
                        permission=permissions[permission_id],
                        granted_by=actor,
                        **fields
                    ))
                    continue

                changed = [name for name, value in fields.items() if getattr(existing, name) != value]
                if changed:
                    for name in changed:
                        setattr(existing, name, fields[name])
                    existing.granted_by = actor
                    existing.save(update_fields=changed + ['granted_by', 'updated_at'])
                    updated += 1

            if stale_ids:
                UserPermissionOverride.objects.filter(id__in=stale_ids).delete()
            if to_create:
                UserPermissionOverride.objects.bulk_create(to_create)

            if stale_ids or to_create or updated:
                User.objects.bump_access_version([user.pk])

            overrides = list(
                UserPermissionOverride.objects.filter(user=user).select_related('permission', 'granted_by')
            )
            new_values = sorted((_override_state(o) for o in overrides), key=lambda s: s['permission'])

            AuditService.record_on_commit(
                actor,
                'permission_overrides_replaced',
                RESOURCE_TYPE,
                resource_id=user.pk,
                old_values={'user_id': str(user.pk), 'overrides': old_values},
                new_values={'user_id': str(user.pk), 'overrides': new_values},
                organization=user.organization_id,
                request=request,
            )

        logger.info(
            "Permission overrides replaced",
            extra={
                'target_user_id': str(user.pk),
                'created_count': len(to_create),
                'updated_count': updated,
                'deleted_count': len(stale_ids),
            }
        )
        return overrides

    @classmethod
    def upsert_override(cls, user, permission, is_granted, actor, reason='', expires_at=None, request=None):
        """
        Grant or revoke one permission for a user.

        A decision for a key the user already has an override for replaces
        that override. Returns ``(override, created)``.
        """
        with transaction.atomic():
            User.objects.select_for_update().get(pk=user.pk)

            existing = (
                UserPermissionOverride.objects
                .filter(user=user, permission=permission)
                .select_related('permission')
                .first()
            )
            old_values = _override_state(existing) if existing else None

            override, created = UserPermissionOverride.objects.update_or_create(
                user=user,
                permission=permission,
                defaults={
                    'is_granted': is_granted,
                    'reason': reason or '',
                    'expires_at': expires_at,
                    'granted_by': actor,
                },
            )
            User.objects.bump_access_version([user.pk])

            AuditService.record_on_commit(
                actor,
                'permission_override_set',
                RESOURCE_TYPE,
                resource_id=override.pk,
                old_values=old_values,
                new_values=dict(_override_state(override), user_id=str(user.pk)),
                organization=user.organization_id,
                request=request,
            )

        return override, created

    @classmethod
    def delete_override(cls, override, actor, request=None):
        user = override.user
        with transaction.atomic():
            User.objects.select_for_update().get(pk=user.pk)

            old_values = dict(_override_state(override), user_id=str(user.pk))
            override_id = override.pk
            UserPermissionOverride.objects.filter(pk=override_id).delete()
            User.objects.bump_access_version([user.pk])

            AuditService.record_on_commit(
                actor,
                'permission_override_deleted',
                RESOURCE_TYPE,
                resource_id=override_id,
                old_values=old_values,
                new_values=None,
                organization=user.organization_id,
                request=request,
            )
