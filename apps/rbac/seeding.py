"""
Idempotent seeding of the permission catalog and default roles.

Shared by the management commands and the organization post_save signal.
"""
import logging

from django.db import transaction

from apps.rbac.models import Permission, Role, RolePermission
from apps.rbac.registry import DEFAULT_ROLES, PERMISSION_CATALOG

logger = logging.getLogger(__name__)

CATALOG_FIELDS = ('resource', 'action', 'label', 'description', 'category', 'display_order')


def sync_permission_catalog():
    """
    Make the Permission table match the registry.

    Missing keys are created, changed labels or ordering refreshed, keys no
    longer in the registry deactivated. Nothing is deleted.

    Returns:
        dict: counts of created, updated and deactivated permissions
    """
    created = updated = 0
    catalog_keys = set()

    with transaction.atomic():
        for entry in PERMISSION_CATALOG:
            catalog_keys.add(entry['key'])
            permission = Permission.objects.filter(key=entry['key']).first()
            if permission is None:
                Permission.objects.create(
                    key=entry['key'],
                    is_active=True,
                    **{field: entry[field] for field in CATALOG_FIELDS}
                )
                created += 1
                continue

            changed = [
                field for field in CATALOG_FIELDS
                if getattr(permission, field) != entry[field]
            ]
            if not permission.is_active:
                permission.is_active = True
                changed.append('is_active')
            if changed:
                for field in changed:
                    if field != 'is_active':
                        setattr(permission, field, entry[field])
                permission.save(update_fields=changed + ['updated_at'])
                updated += 1

        deactivated = (
            Permission.objects.filter(is_active=True)
            .exclude(key__in=catalog_keys)
            .update(is_active=False)
        )

    logger.info(
        "Permission catalog synced",
        extra={'created_count': created, 'updated_count': updated, 'deactivated_count': deactivated}
    )
    return {'created': created, 'updated': updated, 'deactivated': deactivated}


def seed_default_roles(organization):
    """
    Create the default roles for an organization.

    Existing roles are left as they are, so administrators' edits to the
    non-system roles survive re-seeding. A new role gets its default
    permission set.

    Returns:
        list: keys of the roles that were created
    """
    if not Permission.objects.exists():
        sync_permission_catalog()

    active_permissions = {p.key: p for p in Permission.objects.active()}
    created_keys = []

    with transaction.atomic():
        for key, config in DEFAULT_ROLES.items():
            role, created = Role.objects.get_or_create(
                organization=organization,
                key=key,
                defaults={
                    'name': config['name'],
                    'description': config['description'],
                    'is_system': config['is_system'],
                },
            )
            if not created:
                continue

            created_keys.append(key)
            if config['permissions'] == 'ALL':
                permissions = list(active_permissions.values())
            else:
                permissions = [
                    active_permissions[perm_key]
                    for perm_key in config['permissions']
                    if perm_key in active_permissions
                ]
            RolePermission.objects.bulk_create([
                RolePermission(role=role, permission=permission)
                for permission in permissions
            ])

    return created_keys
