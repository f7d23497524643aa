"""
Roles, role permission sets and role membership.

Role permission sets are shared by every holder of the role, so edits lock
the role row and apply only the difference; there is never a moment where
the role has no permissions.
"""
import logging

from django.db import IntegrityError, transaction
from django.db.models import Count
from django.utils.text import slugify

from apps.core.exceptions import Conflict, NotFound, TenantMismatch, ValidationFailed
from apps.rbac.models import Permission, Role, RolePermission, User, UserRole
from apps.rbac.registry import validate_resource
from apps.rbac.services.audit_service import AuditService

logger = logging.getLogger(__name__)

SYSTEM_ROLE_EDITABLE_FIELDS = {'name', 'description'}
ROLE_EDITABLE_FIELDS = {'key', 'name', 'description', 'is_active'}


def _role_state(role):
    return {
        'key': role.key,
        'name': role.name,
        'description': role.description,
        'is_system': role.is_system,
        'is_active': role.is_active,
    }


def _holder_ids(role):
    return UserRole.objects.filter(role=role).values_list('user_id', flat=True)


class PolicyService:
    """Policy store operations. Every mutation is audited after commit."""

    @classmethod
    def list_permissions(cls, category=None, resource=None):
        if resource:
            validate_resource(resource)
        return Permission.objects.catalog(category=category, resource=resource)

    @classmethod
    def list_roles(cls, organization):
        return (
            Role.objects.for_organization(organization)
            .annotate(
                permission_count=Count('role_permissions', distinct=True),
                user_count=Count('user_roles', distinct=True),
            )
            .order_by('-is_system', 'name')
        )

    @classmethod
    def get_role_permissions(cls, role):
        return Permission.objects.filter(role_permissions__role=role).order_by(
            'category', 'display_order', 'key'
        )

    @classmethod
    def role_users(cls, role):
        """Users holding ``role``."""
        return User.objects.filter(user_roles__role=role).order_by('email')

    @staticmethod
    def _check_collisions(organization, key=None, name=None, exclude_id=None):
        qs = Role.objects.filter(organization=organization)
        if exclude_id:
            qs = qs.exclude(pk=exclude_id)
        if key is not None and qs.filter(key=key).exists():
            raise Conflict(
                f"A role with key '{key}' already exists",
                details={'key': key},
            )
        if name is not None and qs.filter(name__iexact=name).exists():
            raise Conflict(
                f"A role named '{name}' already exists",
                details={'name': name},
            )

    @staticmethod
    def _resolve_permissions(permission_ids):
        wanted = {str(pid) for pid in permission_ids}
        permissions = list(Permission.objects.filter(id__in=list(wanted)))
        found = {str(p.id) for p in permissions}
        unknown = sorted(wanted - found)
        if unknown:
            raise ValidationFailed(
                "Unknown permissions",
                details={'unknown_permissions': unknown},
            )
        inactive = sorted(p.key for p in permissions if not p.is_active)
        if inactive:
            raise ValidationFailed(
                "Inactive permissions cannot be assigned",
                details={'inactive_permissions': inactive},
            )
        return permissions

    @staticmethod
    def _ensure_owned(role):
        """Global roles are shared by every organization and are read-only."""
        if role.organization_id is None:
            raise Conflict("Global roles cannot be modified")

    @classmethod
    def create_role(cls, organization, data, actor, request=None):
        """
        Create a custom role in ``organization``.

        ``data`` holds ``name`` and optionally ``key``, ``description`` and
        ``permission_ids``. Custom roles are never system roles.
        """
        name = data['name'].strip()
        key = data.get('key') or slugify(name).replace('-', '_')
        if not key:
            raise ValidationFailed("Role key cannot be empty", details={'key': key})

        permissions = cls._resolve_permissions(data.get('permission_ids') or [])

        try:
            with transaction.atomic():
                cls._check_collisions(organization, key=key, name=name)
                role = Role.objects.create(
                    organization=organization,
                    key=key,
                    name=name,
                    description=data.get('description', ''),
                    is_system=False,
                    created_by=actor,
                )
                RolePermission.objects.bulk_create([
                    RolePermission(role=role, permission=permission, granted_by=actor)
                    for permission in permissions
                ])

                AuditService.record_on_commit(
                    actor,
                    'role_created',
                    'role',
                    resource_id=role.pk,
                    old_values=None,
                    new_values=dict(_role_state(role), permissions=sorted(p.key for p in permissions)),
                    organization=organization,
                    request=request,
                )
        except IntegrityError as e:
            raise Conflict("Role key or name already exists in this organization") from e

        logger.info(
            "Role created",
            extra={'role_id': str(role.pk), 'role_key': role.key}
        )
        return role

    @classmethod
    def update_role(cls, role, patch, actor, request=None):
        """
        Patch a role's attributes.

        System roles accept only ``name`` and ``description``. ``is_system`` is
        never patchable.
        """
        cls._ensure_owned(role)

        if 'is_system' in patch:
            raise Conflict("is_system cannot be changed")

        unknown_fields = set(patch) - ROLE_EDITABLE_FIELDS
        if unknown_fields:
            raise ValidationFailed(
                "Unsupported role fields",
                details={'fields': sorted(unknown_fields)},
            )

        try:
            with transaction.atomic():
                locked = Role.objects.select_for_update().get(pk=role.pk)
                if locked.is_system and set(patch) - SYSTEM_ROLE_EDITABLE_FIELDS:
                    raise Conflict(
                        "System roles only allow name and description changes",
                        details={'fields': sorted(set(patch) - SYSTEM_ROLE_EDITABLE_FIELDS)},
                    )

                cls._check_collisions(
                    locked.organization_id,
                    key=patch.get('key'),
                    name=patch.get('name'),
                    exclude_id=locked.pk,
                )

                old_values = _role_state(locked)
                for field, value in patch.items():
                    setattr(locked, field, value)
                locked.save()

                if old_values['is_active'] != locked.is_active:
                    User.objects.bump_access_version(_holder_ids(locked))

                AuditService.record_on_commit(
                    actor,
                    'role_updated',
                    'role',
                    resource_id=locked.pk,
                    old_values=old_values,
                    new_values=_role_state(locked),
                    organization=locked.organization_id,
                    request=request,
                )
        except IntegrityError as e:
            raise Conflict("Role key or name already exists in this organization") from e

        return locked

    @classmethod
    def delete_role(cls, role, actor, request=None):
        """
        Delete a role.

        Raises:
            Conflict: the role is a system role or is still assigned to users
        """
        cls._ensure_owned(role)

        with transaction.atomic():
            locked = Role.objects.select_for_update().get(pk=role.pk)
            if locked.is_system:
                raise Conflict("System roles cannot be deleted")

            assigned = UserRole.objects.filter(role=locked).count()
            if assigned:
                raise Conflict(
                    "Role is assigned to users",
                    details={'assigned_users': assigned},
                )

            old_values = dict(_role_state(locked), permissions=locked.permission_keys())
            role_id = locked.pk
            locked.delete()

            AuditService.record_on_commit(
                actor,
                'role_deleted',
                'role',
                resource_id=role_id,
                old_values=old_values,
                new_values=None,
                organization=role.organization_id,
                request=request,
            )

        logger.info("Role deleted", extra={'role_id': str(role_id)})

    @classmethod
    def set_role_permissions(cls, role, permission_ids, actor, request=None):
        """
        Replace a role's permission set.

        Rows already present are left alone; only removals are deleted and
        only additions are inserted, under a lock on the role row. Holders of
        the role get their access version bumped.
        """
        cls._ensure_owned(role)
        permissions = cls._resolve_permissions(permission_ids)
        wanted = {p.id: p for p in permissions}

        with transaction.atomic():
            locked = Role.objects.select_for_update().get(pk=role.pk)
            if locked.is_system:
                raise Conflict("System role permissions cannot be edited")

            current = dict(
                RolePermission.objects.filter(role=locked).values_list('permission_id', 'permission__key')
            )
            old_keys = sorted(current.values())

            removed = [pid for pid in current if pid not in wanted]
            added = [wanted[pid] for pid in wanted if pid not in current]

            if removed:
                RolePermission.objects.filter(role=locked, permission_id__in=removed).delete()
            if added:
                RolePermission.objects.bulk_create([
                    RolePermission(role=locked, permission=permission, granted_by=actor)
                    for permission in added
                ])
            if removed or added:
                User.objects.bump_access_version(_holder_ids(locked))

            new_keys = sorted(p.key for p in permissions)
            AuditService.record_on_commit(
                actor,
                'role_permissions_replaced',
                'role',
                resource_id=locked.pk,
                old_values={'permissions': old_keys},
                new_values={'permissions': new_keys},
                organization=locked.organization_id,
                request=request,
            )

        logger.info(
            "Role permissions replaced",
            extra={'role_id': str(locked.pk), 'added': len(added), 'removed': len(removed)}
        )
        return cls.get_role_permissions(locked)

    @staticmethod
    def _check_same_organization(user, role):
        if role.organization_id is not None and role.organization_id != user.organization_id:
            raise TenantMismatch(
                "Role and user belong to different organizations",
                details={'role_id': str(role.pk), 'user_id': str(user.pk)},
            )

    @classmethod
    def assign_role(cls, user, role, actor, request=None):
        """
        Add ``role`` to the user's role set.

        Raises:
            Conflict: the user already holds the role
            TenantMismatch: the role belongs to another organization
        """
        cls._check_same_organization(user, role)

        try:
            with transaction.atomic():
                # Lock the role so a concurrent delete cannot miss this assignment
                Role.objects.select_for_update().get(pk=role.pk)
                User.objects.select_for_update().get(pk=user.pk)

                if UserRole.objects.filter(user=user, role=role).exists():
                    raise Conflict(
                        "User already holds this role",
                        details={'role_id': str(role.pk)},
                    )

                user_role = UserRole.objects.create(user=user, role=role, assigned_by=actor)
                User.objects.bump_access_version([user.pk])

                AuditService.record_on_commit(
                    actor,
                    'role_assigned',
                    'user_role',
                    resource_id=user_role.pk,
                    old_values=None,
                    new_values={'user_id': str(user.pk), 'role_id': str(role.pk), 'role': role.key},
                    organization=user.organization_id,
                    request=request,
                )
        except IntegrityError as e:
            raise Conflict("User already holds this role") from e

        return user_role

    @classmethod
    def remove_role_assignment(cls, user_role, actor, request=None):
        user = user_role.user
        role = user_role.role

        with transaction.atomic():
            User.objects.select_for_update().get(pk=user.pk)
            assignment_id = user_role.pk
            UserRole.objects.filter(pk=assignment_id).delete()
            User.objects.bump_access_version([user.pk])

            AuditService.record_on_commit(
                actor,
                'role_unassigned',
                'user_role',
                resource_id=assignment_id,
                old_values={'user_id': str(user.pk), 'role_id': str(role.pk), 'role': role.key},
                new_values=None,
                organization=user.organization_id,
                request=request,
            )

    @classmethod
    def replace_user_roles(cls, user, role_ids, actor, request=None):
        """
        Make the user's role set equal to ``role_ids`` in one transaction.

        Roles that are unknown or belong to another organization are
        reported as not found.
        """
        wanted_ids = {str(rid) for rid in role_ids}
        roles = {
            str(role.pk): role
            for role in Role.objects.for_organization(user.organization_id).filter(id__in=list(wanted_ids))
        }
        missing = sorted(wanted_ids - set(roles))
        if missing:
            raise NotFound("Role not found", details={'role_ids': missing})

        with transaction.atomic():
            User.objects.select_for_update().get(pk=user.pk)

            current = {
                str(ur.role_id): ur
                for ur in UserRole.objects.filter(user=user).select_related('role')
            }
            old_keys = sorted(ur.role.key for ur in current.values())

            removed = [ur.pk for rid, ur in current.items() if rid not in roles]
            added_ids = [rid for rid in roles if rid not in current]

            if added_ids:
                # Lock added roles against concurrent deletion
                list(Role.objects.select_for_update().filter(id__in=added_ids))
            if removed:
                UserRole.objects.filter(pk__in=removed).delete()
            for rid in added_ids:
                UserRole.objects.create(user=user, role=roles[rid], assigned_by=actor)
            if removed or added_ids:
                User.objects.bump_access_version([user.pk])

            AuditService.record_on_commit(
                actor,
                'user_roles_replaced',
                'user',
                resource_id=user.pk,
                old_values={'roles': old_keys},
                new_values={'roles': sorted(role.key for role in roles.values())},
                organization=user.organization_id,
                request=request,
            )

        return list(Role.objects.filter(user_roles__user=user).order_by('-is_system', 'name'))

    @classmethod
    def set_user_active(cls, user, is_active, actor, request=None):
        """
        Activate or deactivate a user. Inactive users are denied everything.

        Raises:
            Conflict: an actor tried to deactivate themselves
        """
        if actor is not None and actor.pk == user.pk and not is_active:
            raise Conflict("You cannot deactivate your own account")

        with transaction.atomic():
            locked = User.objects.select_for_update().get(pk=user.pk)
            was_active = locked.is_active
            if was_active != is_active:
                User.objects.filter(pk=locked.pk).update(is_active=is_active)
                User.objects.bump_access_version([locked.pk])

            AuditService.record_on_commit(
                actor,
                'user_status_changed',
                'user',
                resource_id=locked.pk,
                old_values={'is_active': was_active},
                new_values={'is_active': is_active},
                organization=locked.organization_id,
                request=request,
            )

        locked.refresh_from_db()
        return locked
