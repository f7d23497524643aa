"""
Tests for PolicyService.

Covers role CRUD conflicts, system role protection, diff-based permission
set replacement and role membership changes.
"""
import uuid
from unittest.mock import patch

import pytest
from django.db import DatabaseError

from apps.core.exceptions import Conflict, NotFound, TenantMismatch, ValidationFailed
from apps.rbac.models import Role, RolePermission, User, UserRole
from apps.rbac.services import PermissionResolver, PolicyService


def admin_role(organization):
    return Role.objects.get(organization=organization, key='admin')


@pytest.mark.django_db
class TestRoleLifecycle:

    def test_create_role_with_permissions(self, organization, admin_user, permissions):
        role = PolicyService.create_role(
            organization,
            {'name': 'Parts Clerk', 'permission_ids': [permissions['inventory.view'].id]},
            actor=admin_user,
        )

        assert role.key == 'parts_clerk'
        assert role.is_system is False
        assert role.created_by == admin_user
        assert role.permission_keys() == ['inventory.view']

    def test_create_role_name_collision_conflicts(self, organization, admin_user):
        with pytest.raises(Conflict):
            PolicyService.create_role(organization, {'name': 'Receptionist'}, actor=admin_user)

    def test_create_role_key_collision_conflicts(self, organization, admin_user):
        with pytest.raises(Conflict):
            PolicyService.create_role(organization, {'name': 'Front', 'key': 'receptionist'}, actor=admin_user)

    def test_same_name_allowed_in_other_organization(self, organization, other_organization, admin_user):
        role = PolicyService.create_role(other_organization, {'name': 'Parts Clerk'}, actor=admin_user)
        assert role.organization == other_organization

    def test_unknown_permission_rejected(self, organization, admin_user):
        with pytest.raises(ValidationFailed):
            PolicyService.create_role(
                organization, {'name': 'Broken', 'permission_ids': [uuid.uuid4()]}, actor=admin_user
            )

    def test_update_role_rename(self, organization, admin_user):
        role = Role.objects.get(organization=organization, key='receptionist')
        updated = PolicyService.update_role(role, {'name': 'Front Desk'}, actor=admin_user)
        assert updated.name == 'Front Desk'

    def test_update_role_collision_conflicts(self, organization, admin_user):
        role = Role.objects.get(organization=organization, key='receptionist')
        with pytest.raises(Conflict):
            PolicyService.update_role(role, {'name': 'Customer Service'}, actor=admin_user)

    def test_system_role_only_name_and_description(self, organization, admin_user):
        role = admin_role(organization)

        PolicyService.update_role(role, {'description': 'Owners'}, actor=admin_user)
        with pytest.raises(Conflict):
            PolicyService.update_role(role, {'is_active': False}, actor=admin_user)
        with pytest.raises(Conflict):
            PolicyService.update_role(role, {'is_system': False}, actor=admin_user)

        role.refresh_from_db()
        assert role.is_system is True
        assert role.is_active is True

    def test_deactivating_role_bumps_holders(self, organization, staff_user, admin_user):
        role = Role.objects.get(organization=organization, key='customer_service')
        version = staff_user.access_version

        PolicyService.update_role(role, {'is_active': False}, actor=admin_user)

        assert User.objects.get(pk=staff_user.pk).access_version == version + 1
        assert PermissionResolver.has_permission(staff_user.id, 'customers.view') is False

    def test_delete_unassigned_role(self, organization, admin_user, make_role):
        role = make_role(organization, 'temporary', ['reports.view'])

        PolicyService.delete_role(role, actor=admin_user)

        assert not Role.objects.filter(pk=role.pk).exists()
        assert not RolePermission.objects.filter(role_id=role.pk).exists()

    def test_delete_assigned_role_conflicts_and_changes_nothing(self, organization, staff_user, admin_user):
        role = Role.objects.get(organization=organization, key='customer_service')
        keys_before = role.permission_keys()

        with pytest.raises(Conflict) as exc_info:
            PolicyService.delete_role(role, actor=admin_user)

        assert exc_info.value.details == {'assigned_users': 1}
        assert Role.objects.filter(pk=role.pk).exists()
        assert role.permission_keys() == keys_before
        assert UserRole.objects.filter(role=role, user=staff_user).exists()

    def test_delete_system_role_conflicts(self, organization, admin_user):
        UserRole.objects.filter(role=admin_role(organization)).delete()
        with pytest.raises(Conflict):
            PolicyService.delete_role(admin_role(organization), actor=admin_user)


@pytest.mark.django_db
class TestSetRolePermissions:

    def test_diff_preserves_existing_rows(self, organization, admin_user, make_role, permissions):
        role = make_role(organization, 'clerk', ['customers.view', 'vehicles.view'])
        kept_id = RolePermission.objects.get(role=role, permission__key='customers.view').id

        PolicyService.set_role_permissions(
            role,
            [permissions['customers.view'].id, permissions['invoices.view'].id],
            actor=admin_user,
        )

        assert role.permission_keys() == ['customers.view', 'invoices.view']
        assert RolePermission.objects.get(role=role, permission__key='customers.view').id == kept_id

    def test_system_role_permissions_locked(self, organization, admin_user, permissions):
        with pytest.raises(Conflict):
            PolicyService.set_role_permissions(
                admin_role(organization), [permissions['customers.view'].id], actor=admin_user
            )

    def test_holders_access_version_bumped(self, organization, staff_user, admin_user, permissions):
        role = Role.objects.get(organization=organization, key='customer_service')
        version = staff_user.access_version

        PolicyService.set_role_permissions(role, [permissions['customers.view'].id], actor=admin_user)

        assert User.objects.get(pk=staff_user.pk).access_version == version + 1
        assert PermissionResolver.effective_permissions(staff_user.id) == {'customers.view'}

    def test_failure_keeps_previous_set(self, organization, admin_user, make_role, permissions):
        role = make_role(organization, 'clerk', ['customers.view', 'vehicles.view'])

        with patch.object(RolePermission.objects, 'bulk_create', side_effect=DatabaseError('boom')):
            with pytest.raises(DatabaseError):
                PolicyService.set_role_permissions(role, [permissions['reports.view'].id], actor=admin_user)

        assert role.permission_keys() == ['customers.view', 'vehicles.view']

    def test_inactive_permission_rejected(self, organization, admin_user, make_role, permissions):
        role = make_role(organization, 'clerk', [])
        permission = permissions['reports.view']
        permission.is_active = False
        permission.save()

        with pytest.raises(ValidationFailed) as exc_info:
            PolicyService.set_role_permissions(role, [permission.id], actor=admin_user)
        assert exc_info.value.details == {'inactive_permissions': ['reports.view']}


@pytest.mark.django_db
class TestMembership:

    def test_assign_role(self, organization, make_user, admin_user):
        user = make_user(organization)
        role = Role.objects.get(organization=organization, key='receptionist')

        user_role = PolicyService.assign_role(user, role, actor=admin_user)

        assert user_role.assigned_by == admin_user
        assert PermissionResolver.has_permission(user.id, 'vehicles.create') is True
        assert User.objects.get(pk=user.pk).access_version == user.access_version + 1

    def test_assign_twice_conflicts(self, organization, staff_user, admin_user):
        role = Role.objects.get(organization=organization, key='customer_service')
        with pytest.raises(Conflict):
            PolicyService.assign_role(staff_user, role, actor=admin_user)

    def test_assign_foreign_role_rejected(self, organization, other_organization, staff_user, admin_user):
        foreign_role = Role.objects.get(organization=other_organization, key='receptionist')
        with pytest.raises(TenantMismatch):
            PolicyService.assign_role(staff_user, foreign_role, actor=admin_user)

    def test_remove_role_assignment(self, organization, staff_user, admin_user):
        user_role = UserRole.objects.get(user=staff_user)

        PolicyService.remove_role_assignment(user_role, actor=admin_user)

        assert PermissionResolver.effective_permissions(staff_user.id) == frozenset()

    def test_replace_user_roles(self, organization, staff_user, admin_user):
        receptionist = Role.objects.get(organization=organization, key='receptionist')
        kept = UserRole.objects.get(user=staff_user)

        roles = PolicyService.replace_user_roles(
            staff_user, [receptionist.id, kept.role_id], actor=admin_user
        )
        assert {role.key for role in roles} == {'receptionist', 'customer_service'}
        assert UserRole.objects.filter(pk=kept.pk).exists()

        roles = PolicyService.replace_user_roles(staff_user, [receptionist.id], actor=admin_user)
        assert [role.key for role in roles] == ['receptionist']

    def test_replace_user_roles_with_foreign_role(self, other_organization, staff_user, admin_user):
        foreign_role = Role.objects.get(organization=other_organization, key='receptionist')
        with pytest.raises(NotFound):
            PolicyService.replace_user_roles(staff_user, [foreign_role.id], actor=admin_user)
        assert UserRole.objects.filter(user=staff_user).count() == 1

    def test_deactivate_user(self, staff_user, admin_user):
        user = PolicyService.set_user_active(staff_user, False, actor=admin_user)

        assert user.is_active is False
        assert user.access_version == staff_user.access_version + 1
        assert PermissionResolver.has_permission(staff_user.id, 'customers.view') is False

    def test_cannot_deactivate_self(self, admin_user):
        with pytest.raises(Conflict):
            PolicyService.set_user_active(admin_user, False, actor=admin_user)

    def test_list_roles_scoped_to_organization(self, organization, other_organization):
        keys = {role.key for role in PolicyService.list_roles(organization)}
        assert keys == {'admin', 'customer_service', 'receptionist'}
        assert all(role.organization_id == organization.id for role in PolicyService.list_roles(organization))
