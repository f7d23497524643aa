"""
Tests for RBAC model invariants.
"""
from datetime import timedelta

import pytest
from django.core.exceptions import ValidationError
from django.utils import timezone

from apps.core.exceptions import Conflict, ValidationFailed
from apps.rbac.models import Permission, Role, User, UserPermissionOverride, UserRole


@pytest.mark.django_db
class TestPermission:

    def test_key_must_match_resource_and_action(self, permissions):
        with pytest.raises(ValidationFailed):
            Permission.objects.create(
                key='customers.view_all', resource='customers', action='view',
                label='Bad', category='operations',
            )

    def test_key_must_exist_in_registry(self, permissions):
        with pytest.raises(ValidationFailed):
            Permission(
                key='customers.print', resource='customers', action='print',
                label='Print Customers', category='operations',
            ).save()

    def test_unreferenced_key_can_change(self, permissions):
        Permission.objects.filter(key='reports.export').delete()
        permission = permissions['reports.view']
        permission.action = 'export'
        permission.key = 'reports.export'
        permission.save()

        assert Permission.objects.get(pk=permission.pk).key == 'reports.export'

    def test_referenced_key_is_frozen(self, organization, make_role, permissions):
        make_role(organization, 'clerk', ['reports.view'])

        permission = permissions['reports.view']
        permission.action = 'export'
        permission.key = 'reports.export'
        with pytest.raises(Conflict):
            permission.save()

    def test_referenced_permission_can_be_retired(self, organization, permissions):
        permission = permissions['customers.view']
        permission.is_active = False
        permission.save()

        assert not Permission.objects.active().filter(key='customers.view').exists()
        assert Permission.objects.by_key('customers.view').is_active is False


@pytest.mark.django_db
class TestRoleAndMembership:

    def test_role_keys_unique_per_organization(self, organization, other_organization):
        assert Role.objects.filter(key='receptionist').count() == 2
        assert Role.objects.by_key(organization, 'receptionist').organization == organization

    def test_cross_organization_assignment_rejected(self, organization, other_organization, make_user):
        user = make_user(organization)
        foreign_role = Role.objects.get(organization=other_organization, key='receptionist')

        with pytest.raises(ValidationError):
            UserRole.objects.create(user=user, role=foreign_role)

    def test_global_role_assignable_anywhere(self, organization, make_user):
        global_role = Role.objects.create(organization=None, key='auditor', name='Auditor')
        user = make_user(organization, roles=[global_role])

        assert list(Role.objects.filter(user_roles__user=user)) == [global_role]
        assert global_role in Role.objects.for_organization(organization)

    def test_bump_access_version(self, organization, make_user):
        first = make_user(organization)
        second = make_user(organization)

        User.objects.bump_access_version([first.pk, second.pk])
        User.objects.bump_access_version([first.pk])

        assert User.objects.get(pk=first.pk).access_version == 3
        assert User.objects.get(pk=second.pk).access_version == 2

    def test_create_user_normalizes_email_and_hashes_password(self, organization):
        user = User.objects.create_user('Mechanic@ACME.test', organization, password='s3cret-pass')

        assert user.email == 'Mechanic@acme.test'
        assert user.password_hash != 's3cret-pass'
        assert user.check_password('s3cret-pass')
        assert User.objects.by_email('Mechanic@ACME.TEST') == user


@pytest.mark.django_db
class TestOverrideExpiry:

    def test_active_excludes_expired(self, staff_user, permissions):
        now = timezone.now()
        UserPermissionOverride.objects.create(
            user=staff_user, permission=permissions['settings.view'], is_granted=True,
            expires_at=now - timedelta(minutes=1),
        )
        live = UserPermissionOverride.objects.create(
            user=staff_user, permission=permissions['customers.delete'], is_granted=False,
            expires_at=now + timedelta(days=1),
        )
        permanent = UserPermissionOverride.objects.create(
            user=staff_user, permission=permissions['reports.view'], is_granted=False,
        )

        active = set(UserPermissionOverride.objects.filter(user=staff_user).active(now))
        assert active == {live, permanent}
        assert live.is_active_at(now + timedelta(days=2)) is False
