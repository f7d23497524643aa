"""
API tests for the RBAC endpoints.

Covers the uniform denial response, permission checks, role and override
management, the access-version header and the audit log endpoint.
"""
import uuid
from datetime import timedelta
from unittest.mock import patch

import pytest
from django.utils import timezone

from apps.core.logging import SecurityLogger
from apps.rbac.models import AuditLog, Role, User, UserPermissionOverride, UserRole


def assert_not_authorized(response):
    assert response.status_code == 403
    body = response.json()
    assert body['error'] == {'code': 'NOT_AUTHORIZED', 'message': 'Not authorized.'}
    assert 'request_id' in body


@pytest.mark.django_db
class TestUniformDenial:

    def test_foreign_role_looks_like_missing_role(self, auth_client, admin_user, other_organization):
        client = auth_client(admin_user)
        foreign_role = Role.objects.get(organization=other_organization, key='receptionist')

        foreign = client.get(f'/v1/roles/{foreign_role.id}')
        missing = client.get(f'/v1/roles/{uuid.uuid4()}')

        assert_not_authorized(foreign)
        assert_not_authorized(missing)
        assert foreign.json()['error'] == missing.json()['error']

    def test_missing_permission_looks_like_missing_role(self, auth_client, organization, staff_user):
        role = Role.objects.get(organization=organization, key='receptionist')

        response = auth_client(staff_user).get(f'/v1/roles/{role.id}')

        assert_not_authorized(response)

    def test_foreign_user_in_body_is_denied(self, auth_client, admin_user, foreign_admin, organization):
        role = Role.objects.get(organization=organization, key='receptionist')

        with patch.object(SecurityLogger, 'log_tenant_mismatch') as log_mismatch:
            response = auth_client(admin_user).post(
                '/v1/roles/assign',
                {'user_id': str(foreign_admin.id), 'role_id': str(role.id)},
                format='json',
            )

        assert_not_authorized(response)
        assert not UserRole.objects.filter(user=foreign_admin, role=role).exists()
        log_mismatch.assert_called_once()
        assert log_mismatch.call_args.kwargs['resource_type'] == 'User'
        assert log_mismatch.call_args.kwargs['resource_id'] == foreign_admin.id

    def test_foreign_override_delete_denied(self, auth_client, admin_user, foreign_admin, permissions):
        override = UserPermissionOverride.objects.create(
            user=foreign_admin, permission=permissions['reports.view'], is_granted=False,
        )

        response = auth_client(admin_user).delete(f'/v1/permissions/overrides/{override.id}')

        assert_not_authorized(response)
        assert UserPermissionOverride.objects.filter(pk=override.pk).exists()

    def test_missing_token_is_unauthenticated(self, api_client, organization):
        response = api_client.get('/v1/permissions/me')

        assert response.status_code == 401
        assert response.json()['error']['code'] == 'UNAUTHENTICATED'

    def test_health_is_public(self, api_client, db):
        response = api_client.get('/v1/health')
        assert response.status_code in (200, 503)


@pytest.mark.django_db
class TestPermissionChecks:

    def test_check_own_permission(self, auth_client, staff_user):
        client = auth_client(staff_user)

        allowed = client.get('/v1/permissions/check', {'permission': 'customers.view'})
        denied = client.get('/v1/permissions/check', {'permission': 'settings.update'})

        assert allowed.status_code == 200
        assert allowed.json() == {'has_permission': True}
        assert denied.json() == {'has_permission': False}

    def test_unknown_key_is_validation_error(self, auth_client, staff_user):
        response = auth_client(staff_user).get('/v1/permissions/check', {'permission': 'customers.fly'})

        assert response.status_code == 400
        body = response.json()
        assert body['error']['code'] == 'VALIDATION_ERROR'
        assert body['error']['details'] == {'unknown_permissions': ['customers.fly']}

    def test_checking_other_user_requires_users_view(self, auth_client, staff_user, admin_user):
        response = auth_client(staff_user).get(
            '/v1/permissions/check', {'permission': 'customers.view', 'user_id': str(admin_user.id)}
        )
        assert_not_authorized(response)

        response = auth_client(admin_user).get(
            '/v1/permissions/check', {'permission': 'customers.view', 'user_id': str(staff_user.id)}
        )
        assert response.json() == {'has_permission': True}

    def test_admin_cannot_check_foreign_user(self, auth_client, admin_user, foreign_admin):
        response = auth_client(admin_user).get(
            '/v1/permissions/check', {'permission': 'customers.view', 'user_id': str(foreign_admin.id)}
        )
        assert_not_authorized(response)

    def test_check_any(self, auth_client, staff_user):
        client = auth_client(staff_user)

        response = client.post(
            '/v1/permissions/check-any',
            {'permissions': ['settings.update', 'customers.view']},
            format='json',
        )
        assert response.json() == {'has_any_permission': True}

        response = client.post(
            '/v1/permissions/check-any', {'permissions': ['settings.update']}, format='json'
        )
        assert response.json() == {'has_any_permission': False}

    def test_my_permissions(self, auth_client, staff_user):
        response = auth_client(staff_user).get('/v1/permissions/me')

        body = response.json()
        assert body['is_admin'] is False
        assert body['roles'] == ['customer_service']
        assert 'customers.view' in body['permissions']
        assert 'settings.view' not in body['permissions']
        assert body['access_version'] == 1
        assert response['X-Access-Version'] == '1'

    def test_permission_catalog(self, auth_client, admin_user):
        response = auth_client(admin_user).get('/v1/permissions', {'resource': 'invoices'})

        body = response.json()
        assert response.status_code == 200
        assert {p['key'] for p in body['permissions']} == {
            'invoices.view', 'invoices.create', 'invoices.update', 'invoices.delete',
            'invoices.print', 'invoices.export', 'invoices.void',
        }


@pytest.mark.django_db
class TestRoleEndpoints:

    def test_create_and_fetch_role(self, auth_client, admin_user, permissions):
        client = auth_client(admin_user)

        response = client.post(
            '/v1/roles',
            {'name': 'Parts Clerk', 'permission_ids': [str(permissions['inventory.view'].id)]},
            format='json',
        )
        assert response.status_code == 201
        role_id = response.json()['id']
        assert response.json()['key'] == 'parts_clerk'

        response = client.get(f'/v1/roles/{role_id}')
        assert [p['key'] for p in response.json()['permissions']] == ['inventory.view']

    def test_duplicate_role_name_conflicts(self, auth_client, admin_user):
        response = auth_client(admin_user).post('/v1/roles', {'name': 'Receptionist'}, format='json')

        assert response.status_code == 409
        assert response.json()['error']['code'] == 'CONFLICT'

    def test_is_system_cannot_be_patched(self, auth_client, admin_user, organization):
        role = Role.objects.get(organization=organization, key='receptionist')

        response = auth_client(admin_user).patch(f'/v1/roles/{role.id}', {'is_system': True}, format='json')

        assert response.status_code == 400
        role.refresh_from_db()
        assert role.is_system is False

    def test_delete_assigned_role_conflicts(self, auth_client, admin_user, staff_user, organization):
        role = Role.objects.get(organization=organization, key='customer_service')

        response = auth_client(admin_user).delete(f'/v1/roles/{role.id}')

        assert response.status_code == 409
        assert Role.objects.filter(pk=role.pk).exists()

    def test_replace_role_permissions(self, auth_client, admin_user, organization, permissions, make_role):
        role = make_role(organization, 'clerk', ['customers.view'])

        response = auth_client(admin_user).put(
            f'/v1/roles/{role.id}/permissions',
            {'permission_ids': [str(permissions['vehicles.view'].id)]},
            format='json',
        )

        assert response.status_code == 200
        assert [p['key'] for p in response.json()['permissions']] == ['vehicles.view']

    def test_list_roles_only_own_organization(self, auth_client, admin_user):
        response = auth_client(admin_user).get('/v1/roles')

        roles = response.json()['roles']
        assert [r['key'] for r in roles] == ['admin', 'customer_service', 'receptionist']
        assert roles[0]['user_count'] == 1

    def test_assign_and_unassign(self, auth_client, admin_user, organization, make_user):
        user = make_user(organization)
        role = Role.objects.get(organization=organization, key='receptionist')
        client = auth_client(admin_user)

        response = client.post(
            '/v1/roles/assign', {'user_id': str(user.id), 'role_id': str(role.id)}, format='json'
        )
        assert response.status_code == 201

        response = client.delete(f"/v1/roles/assignments/{response.json()['id']}")
        assert response.status_code == 204
        assert not UserRole.objects.filter(user=user).exists()

    def test_replace_user_roles(self, auth_client, admin_user, staff_user, organization):
        role = Role.objects.get(organization=organization, key='receptionist')

        response = auth_client(admin_user).put(
            f'/v1/users/{staff_user.id}/roles', {'role_ids': [str(role.id)]}, format='json'
        )

        assert response.status_code == 200
        assert [r['key'] for r in response.json()['roles']] == ['receptionist']

    def test_deactivated_user_is_denied(self, auth_client, admin_user, staff_user):
        response = auth_client(admin_user).patch(
            f'/v1/users/{staff_user.id}/status', {'is_active': False}, format='json'
        )
        assert response.status_code == 200

        response = auth_client(staff_user).get('/v1/permissions/me')
        assert_not_authorized(response)


@pytest.mark.django_db
class TestOverrideEndpoints:

    def test_revoke_override_wins_over_role(self, auth_client, admin_user, staff_user, permissions):
        response = auth_client(admin_user).post(
            '/v1/permissions/overrides',
            {
                'user_id': str(staff_user.id),
                'permission_id': str(permissions['customers.view'].id),
                'is_granted': False,
                'reason': 'Under review',
            },
            format='json',
        )
        assert response.status_code == 201

        response = auth_client(staff_user).get('/v1/permissions/check', {'permission': 'customers.view'})
        assert response.json() == {'has_permission': False}

    def test_create_override_rejects_past_expiry(self, auth_client, admin_user, staff_user, permissions):
        response = auth_client(admin_user).post(
            '/v1/permissions/overrides',
            {
                'user_id': str(staff_user.id),
                'permission_id': str(permissions['settings.view'].id),
                'is_granted': True,
                'expires_at': (timezone.now() - timedelta(hours=1)).isoformat(),
            },
            format='json',
        )
        assert response.status_code == 400

    def test_bulk_replace_and_list(self, auth_client, admin_user, staff_user, permissions):
        client = auth_client(admin_user)

        response = client.put(
            f'/v1/users/{staff_user.id}/permission-overrides',
            {'overrides': [
                {'permission_id': str(permissions['settings.view'].id), 'is_granted': True},
                {'permission_id': str(permissions['customers.delete'].id), 'is_granted': False},
            ]},
            format='json',
        )
        assert response.status_code == 200
        assert response['X-Access-Version'] == '1'

        response = client.get(f'/v1/users/{staff_user.id}/permission-overrides')
        keys = {o['permission']['key']: o['is_granted'] for o in response.json()['overrides']}
        assert keys == {'settings.view': True, 'customers.delete': False}
        assert User.objects.get(pk=staff_user.pk).access_version == 2

    def test_duplicate_permission_in_bulk_rejected(self, auth_client, admin_user, staff_user, permissions):
        permission_id = str(permissions['settings.view'].id)

        response = auth_client(admin_user).put(
            f'/v1/users/{staff_user.id}/permission-overrides',
            {'overrides': [
                {'permission_id': permission_id, 'is_granted': True},
                {'permission_id': permission_id, 'is_granted': False},
            ]},
            format='json',
        )

        assert response.status_code == 400
        assert response.json()['error']['code'] == 'VALIDATION_ERROR'
        assert not UserPermissionOverride.objects.filter(user=staff_user).exists()

    def test_own_change_reports_new_access_version(self, auth_client, admin_user, permissions):
        response = auth_client(admin_user).put(
            f'/v1/users/{admin_user.id}/permission-overrides',
            {'overrides': [{'permission_id': str(permissions['settings.view'].id), 'is_granted': False}]},
            format='json',
        )

        assert response.status_code == 200
        assert response['X-Access-Version'] == '2'

    def test_staff_cannot_read_others_overrides(self, auth_client, admin_user, staff_user):
        assert_not_authorized(auth_client(staff_user).get(f'/v1/users/{admin_user.id}/permission-overrides'))
        assert auth_client(staff_user).get(f'/v1/users/{staff_user.id}/permission-overrides').status_code == 200


@pytest.mark.django_db(transaction=True)
class TestAuditLogEndpoint:

    def test_mutations_show_up_in_audit_log(self, auth_client, admin_user, organization):
        client = auth_client(admin_user)
        role = Role.objects.get(organization=organization, key='receptionist')

        client.patch(f'/v1/roles/{role.id}', {'description': 'Front desk'}, format='json')

        response = client.get('/v1/audit-logs', {'action': 'role_updated'})
        body = response.json()
        assert response.status_code == 200
        assert body['count'] == 1
        entry = body['results'][0]
        assert entry['actor_email'] == 'admin@acme.test'
        assert entry['old_values']['description'] != 'Front desk'
        assert entry['new_values']['description'] == 'Front desk'
        assert entry['request_id']

    def test_audit_log_requires_permission(self, auth_client, staff_user):
        assert_not_authorized(auth_client(staff_user).get('/v1/audit-logs'))

    def test_page_size_is_capped(self, auth_client, admin_user):
        response = auth_client(admin_user).get('/v1/audit-logs', {'page_size': 10000})

        assert response.json()['page_size'] == 100
        assert AuditLog.objects.filter(organization=admin_user.organization).exists()
