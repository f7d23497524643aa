"""
Tests for OrganizationContextMiddleware and TenantIsolationMiddleware.
"""
import uuid
from datetime import datetime, timedelta, timezone as dt_timezone
from unittest.mock import patch

import jwt
import pytest
from django.conf import settings
from django.db import DatabaseError
from rest_framework.test import APIClient

from apps.rbac.models import Role


def client_with_token(payload):
    client = APIClient()
    token = jwt.encode(payload, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)
    client.credentials(HTTP_AUTHORIZATION=f'Bearer {token}')
    return client


def claims(user, **overrides):
    now = datetime.now(dt_timezone.utc)
    payload = {
        'user_id': str(user.id),
        'organization_id': str(user.organization_id),
        'exp': now + timedelta(hours=1),
        'iat': now,
    }
    payload.update(overrides)
    return payload


@pytest.mark.django_db
class TestOrganizationContextMiddleware:

    def test_valid_token_sets_context(self, staff_user):
        response = client_with_token(claims(staff_user)).get('/v1/permissions/me')

        assert response.status_code == 200
        assert response.json()['user_id'] == str(staff_user.id)
        assert response['X-Request-ID']

    def test_organization_claim_must_match_user_row(self, staff_user, other_organization):
        with patch('apps.rbac.middleware.SecurityLogger.log_suspicious_activity') as log:
            response = client_with_token(
                claims(staff_user, organization_id=str(other_organization.id))
            ).get('/v1/permissions/me')

        assert response.status_code == 401
        log.assert_called_once()

    def test_expired_token_rejected(self, staff_user):
        expired = datetime.now(dt_timezone.utc) - timedelta(minutes=5)
        response = client_with_token(claims(staff_user, exp=expired)).get('/v1/permissions/me')

        assert response.status_code == 401
        assert response['WWW-Authenticate'] == 'Bearer realm="api"'

    def test_token_signed_with_other_key_rejected(self, staff_user):
        client = APIClient()
        token = jwt.encode(claims(staff_user), 'x' * 40, algorithm='HS256')
        client.credentials(HTTP_AUTHORIZATION=f'Bearer {token}')

        assert client.get('/v1/permissions/me').status_code == 401

    def test_unknown_user_rejected(self, staff_user):
        response = client_with_token(claims(staff_user, user_id=str(uuid.uuid4()))).get('/v1/permissions/me')
        assert response.status_code == 401

    def test_malformed_user_id_rejected(self, staff_user):
        response = client_with_token(claims(staff_user, user_id='not-a-uuid')).get('/v1/permissions/me')
        assert response.status_code == 401

    def test_inactive_organization_denied(self, staff_user, organization):
        organization.is_active = False
        organization.save()

        response = client_with_token(claims(staff_user)).get('/v1/permissions/me')

        assert response.status_code == 403
        assert response.json()['error']['code'] == 'NOT_AUTHORIZED'

    def test_user_lookup_failure_is_store_error(self, staff_user):
        client = client_with_token(claims(staff_user))

        with patch('apps.rbac.middleware.User.objects.select_related', side_effect=DatabaseError('down')):
            response = client.get('/v1/permissions/me')

        assert response.status_code == 503
        assert response.json()['error']['code'] == 'STORE_ERROR'


@pytest.mark.django_db
class TestTenantIsolationMiddleware:

    def test_own_role_passes(self, auth_client, admin_user, organization):
        role = Role.objects.get(organization=organization, key='receptionist')
        assert auth_client(admin_user).get(f'/v1/roles/{role.id}').status_code == 200

    def test_global_role_passes(self, auth_client, admin_user):
        role = Role.objects.create(organization=None, key='auditor', name='Auditor')
        assert auth_client(admin_user).get(f'/v1/roles/{role.id}').status_code == 200

    def test_foreign_user_logged_and_denied(self, auth_client, admin_user, foreign_admin):
        with patch('apps.rbac.middleware.SecurityLogger.log_tenant_mismatch') as log:
            response = auth_client(admin_user).get(f'/v1/users/{foreign_admin.id}/roles')

        assert response.status_code == 403
        log.assert_called_once()
        assert log.call_args.kwargs['resource_type'] == 'User'

    def test_lookup_failure_is_store_error(self, auth_client, admin_user, organization):
        role = Role.objects.get(organization=organization, key='receptionist')
        client = auth_client(admin_user)

        with patch.object(Role.objects, 'filter', side_effect=DatabaseError('down')):
            response = client.get(f'/v1/roles/{role.id}')

        assert response.status_code == 503
