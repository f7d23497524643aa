"""
Tests for permission-key enforcement helpers.
"""
from types import SimpleNamespace
from unittest.mock import patch

import pytest

from apps.core.exceptions import Forbidden
from apps.core.permissions import HasPermissionKeys, ensure_permissions, requires_permissions


class FakeAccess:

    def __init__(self, *keys):
        self.keys = set(keys)
        self.user_id = 'u-1'
        self.organization_id = 'o-1'

    def has_permission(self, key):
        return key in self.keys


def make_request(method='GET', access=None, organization_id='o-1'):
    return SimpleNamespace(
        method=method,
        path='/v1/roles',
        access=access,
        organization=SimpleNamespace(id=organization_id) if organization_id else None,
        user=SimpleNamespace(id='u-1'),
    )


@requires_permissions('roles.view')
class RoleView:

    def get(self, request):
        pass

    @requires_permissions('roles.create', 'roles.view')
    def post(self, request):
        pass


class OpenView:

    def get(self, request):
        pass


@patch('apps.core.logging.SecurityLogger.log_permission_denied')
class TestHasPermissionKeys:

    def test_class_level_keys(self, log_denied):
        permission = HasPermissionKeys()

        assert permission.has_permission(make_request(access=FakeAccess('roles.view')), RoleView())
        assert not permission.has_permission(make_request(access=FakeAccess()), RoleView())
        log_denied.assert_called_once()

    def test_method_level_keys_replace_class_keys(self, log_denied):
        permission = HasPermissionKeys()

        request = make_request('POST', access=FakeAccess('roles.view'))
        assert not permission.has_permission(request, RoleView())

        request = make_request('POST', access=FakeAccess('roles.view', 'roles.create'))
        assert permission.has_permission(request, RoleView())

    def test_no_keys_required(self, log_denied):
        assert HasPermissionKeys().has_permission(make_request(access=None), OpenView())

    def test_missing_access_handle_denied(self, log_denied):
        assert not HasPermissionKeys().has_permission(make_request(access=None), RoleView())


@patch('apps.core.logging.SecurityLogger.log_tenant_mismatch')
class TestObjectPermission:

    def test_own_row(self, log_mismatch):
        obj = SimpleNamespace(organization_id='o-1', id='r-1')
        assert HasPermissionKeys().has_object_permission(make_request(), RoleView(), obj)

    def test_global_row(self, log_mismatch):
        obj = SimpleNamespace(organization_id=None, id='r-1')
        assert HasPermissionKeys().has_object_permission(make_request(), RoleView(), obj)

    def test_foreign_row(self, log_mismatch):
        obj = SimpleNamespace(organization_id='o-2', id='r-1')
        assert not HasPermissionKeys().has_object_permission(make_request(), RoleView(), obj)
        log_mismatch.assert_called_once()


@patch('apps.core.logging.SecurityLogger.log_permission_denied')
def test_ensure_permissions(log_denied):
    ensure_permissions(make_request(access=FakeAccess('users.view')), 'users.view')

    with pytest.raises(Forbidden) as exc_info:
        ensure_permissions(make_request(access=FakeAccess('users.view')), 'users.view', 'users.update')

    assert exc_info.value.details == {'missing_permissions': ['users.update']}
    log_denied.assert_called_once()
