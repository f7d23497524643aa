"""
Tests for the permission key registry.
"""
import pytest

from apps.core.exceptions import ValidationFailed
from apps.rbac.registry import (
    DEFAULT_ROLES,
    PERMISSION_CATALOG,
    Action,
    Resource,
    is_valid_key,
    parse_key,
    permission_keys,
    validate_keys,
    validate_resource,
)


class TestRegistry:

    def test_catalog_keys_are_unique_and_well_formed(self):
        keys = permission_keys()
        assert len(keys) == len(set(keys))
        for entry in PERMISSION_CATALOG:
            assert entry['key'] == f"{entry['resource']}.{entry['action']}"
            assert entry['resource'] in Resource.values
            assert entry['action'] in Action.values

    def test_default_roles_reference_known_keys(self):
        for config in DEFAULT_ROLES.values():
            if config['permissions'] == 'ALL':
                continue
            assert all(is_valid_key(key) for key in config['permissions'])

    def test_only_admin_is_system_role(self):
        assert [key for key, config in DEFAULT_ROLES.items() if config['is_system']] == ['admin']

    def test_parse_key(self):
        assert parse_key('work_orders.complete') == ('work_orders', 'complete')

    @pytest.mark.parametrize('key', ['customers', 'customers.view.all', 'customers.fly', 'ghosts.view', None])
    def test_parse_key_rejects(self, key):
        with pytest.raises(ValidationFailed):
            parse_key(key)

    def test_validate_keys_reports_every_unknown_key(self):
        with pytest.raises(ValidationFailed) as exc_info:
            validate_keys(['customers.view', 'b.fly', 'a.fly'])
        assert exc_info.value.details == {'unknown_permissions': ['a.fly', 'b.fly']}

    def test_validate_resource(self):
        assert validate_resource('invoices') == 'invoices'
        with pytest.raises(ValidationFailed):
            validate_resource('spaceships')
