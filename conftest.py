"""
Pytest configuration and fixtures.
"""
import logging

import pytest


@pytest.fixture
def api_client():
    """Return DRF API client."""
    from rest_framework.test import APIClient
    return APIClient()


@pytest.fixture
def permissions(db):
    """Seed the permission catalog and return it keyed by permission key."""
    from apps.rbac.models import Permission
    from apps.rbac.seeding import sync_permission_catalog

    sync_permission_catalog()
    return {permission.key: permission for permission in Permission.objects.all()}


@pytest.fixture
def organization(permissions):
    """Create a test organization (default roles are seeded by signal)."""
    from apps.organizations.models import Organization
    return Organization.objects.create(name='Acme Motors', slug='acme-motors')


@pytest.fixture
def other_organization(permissions):
    """Create another organization for isolation tests."""
    from apps.organizations.models import Organization
    return Organization.objects.create(name='Rival Garage', slug='rival-garage')


@pytest.fixture
def make_user(db):
    """Factory for users with a set of role keys."""
    from apps.rbac.models import Role, User, UserRole

    counter = {'n': 0}

    def _make_user(organization, roles=(), email=None, is_active=True):
        counter['n'] += 1
        user = User.objects.create_user(
            email=email or f'user{counter["n"]}@{organization.slug}.test',
            organization=organization,
            password='test-password-123',
            is_active=is_active,
        )
        for role in roles:
            if isinstance(role, str):
                role = Role.objects.get(organization=organization, key=role)
            UserRole.objects.create(user=user, role=role)
        return user

    return _make_user


@pytest.fixture
def make_role(permissions):
    """Factory for custom roles with a set of permission keys."""
    from apps.rbac.models import Role, RolePermission

    def _make_role(organization, key, keys=(), is_system=False, is_active=True):
        role = Role.objects.create(
            organization=organization,
            key=key,
            name=key.replace('_', ' ').title(),
            is_system=is_system,
            is_active=is_active,
        )
        RolePermission.objects.bulk_create([
            RolePermission(role=role, permission=permissions[perm_key]) for perm_key in keys
        ])
        return role

    return _make_role


@pytest.fixture
def admin_user(organization, make_user):
    """User holding the organization's system role."""
    return make_user(organization, roles=['admin'], email='admin@acme.test')


@pytest.fixture
def staff_user(organization, make_user):
    """User holding the customer_service role."""
    return make_user(organization, roles=['customer_service'], email='staff@acme.test')


@pytest.fixture
def foreign_admin(other_organization, make_user):
    """Administrator of the other organization."""
    return make_user(other_organization, roles=['admin'], email='admin@rival.test')


@pytest.fixture
def auth_client():
    """Factory returning an API client authenticated as ``user``."""
    from rest_framework.test import APIClient
    from apps.rbac.services import AuthService

    def _auth_client(user):
        client = APIClient()
        client.credentials(HTTP_AUTHORIZATION=f'Bearer {AuthService.generate_jwt(user)}')
        return client

    return _auth_client


@pytest.fixture
def app_logs(caplog):
    """Capture INFO records from the ``apps`` logger, which does not propagate to root."""
    apps_logger = logging.getLogger('apps')
    apps_logger.addHandler(caplog.handler)
    caplog.set_level(logging.INFO, logger='apps')
    yield caplog
    apps_logger.removeHandler(caplog.handler)
