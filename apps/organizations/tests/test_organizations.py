"""
Tests for the Organization model.
"""
import pytest
from django.db.models import ProtectedError

from apps.organizations.models import Organization
from apps.rbac.models import Role


@pytest.mark.django_db
class TestOrganization:

    def test_active_and_by_slug(self, organization, other_organization):
        other_organization.is_active = False
        other_organization.save()

        assert list(Organization.objects.active()) == [organization]
        assert Organization.objects.by_slug('rival-garage') == other_organization
        assert Organization.objects.by_slug('missing') is None

    def test_str(self, organization):
        assert str(organization) == 'Acme Motors (acme-motors)'

    def test_roles_are_scoped_per_organization(self, organization, other_organization):
        ours = set(Role.objects.filter(organization=organization).values_list('id', flat=True))
        theirs = set(Role.objects.filter(organization=other_organization).values_list('id', flat=True))

        assert ours and theirs
        assert not ours & theirs

    def test_organization_with_users_cannot_be_deleted(self, organization, staff_user):
        with pytest.raises(ProtectedError):
            organization.delete()
