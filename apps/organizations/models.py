"""
Organization model - the tenant boundary.

Every user, role and audit entry belongs to exactly one organization; the
permission catalog is global.
"""
from django.db import models
from apps.core.models import BaseModel


class OrganizationManager(models.Manager):
    """Manager for organization queries."""

    def active(self):
        """Return only active organizations."""
        return self.filter(is_active=True)

    def by_slug(self, slug):
        """Find organization by slug."""
        return self.filter(slug=slug).first()


class Organization(BaseModel):
    """
    A workshop business account.

    Creating an organization seeds its default roles (see apps.rbac.signals).
    """

    name = models.CharField(
        max_length=255,
        help_text="Organization display name"
    )
    slug = models.SlugField(
        max_length=100,
        unique=True,
        help_text="URL-safe unique identifier"
    )
    is_active = models.BooleanField(
        default=True,
        db_index=True,
        help_text="Inactive organizations cannot authenticate"
    )

    objects = OrganizationManager()

    class Meta:
        db_table = 'organizations'
        ordering = ['name']

    def __str__(self):
        return f"{self.name} ({self.slug})"
