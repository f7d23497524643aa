"""
RBAC signals for automatic role seeding.

Seeds the default roles when a new organization is created.
"""
from django.db.models.signals import post_save
from django.dispatch import receiver


@receiver(post_save, sender='organizations.Organization')
def seed_roles_on_organization_creation(sender, instance, created, raw=False, **kwargs):
    """Seed the default roles for a newly created organization."""
    if not created or raw:
        return

    # Import here to avoid circular imports
    from apps.rbac.seeding import seed_default_roles
    from apps.rbac.services import AuditService

    roles_created = seed_default_roles(instance)

    AuditService.record_on_commit(
        None,
        'organization_roles_seeded',
        'organization',
        resource_id=instance.pk,
        new_values={'roles_created': roles_created, 'trigger': 'post_save_signal'},
        organization=instance.pk,
    )
