"""
Management command to seed default roles for organizations.
"""
from django.core.management.base import BaseCommand, CommandError

from apps.organizations.models import Organization
from apps.rbac.seeding import seed_default_roles, sync_permission_catalog


class Command(BaseCommand):
    help = 'Seed default roles (admin, customer_service, receptionist) for organizations'

    def add_arguments(self, parser):
        group = parser.add_mutually_exclusive_group(required=True)
        group.add_argument(
            '--organization',
            type=str,
            help='Organization slug',
        )
        group.add_argument(
            '--all',
            action='store_true',
            help='Seed every organization',
        )

    def handle(self, *args, **options):
        sync_permission_catalog()

        if options['all']:
            organizations = Organization.objects.all()
        else:
            organization = Organization.objects.by_slug(options['organization'])
            if not organization:
                raise CommandError(f"Organization not found: {options['organization']}")
            organizations = [organization]

        for organization in organizations:
            created = seed_default_roles(organization)
            if created:
                self.stdout.write(
                    self.style.SUCCESS(f"✓ {organization.slug}: created {', '.join(created)}")
                )
            else:
                self.stdout.write(f'  {organization.slug}: default roles already present')
