"""
Management command to seed canonical permissions.

Syncs the registry catalog into the Permission table. This command is
idempotent and safe to re-run.
"""
from django.core.management.base import BaseCommand

from apps.rbac.models import Permission
from apps.rbac.seeding import sync_permission_catalog


class Command(BaseCommand):
    help = 'Seed canonical permissions (idempotent)'

    def add_arguments(self, parser):
        parser.add_argument(
            '--summary',
            action='store_true',
            help='Print the catalog grouped by category after syncing',
        )

    def handle(self, *args, **options):
        self.stdout.write('Seeding canonical permissions...\n')

        counts = sync_permission_catalog()

        self.stdout.write(
            self.style.SUCCESS(
                f"✓ Seeding complete: {counts['created']} created, {counts['updated']} updated, "
                f"{counts['deactivated']} deactivated"
            )
        )

        if not options['summary']:
            return

        self.stdout.write('\n' + '=' * 70)
        self.stdout.write('Permissions Summary by Category:')
        self.stdout.write('=' * 70)

        categories = Permission.objects.active().values_list('category', flat=True).distinct().order_by('category')
        for category in categories:
            self.stdout.write(f'\n{category.upper()}:')
            for perm in Permission.objects.catalog(category=category):
                self.stdout.write(f'  • {perm.key:<40} {perm.label}')

        self.stdout.write(f'\nTotal active permissions: {Permission.objects.active().count()}')
