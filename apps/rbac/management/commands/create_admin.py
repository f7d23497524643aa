"""
Management command to provision an administrator for an organization.

Assigns the organization's system role to the user and prints a bearer
token for API access.
"""
from django.core.management.base import BaseCommand, CommandError
from django.db import transaction
from django.utils.text import slugify

from apps.organizations.models import Organization
from apps.rbac.models import Role, User, UserRole
from apps.rbac.seeding import seed_default_roles
from apps.rbac.services import AuditService, AuthService


class Command(BaseCommand):
    help = 'Create or promote an administrator for an organization'

    def add_arguments(self, parser):
        parser.add_argument(
            '--organization',
            type=str,
            required=True,
            help='Organization slug (or name with --create-organization)',
        )
        parser.add_argument(
            '--email',
            type=str,
            required=True,
            help='User email address',
        )
        parser.add_argument(
            '--create-organization',
            action='store_true',
            help='Create the organization if it does not exist',
        )
        parser.add_argument(
            '--password',
            type=str,
            help='Password for a new user',
        )
        parser.add_argument('--first-name', type=str, default='')
        parser.add_argument('--last-name', type=str, default='')

    def handle(self, *args, **options):
        organization_ref = options['organization']
        email = options['email']

        with transaction.atomic():
            organization = Organization.objects.by_slug(slugify(organization_ref))
            if not organization:
                if not options['create_organization']:
                    raise CommandError(
                        f'Organization not found: {organization_ref}\n'
                        f'Use --create-organization to create it'
                    )
                organization = Organization.objects.create(
                    name=organization_ref,
                    slug=slugify(organization_ref),
                )
                self.stdout.write(self.style.SUCCESS(f'✓ Created organization: {organization.slug}'))

            admin_role = Role.objects.system_roles(organization).first()
            if admin_role is None:
                seed_default_roles(organization)
                admin_role = Role.objects.system_roles(organization).first()

            user = User.objects.by_email(email)
            if user is None:
                user = User.objects.create_user(
                    email=email,
                    organization=organization,
                    password=options.get('password'),
                    first_name=options['first_name'],
                    last_name=options['last_name'],
                )
                self.stdout.write(self.style.SUCCESS(f'✓ Created user: {email}'))
            elif user.organization_id != organization.id:
                raise CommandError(f'User {email} belongs to another organization')

            user_role, created = UserRole.objects.get_or_create(user=user, role=admin_role)
            if created:
                User.objects.bump_access_version([user.pk])
                AuditService.record_on_commit(
                    None,
                    'role_assigned',
                    'user_role',
                    resource_id=user_role.pk,
                    new_values={'user_id': str(user.pk), 'role_id': str(admin_role.pk), 'role': admin_role.key},
                    organization=organization,
                )
                self.stdout.write(self.style.SUCCESS(f'✓ Assigned {admin_role.name} role'))
            else:
                self.stdout.write(f'  {email} already holds {admin_role.name}')

        self.stdout.write('\nBearer token:')
        self.stdout.write(AuthService.generate_jwt(user))
