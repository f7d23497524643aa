"""
Sentry utilities for adding context and breadcrumbs.

Every helper is a no-op when SENTRY_DSN is not configured.
"""
import sentry_sdk
from django.conf import settings


def set_organization_context(organization):
    """
    Set organization context in Sentry for error tracking.

    Args:
        organization: Organization model instance
    """
    if not settings.SENTRY_DSN:
        return

    sentry_sdk.set_context("organization", {
        "id": str(organization.id),
        "slug": organization.slug,
        "is_active": organization.is_active,
    })
    sentry_sdk.set_tag("organization_id", str(organization.id))


def set_user_context(user):
    """
    Set user context in Sentry. Only ids are sent, never email addresses.

    Args:
        user: User model instance
    """
    if not settings.SENTRY_DSN:
        return

    sentry_sdk.set_user({
        "id": str(user.id),
        "organization_id": str(user.organization_id),
        "is_active": user.is_active,
    })


def add_breadcrumb(category, message, level="info", data=None):
    """
    Add a breadcrumb to Sentry for debugging.

    Args:
        category: Category of the breadcrumb (e.g., "rbac", "audit", "task")
        message: Human-readable message
        level: Severity level (debug, info, warning, error)
        data: Optional dictionary of additional data
    """
    if not settings.SENTRY_DSN:
        return

    sentry_sdk.add_breadcrumb(
        category=category,
        message=message,
        level=level,
        data=data or {}
    )


def capture_exception(exception, **kwargs):
    """
    Capture an exception in Sentry with optional context.

    Args:
        exception: The exception to capture
        **kwargs: Additional context to attach
    """
    if not settings.SENTRY_DSN:
        return

    with sentry_sdk.new_scope() as scope:
        for key, value in kwargs.items():
            scope.set_context(key, value)
        sentry_sdk.capture_exception(exception)


def start_transaction(name, op):
    """
    Start a Sentry transaction for performance monitoring.

    Returns:
        Transaction object or None if Sentry is not configured
    """
    if not settings.SENTRY_DSN:
        return None

    return sentry_sdk.start_transaction(name=name, op=op)
