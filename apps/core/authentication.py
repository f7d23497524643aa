"""
Custom DRF authentication classes.
"""
from rest_framework.authentication import BaseAuthentication


class MiddlewareAuthentication(BaseAuthentication):
    """
    DRF authentication class that uses the user set by
    OrganizationContextMiddleware.

    The middleware verifies the bearer token and loads the user; this class
    hands that user to DRF so views see ``request.user``.
    """

    def authenticate(self, request):
        django_request = request._request

        user = getattr(django_request, 'user', None)
        if user is not None and user.is_authenticated:
            return (user, None)

        return None

    def authenticate_header(self, request):
        # Makes DRF answer unauthenticated requests with 401 instead of 403
        return 'Bearer realm="api"'
