"""
URL configuration for the workshop access-control service.
"""
from django.urls import path, include
from drf_spectacular.views import SpectacularAPIView, SpectacularSwaggerView

urlpatterns = [
    # API Documentation
    path('schema/', SpectacularAPIView.as_view(), name='schema'),
    path('schema/swagger/', SpectacularSwaggerView.as_view(url_name='schema'), name='swagger-ui'),

    # API v1
    path('v1/', include('apps.core.urls')),

    # RBAC endpoints
    path('v1/', include('apps.rbac.urls')),  # Permissions, roles, overrides, audit logs
]
