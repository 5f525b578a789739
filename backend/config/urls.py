"""
URL configuration for HostPilot project.
"""
from django.contrib import admin
from django.urls import path, include

urlpatterns = [
    path('admin/', admin.site.urls),
    path('api/', include('apps.health.urls')),  # Health check
    path('api/hosts/', include('apps.hosts.urls')),
    path('api/deployments/', include('apps.deployments.urls')),
]
