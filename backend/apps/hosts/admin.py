from django.contrib import admin
from .models import ManagedHost


@admin.register(ManagedHost)
class ManagedHostAdmin(admin.ModelAdmin):
    list_display = ['name', 'host', 'port', 'username', 'status', 'is_deployed', 'deployed_version', 'created_by', 'created_at']
    list_filter = ['status', 'is_deployed', 'auth_type', 'created_at']
    search_fields = ['name', 'host', 'username']
    exclude = ['password', 'private_key', 'callback_api_key']
    readonly_fields = ['last_heartbeat', 'uptime_seconds', 'deployed_version', 'last_error']
