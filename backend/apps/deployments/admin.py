from django.contrib import admin
from .models import Deployment, DeploymentLogEntry, DeploymentSource


class DeploymentLogEntryInline(admin.TabularInline):
    model = DeploymentLogEntry
    extra = 0
    readonly_fields = ['timestamp', 'level', 'message']
    can_delete = False


@admin.register(Deployment)
class DeploymentAdmin(admin.ModelAdmin):
    list_display = ['id', 'host', 'deployment_type', 'triggered_by', 'status', 'to_version', 'created_at']
    list_filter = ['deployment_type', 'triggered_by', 'status', 'created_at']
    search_fields = ['host__name', 'host__host']
    readonly_fields = ['status', 'started_at', 'completed_at', 'error_message']
    inlines = [DeploymentLogEntryInline]


@admin.register(DeploymentSource)
class DeploymentSourceAdmin(admin.ModelAdmin):
    list_display = ['repo_url', 'branch', 'toolchain_version', 'service_name', 'updated_at']

    def has_add_permission(self, request):
        # 单例
        return not DeploymentSource.objects.exists()

    def has_delete_permission(self, request, obj=None):
        return False
