from django.contrib import admin
from django.contrib.auth.admin import UserAdmin as BaseUserAdmin
from .models import User


@admin.register(User)
class UserAdmin(BaseUserAdmin):
    list_display = ['username', 'email', 'is_staff', 'date_joined']
    readonly_fields = ['license_key']
    fieldsets = BaseUserAdmin.fieldsets + (
        ('许可证', {'fields': ('license_key',)}),
    )
