"""
Django admin configuration for RBAC app.
"""
from django.contrib import admin
from django.contrib.auth.admin import UserAdmin as BaseUserAdmin
from .models import (
    AssignmentHistory,
    AssignmentPermissionOverride,
    AuditLog,
    Permission,
    Role,
    RolePermission,
    User,
    UserRoleAssignment,
)


@admin.register(User)
class CustomUserAdmin(BaseUserAdmin):
    """
    Custom admin for our User model.

    Adapted to work with email-based authentication (no username field).
    """
    list_display = ['email', 'first_name', 'last_name', 'is_active', 'is_superuser', 'created_at']
    list_filter = ['is_active', 'is_superuser', 'created_at']
    search_fields = ['email', 'first_name', 'last_name']
    ordering = ['-created_at']

    fieldsets = (
        (None, {
            'fields': ('email', 'password_hash')
        }),
        ('Personal Info', {
            'fields': ('first_name', 'last_name')
        }),
        ('Permissions', {
            'fields': ('is_active', 'is_superuser')
        }),
        ('Activity', {
            'fields': ('last_login_at', 'created_at', 'updated_at')
        }),
    )

    add_fieldsets = (
        (None, {
            'classes': ('wide',),
            'fields': ('email', 'password_hash', 'is_active', 'is_superuser'),
        }),
    )

    readonly_fields = ['created_at', 'updated_at', 'last_login_at']
    filter_horizontal = ()


class RolePermissionInline(admin.TabularInline):
    model = RolePermission
    extra = 0
    autocomplete_fields = ['permission']


@admin.register(Role)
class RoleAdmin(admin.ModelAdmin):
    list_display = ['name', 'level', 'category', 'approval_level', 'has_global_scope', 'requires_approval', 'is_system', 'is_active']
    list_filter = ['category', 'approval_level', 'is_system', 'is_active']
    search_fields = ['name', 'display_name']
    ordering = ['level', 'name']
    inlines = [RolePermissionInline]


@admin.register(Permission)
class PermissionAdmin(admin.ModelAdmin):
    list_display = ['name', 'module', 'action', 'scope', 'security_level', 'audit_required', 'is_active']
    list_filter = ['module', 'scope', 'security_level', 'audit_required', 'is_active']
    search_fields = ['name', 'display_name']
    filter_horizontal = ['requires', 'implies', 'conflicts']


class AssignmentPermissionOverrideInline(admin.TabularInline):
    model = AssignmentPermissionOverride
    fk_name = 'assignment'
    extra = 0
    autocomplete_fields = ['permission']


@admin.register(UserRoleAssignment)
class UserRoleAssignmentAdmin(admin.ModelAdmin):
    list_display = ['user', 'role', 'approval_status', 'is_active', 'is_primary', 'valid_from', 'valid_until']
    list_filter = ['approval_status', 'is_active', 'is_primary', 'role']
    search_fields = ['user__email', 'role__name']
    raw_id_fields = ['user', 'assigned_by', 'approved_by']
    filter_horizontal = ['regions']
    inlines = [AssignmentPermissionOverrideInline]


class ReadOnlyAdmin(admin.ModelAdmin):
    """Append-only records: viewable, never editable."""

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(AssignmentHistory)
class AssignmentHistoryAdmin(ReadOnlyAdmin):
    list_display = ['assignment', 'action', 'performed_by', 'created_at']
    list_filter = ['action', 'created_at']
    search_fields = ['assignment__user__email', 'reason']


@admin.register(AuditLog)
class AuditLogAdmin(ReadOnlyAdmin):
    list_display = ['action', 'user', 'target_type', 'target_id', 'ip_address', 'request_id', 'created_at']
    list_filter = ['action', 'target_type', 'created_at']
    search_fields = ['action', 'target_id', 'request_id', 'user__email']
