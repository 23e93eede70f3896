"""
Django admin configuration for applications.

Applications change only through the workflow, so the admin is read-only.
"""
from django.contrib import admin

from apps.applications.models import Application, ApprovalEntry
from apps.rbac.admin import ReadOnlyAdmin


class ApprovalEntryInline(admin.TabularInline):
    model = ApprovalEntry
    extra = 0
    can_delete = False
    fields = ['sequence', 'action', 'from_level', 'level', 'status', 'assigned_to', 'remarks', 'deadline', 'created_at']
    readonly_fields = fields
    ordering = ['sequence']

    def has_add_permission(self, request, obj=None):
        return False


@admin.register(Application)
class ApplicationAdmin(ReadOnlyAdmin):
    list_display = [
        'application_id', 'applicant', 'status', 'current_level',
        'sla_status', 'sla_deadline', 'submitted_at',
    ]
    list_filter = ['status', 'current_level', 'sla_status']
    search_fields = ['application_id', 'title', 'applicant__email']
    inlines = [ApprovalEntryInline]


@admin.register(ApprovalEntry)
class ApprovalEntryAdmin(ReadOnlyAdmin):
    list_display = ['application', 'sequence', 'action', 'level', 'status', 'assigned_to', 'created_at']
    list_filter = ['action', 'level', 'status']
    search_fields = ['application__application_id', 'request_id']
