"""
Django admin configuration for locations.
"""
from django.contrib import admin
from apps.locations.models import Location


@admin.register(Location)
class LocationAdmin(admin.ModelAdmin):
    """Admin interface for the location hierarchy."""

    list_display = ['name', 'code', 'type', 'parent', 'is_active']
    list_filter = ['type', 'is_active']
    search_fields = ['name', 'code']
    raw_id_fields = ['parent']
    ordering = ['type', 'name']
    readonly_fields = ['id', 'created_at', 'updated_at']
