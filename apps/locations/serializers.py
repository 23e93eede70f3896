"""
Location serializers for REST API endpoints.
"""
from rest_framework import serializers
from apps.locations.models import Location


class LocationSerializer(serializers.ModelSerializer):
    """Serializer for Location model."""

    parent_id = serializers.UUIDField(source='parent.id', read_only=True, allow_null=True)

    class Meta:
        model = Location
        fields = ['id', 'name', 'code', 'type', 'parent_id', 'is_active']
        read_only_fields = fields


class LocationSummarySerializer(serializers.ModelSerializer):
    """Compact representation embedded in applications and assignments."""

    class Meta:
        model = Location
        fields = ['id', 'name', 'code', 'type']
        read_only_fields = fields
