"""
Application serializers for REST API endpoints.
"""
from rest_framework import serializers

from apps.applications.models import Application, ApprovalEntry
from apps.locations.models import Location
from apps.locations.serializers import LocationSummarySerializer
from apps.rbac.models import Role
from apps.rbac.serializers import UserSummarySerializer


class ApprovalEntrySerializer(serializers.ModelSerializer):
    """Serializer for one step of the approval trail."""

    assigned_to = UserSummarySerializer(read_only=True)

    class Meta:
        model = ApprovalEntry
        fields = [
            'sequence', 'action', 'from_level', 'level', 'status', 'assigned_to',
            'remarks', 'comments', 'deadline', 'request_id', 'created_at',
        ]
        read_only_fields = fields


class ApplicationSerializer(serializers.ModelSerializer):
    """Serializer for Application model."""

    applicant = UserSummarySerializer(read_only=True)
    state = LocationSummarySerializer(read_only=True)
    district = LocationSummarySerializer(read_only=True)
    area = LocationSummarySerializer(read_only=True)
    unit = LocationSummarySerializer(read_only=True)

    class Meta:
        model = Application
        fields = [
            'id', 'application_id', 'applicant', 'title', 'description',
            'scheme_id', 'project_id', 'requested_amount', 'approved_amount',
            'status', 'current_level', 'version', 'state', 'district', 'area',
            'unit', 'sla_deadline', 'sla_status', 'submitted_at', 'decided_at',
            'created_at', 'updated_at',
        ]
        read_only_fields = fields


class ApplicationDetailSerializer(ApplicationSerializer):
    """Application with its full approval trail."""

    approval_entries = ApprovalEntrySerializer(many=True, read_only=True)

    class Meta(ApplicationSerializer.Meta):
        fields = ApplicationSerializer.Meta.fields + ['approval_entries']
        read_only_fields = fields


class ApplicationCreateSerializer(serializers.Serializer):
    """Serializer for submitting an application."""

    title = serializers.CharField(max_length=255, required=True)
    description = serializers.CharField(required=False, allow_blank=True, default='')
    requested_amount = serializers.DecimalField(
        max_digits=12, decimal_places=2, min_value=0, required=False, default=0
    )
    scheme_id = serializers.CharField(max_length=64, required=False, allow_blank=True, default='')
    project_id = serializers.CharField(max_length=64, required=False, allow_blank=True, default='')
    unit_id = serializers.UUIDField(required=True, help_text="Unit the applicant belongs to")
    remarks = serializers.CharField(required=False, allow_blank=True, default='')

    def validate(self, data):
        unit = Location.objects.active().filter(id=data['unit_id'], type=Location.TYPE_UNIT).first()
        if unit is None:
            raise serializers.ValidationError({'unit_id': "Unit not found."})
        data['unit'] = unit
        if not data.get('scheme_id') and not data.get('project_id'):
            raise serializers.ValidationError("Either scheme_id or project_id is required.")
        return data


class TransitionSerializer(serializers.Serializer):
    """Serializer for a workflow transition request."""

    ACTION_CHOICES = [
        choice for choice in ApprovalEntry.ACTION_CHOICES
        if choice[0] != ApprovalEntry.ACTION_SUBMIT
    ]

    action = serializers.ChoiceField(choices=ACTION_CHOICES, required=True)
    remarks = serializers.CharField(required=False, allow_blank=True, default='')
    comments = serializers.CharField(required=False, allow_blank=True, default='')
    request_id = serializers.CharField(
        max_length=64,
        required=False,
        allow_null=True,
        default=None,
        help_text="Client request id; resending it does not repeat the transition"
    )
    level = serializers.ChoiceField(
        choices=Role.APPROVAL_LEVEL_CHOICES,
        required=False,
        allow_null=True,
        default=None
    )
    expected_version = serializers.IntegerField(min_value=1, required=False, allow_null=True, default=None)
