"""
RBAC serializers for REST API endpoints.

Provides serialization for:
- Authentication (login, profile)
- Permissions and resolved permissions
- Roles (read, create, update)
- Role assignments, approval decisions and permission overrides
- Audit logs
"""
from rest_framework import serializers

from apps.locations.serializers import LocationSummarySerializer
from apps.rbac.models import (
    AssignmentHistory, AssignmentPermissionOverride, AuditLog, Permission,
    Role, User, UserRoleAssignment,
)


# ===== AUTHENTICATION SERIALIZERS =====

class LoginSerializer(serializers.Serializer):
    """Serializer for user login."""

    email = serializers.EmailField(required=True)
    password = serializers.CharField(
        required=True,
        write_only=True,
        style={'input_type': 'password'}
    )

    def validate_email(self, value):
        return User.objects.normalize_email(value)


class UserSerializer(serializers.ModelSerializer):
    """Serializer for User model (public fields only)."""

    full_name = serializers.CharField(source='get_full_name', read_only=True)

    class Meta:
        model = User
        fields = ['id', 'email', 'first_name', 'last_name', 'full_name', 'is_active', 'last_login_at']
        read_only_fields = fields


class UserSummarySerializer(serializers.ModelSerializer):
    """Compact user representation embedded in other resources."""

    class Meta:
        model = User
        fields = ['id', 'email']
        read_only_fields = fields


# ===== PERMISSION SERIALIZERS =====

class PermissionSerializer(serializers.ModelSerializer):
    """Serializer for Permission model, including conditions and dependencies."""

    conditions = serializers.SerializerMethodField()
    requires = serializers.SlugRelatedField(many=True, read_only=True, slug_field='name')
    implies = serializers.SlugRelatedField(many=True, read_only=True, slug_field='name')
    conflicts = serializers.SlugRelatedField(many=True, read_only=True, slug_field='name')

    class Meta:
        model = Permission
        fields = [
            'id', 'name', 'display_name', 'description', 'module', 'action',
            'scope', 'security_level', 'audit_required', 'is_active',
            'conditions', 'requires', 'implies', 'conflicts',
        ]
        read_only_fields = fields

    def get_conditions(self, obj):
        return obj.get_conditions().as_dict()


class ResolvedPermissionSerializer(serializers.Serializer):
    """Serializer for a permission in a user's effective set."""

    name = serializers.CharField()
    module = serializers.CharField()
    action = serializers.CharField()
    scope = serializers.CharField()
    security_level = serializers.CharField()
    audit_required = serializers.BooleanField()
    role_level = serializers.IntegerField()


# ===== ROLE SERIALIZERS =====

class RoleSerializer(serializers.ModelSerializer):
    """Serializer for Role model."""

    permission_count = serializers.SerializerMethodField()
    permissions = serializers.SerializerMethodField()

    class Meta:
        model = Role
        fields = [
            'id', 'name', 'display_name', 'description', 'level', 'category',
            'allowed_scope_levels', 'default_scope_level', 'allow_multiple_scopes',
            'max_scopes', 'max_users', 'requires_approval', 'is_deletable',
            'is_modifiable', 'is_system', 'is_active', 'approval_level',
            'has_global_scope', 'permission_count', 'permissions',
            'created_at', 'updated_at',
        ]
        read_only_fields = fields

    def get_permission_count(self, obj):
        return obj.role_permissions.count()

    def get_permissions(self, obj):
        """Permission names, only when requested or on detail views."""
        if not self.context.get('include_permissions'):
            return None
        return sorted(obj.get_permissions().values_list('name', flat=True))


class RoleWriteSerializer(serializers.Serializer):
    """
    Serializer for creating and updating custom roles.

    Only the fields below may be set through the API; system flags and
    global scope are never writable.
    """

    name = serializers.RegexField(
        r'^[a-z][a-z0-9_]*$',
        max_length=100,
        required=True,
        error_messages={'invalid': 'Use lowercase letters, digits and underscores.'}
    )
    display_name = serializers.CharField(max_length=150, required=True)
    description = serializers.CharField(required=False, allow_blank=True)
    level = serializers.IntegerField(min_value=1, max_value=6, required=True)
    category = serializers.ChoiceField(choices=Role.CATEGORY_CHOICES, required=False)
    allowed_scope_levels = serializers.ListField(
        child=serializers.ChoiceField(choices=Role.SCOPE_LEVEL_CHOICES),
        required=False
    )
    default_scope_level = serializers.ChoiceField(
        choices=Role.SCOPE_LEVEL_CHOICES, required=False, allow_blank=True
    )
    allow_multiple_scopes = serializers.BooleanField(required=False)
    max_scopes = serializers.IntegerField(min_value=1, required=False, allow_null=True)
    max_users = serializers.IntegerField(min_value=1, required=False, allow_null=True)
    requires_approval = serializers.BooleanField(required=False)
    approval_level = serializers.ChoiceField(
        choices=Role.APPROVAL_LEVEL_CHOICES, required=False, allow_null=True
    )
    is_active = serializers.BooleanField(required=False)
    permissions = serializers.ListField(
        child=serializers.CharField(max_length=100),
        required=False,
        help_text="Permission names granted by the role"
    )

    def validate_allowed_scope_levels(self, value):
        if Role.SCOPE_LEVEL_GLOBAL in value:
            raise serializers.ValidationError("Custom roles cannot use global scope.")
        return value


# ===== ASSIGNMENT SERIALIZERS =====

class AssignmentOverrideSerializer(serializers.ModelSerializer):
    """Serializer for AssignmentPermissionOverride model."""

    permission = serializers.CharField(source='permission.name', read_only=True)
    granted_by = UserSummarySerializer(read_only=True)

    class Meta:
        model = AssignmentPermissionOverride
        fields = ['id', 'permission', 'granted', 'granted_by', 'reason', 'expires_at', 'created_at']
        read_only_fields = fields


class AssignmentHistorySerializer(serializers.ModelSerializer):
    """Serializer for AssignmentHistory entries."""

    performed_by = UserSummarySerializer(read_only=True)

    class Meta:
        model = AssignmentHistory
        fields = ['id', 'action', 'performed_by', 'reason', 'details', 'created_at']
        read_only_fields = fields


class AssignmentSerializer(serializers.ModelSerializer):
    """Serializer for UserRoleAssignment model."""

    user = UserSummarySerializer(read_only=True)
    role = serializers.SlugRelatedField(read_only=True, slug_field='name')
    role_id = serializers.UUIDField(read_only=True)
    regions = LocationSummarySerializer(many=True, read_only=True)
    assigned_by = UserSummarySerializer(read_only=True)
    approved_by = UserSummarySerializer(read_only=True)
    overrides = serializers.SerializerMethodField()

    class Meta:
        model = UserRoleAssignment
        fields = [
            'id', 'user', 'role', 'role_id', 'regions', 'projects', 'schemes',
            'valid_from', 'valid_until', 'is_active', 'is_primary',
            'approval_status', 'assigned_by', 'approved_by', 'approved_at',
            'reason', 'deactivated_at', 'deactivation_reason', 'overrides',
            'created_at',
        ]
        read_only_fields = fields

    def get_overrides(self, obj):
        overrides = obj.active_overrides().select_related('permission', 'granted_by')
        return AssignmentOverrideSerializer(overrides, many=True).data


class AssignmentCreateSerializer(serializers.Serializer):
    """Serializer for creating a role assignment."""

    user_id = serializers.UUIDField(required=True)
    role_id = serializers.UUIDField(required=True)
    regions = serializers.ListField(child=serializers.UUIDField(), required=False, default=list)
    projects = serializers.ListField(child=serializers.CharField(max_length=64), required=False, default=list)
    schemes = serializers.ListField(child=serializers.CharField(max_length=64), required=False, default=list)
    valid_from = serializers.DateTimeField(required=False, allow_null=True)
    valid_until = serializers.DateTimeField(required=False, allow_null=True)
    is_primary = serializers.BooleanField(required=False, allow_null=True, default=None)
    reason = serializers.CharField(required=False, allow_blank=True, default='')

    def validate_user_id(self, value):
        user = User.objects.active().filter(id=value).first()
        if user is None:
            raise serializers.ValidationError("User not found or inactive.")
        self.context['user'] = user
        return value

    def validate_role_id(self, value):
        role = Role.objects.filter(id=value).first()
        if role is None:
            raise serializers.ValidationError("Role not found.")
        self.context['role'] = role
        return value

    def validate(self, data):
        valid_from = data.get('valid_from')
        valid_until = data.get('valid_until')
        if valid_from and valid_until and valid_until <= valid_from:
            raise serializers.ValidationError({'valid_until': "Must be after valid_from."})
        return data


class AssignmentDecisionSerializer(serializers.Serializer):
    """Serializer for approving or rejecting a pending assignment."""

    DECISION_CHOICES = [('approve', 'Approve'), ('reject', 'Reject')]

    decision = serializers.ChoiceField(choices=DECISION_CHOICES, default='approve')
    reason = serializers.CharField(required=False, allow_blank=True, default='')

    def validate(self, data):
        if data['decision'] == 'reject' and not data.get('reason', '').strip():
            raise serializers.ValidationError({'reason': "A reason is required to reject an assignment."})
        return data


class AssignmentRevokeSerializer(serializers.Serializer):
    """Serializer for revoking an assignment."""

    reason = serializers.CharField(required=True, max_length=1000)


class OverrideCreateSerializer(serializers.Serializer):
    """Serializer for granting or restricting a permission on an assignment."""

    permission = serializers.CharField(required=True, max_length=100)
    granted = serializers.BooleanField(required=True, help_text="True grants, False restricts")
    reason = serializers.CharField(required=False, allow_blank=True, default='')
    expires_at = serializers.DateTimeField(required=False, allow_null=True, default=None)


# ===== AUDIT LOG SERIALIZERS =====

class AuditLogSerializer(serializers.ModelSerializer):
    """Serializer for AuditLog model."""

    user = UserSummarySerializer(read_only=True)

    class Meta:
        model = AuditLog
        fields = [
            'id', 'action', 'user', 'target_type', 'target_id', 'diff',
            'metadata', 'ip_address', 'request_id', 'created_at',
        ]
        read_only_fields = fields
