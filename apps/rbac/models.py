"""
RBAC models for the welfare administration platform.

Implements:
- User (global identity, the AUTH_USER_MODEL)
- Permission (canonical permissions with runtime conditions and a
  requires/implies/conflicts dependency graph)
- Role (hierarchy level, scope configuration and constraints)
- RolePermission (maps permissions to roles)
- UserRoleAssignment (a user's role within a regional/project/scheme scope)
- AssignmentPermissionOverride (per-assignment grant/restrict)
- AssignmentHistory (append-only assignment lifecycle log)
- AuditLog (audit trail of access decisions and administrative changes)
"""
import logging
from django.db import models, transaction
from django.db.models import Q
from django.contrib.auth.hashers import make_password, check_password
from django.core.exceptions import ValidationError as DjangoValidationError
from django.core.validators import MaxValueValidator, MinValueValidator, validate_ipv46_address
from django.utils import timezone

from apps.core.models import AppendOnlyModel, AppendOnlyQuerySet, BaseModel
from apps.core.log_sanitizer import sanitize_dict_for_logging
from apps.core.middleware import get_client_ip, get_current_request_id
from apps.rbac.conditions import PermissionConditions

logger = logging.getLogger(__name__)


class UserManager(models.Manager):
    """
    Manager for User queries.

    Compatible with Django's authentication system and admin interface.
    """

    def get_queryset(self):
        return super().get_queryset().filter(deleted_at__isnull=True)

    def active(self):
        """Return only active users."""
        return self.filter(is_active=True)

    def by_email(self, email):
        """Find user by email."""
        return self.filter(email=self.normalize_email(email)).first()

    def create_user(self, email, password=None, **extra_fields):
        """
        Create a new user with hashed password.

        This method is compatible with Django's authentication system.
        """
        if not email:
            raise ValueError('Email address is required')

        email = self.normalize_email(email)
        extra_fields.setdefault('is_active', True)
        extra_fields.setdefault('is_superuser', False)

        user = self.model(email=email, **extra_fields)
        if password:
            user.set_password(password)
        user.save(using=self._db)
        return user

    def create_superuser(self, email, password=None, **extra_fields):
        """
        Create a superuser with Django admin access.

        Superuser only opens the Django admin; API access still comes
        from role assignments.
        """
        extra_fields.setdefault('is_superuser', True)
        extra_fields.setdefault('is_active', True)

        if extra_fields.get('is_superuser') is not True:
            raise ValueError('Superuser must have is_superuser=True')

        return self.create_user(email, password, **extra_fields)

    @staticmethod
    def normalize_email(email):
        """
        Normalize the email address by lowercasing the domain part.
        """
        email = email or ''
        try:
            email_name, domain_part = email.strip().rsplit('@', 1)
        except ValueError:
            pass
        else:
            email = email_name + '@' + domain_part.lower()
        return email

    def get_by_natural_key(self, email):
        """
        Get user by natural key (email).

        This method is required for Django's authentication system.
        """
        return self.get(**{self.model.USERNAME_FIELD: email})


class User(BaseModel):
    """
    Global user identity for administrators, coordinators and beneficiaries.

    Authentication happens at the User level; authorization comes only from
    the user's role assignments, resolved by the permission engine.

    This is the AUTH_USER_MODEL for the entire application, including Django admin.
    """

    email = models.EmailField(
        unique=True,
        db_index=True,
        help_text="User email address (unique globally)"
    )
    password_hash = models.CharField(
        max_length=255,
        help_text="Hashed password",
        db_column='password_hash'
    )

    # Status
    is_active = models.BooleanField(
        default=True,
        db_index=True,
        help_text="Whether user account is active"
    )
    is_superuser = models.BooleanField(
        default=False,
        help_text="Django admin access (does not grant API permissions)"
    )

    # Django admin compatibility
    USERNAME_FIELD = 'email'
    EMAIL_FIELD = 'email'
    REQUIRED_FIELDS = []

    # Activity Tracking
    last_login_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="Last login timestamp"
    )

    # Profile
    first_name = models.CharField(
        max_length=100,
        blank=True,
        help_text="User first name"
    )
    last_name = models.CharField(
        max_length=100,
        blank=True,
        help_text="User last name"
    )

    objects = UserManager()

    class Meta:
        db_table = 'users'
        default_manager_name = 'objects'
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['email']),
            models.Index(fields=['is_active', 'created_at']),
        ]

    def __str__(self):
        return self.email

    @property
    def password(self):
        """
        Alias for password_hash to maintain Django admin compatibility.
        Django admin expects a 'password' field.
        """
        return self.password_hash

    @password.setter
    def password(self, value):
        self.password_hash = value

    def check_password(self, raw_password):
        """Check if provided password matches stored hash."""
        return check_password(raw_password, self.password_hash)

    def set_password(self, raw_password):
        """Set user password (hashes automatically)."""
        self.password_hash = make_password(raw_password)

    def get_full_name(self):
        """Return full name or email if name not set."""
        if self.first_name or self.last_name:
            return f"{self.first_name} {self.last_name}".strip()
        return self.email

    def get_username(self):
        return self.email

    def update_last_login(self):
        """Update last_login_at to current time."""
        self.last_login_at = timezone.now()
        self.save(update_fields=['last_login_at'])

    @property
    def is_authenticated(self):
        """
        Always return True for User instances.
        This is required for Django authentication compatibility.
        """
        return True

    @property
    def is_anonymous(self):
        return False

    @property
    def is_staff(self):
        """
        Return True if user is a superuser.
        This is required for Django admin access.
        """
        return self.is_superuser

    def has_perm(self, perm, obj=None):
        """
        Django admin permission hook.

        API permissions never go through here; they are answered by
        AccessDecision from the user's role assignments.
        """
        return self.is_active and self.is_superuser

    def has_perms(self, perm_list, obj=None):
        return self.is_active and self.is_superuser

    def has_module_perms(self, app_label):
        return self.is_active and self.is_superuser

    def get_user_permissions(self, obj=None):
        return set()

    def get_group_permissions(self, obj=None):
        return set()

    def get_all_permissions(self, obj=None):
        return set()

    def natural_key(self):
        """
        Return the natural key for this user (email).

        This method is required for Django's serialization system.
        """
        return (self.email,)


class PermissionManager(models.Manager):
    """Manager for Permission queries."""

    def get_queryset(self):
        return super().get_queryset().filter(deleted_at__isnull=True)

    def active(self):
        """Get active permissions."""
        return self.filter(is_active=True)

    def by_name(self, name):
        """Find permission by name."""
        return self.filter(name=name).first()

    def by_module(self, module):
        """Get all active permissions in a module."""
        return self.active().filter(module=module)

    def get_or_create_permission(self, name, **defaults):
        """Get or create permission (idempotent)."""
        return self.get_or_create(name=name, defaults=defaults)


class Permission(BaseModel):
    """
    Canonical permission definitions.

    Names follow ``module.action.scope`` (``applications.read.regional``)
    or ``module.action`` (``applications.approve``). System permissions are
    seeded during deployment by ``seed_permissions``.

    Beyond the name, a permission carries runtime conditions (hours, days,
    networks, rate limit) evaluated by AccessDecision on every check, and a
    dependency graph evaluated by PermissionResolver:

    - ``requires``: unusable unless all required permissions are also held
    - ``implies``: holding this permission grants the implied ones
    - ``conflicts``: holding both keeps only the higher-privilege one
    """

    SCOPE_GLOBAL = 'global'
    SCOPE_REGIONAL = 'regional'
    SCOPE_ASSIGNED = 'assigned'
    SCOPE_OWN = 'own'

    SCOPE_CHOICES = [
        (SCOPE_GLOBAL, 'Global'),
        (SCOPE_REGIONAL, 'Regional'),
        (SCOPE_ASSIGNED, 'Assigned projects/schemes'),
        (SCOPE_OWN, 'Own records'),
    ]

    SECURITY_LEVEL_CHOICES = [
        ('public', 'Public'),
        ('internal', 'Internal'),
        ('confidential', 'Confidential'),
        ('restricted', 'Restricted'),
        ('top_secret', 'Top Secret'),
    ]

    name = models.CharField(
        max_length=100,
        unique=True,
        db_index=True,
        help_text="Unique permission name (e.g., 'applications.read.regional')"
    )
    display_name = models.CharField(
        max_length=150,
        help_text="Human-readable label (e.g., 'Read Regional Applications')"
    )
    description = models.TextField(
        blank=True,
        help_text="Detailed description of what this permission grants"
    )
    module = models.CharField(
        max_length=50,
        db_index=True,
        help_text="Module the permission belongs to (e.g., 'applications', 'finances')"
    )
    action = models.CharField(
        max_length=50,
        help_text="Action granted (e.g., 'read', 'approve', 'manage')"
    )
    resource = models.CharField(
        max_length=50,
        blank=True,
        help_text="Resource acted upon (e.g., 'application')"
    )
    scope = models.CharField(
        max_length=20,
        choices=SCOPE_CHOICES,
        default=SCOPE_GLOBAL,
        db_index=True,
        help_text="Breadth of data this permission applies to"
    )
    security_level = models.CharField(
        max_length=20,
        choices=SECURITY_LEVEL_CHOICES,
        default='internal',
        help_text="Security classification"
    )
    audit_required = models.BooleanField(
        default=False,
        help_text="Whether every decision on this permission is written to the audit log"
    )
    is_system = models.BooleanField(
        default=False,
        db_index=True,
        help_text="Whether this is a system-seeded permission"
    )
    is_active = models.BooleanField(
        default=True,
        db_index=True,
        help_text="Inactive permissions are never granted"
    )

    # Conditions
    allowed_hours_start = models.PositiveSmallIntegerField(
        null=True,
        blank=True,
        validators=[MaxValueValidator(23)],
        help_text="First hour (0-23, inclusive) the permission may be used"
    )
    allowed_hours_end = models.PositiveSmallIntegerField(
        null=True,
        blank=True,
        validators=[MaxValueValidator(23)],
        help_text="Last hour (0-23, inclusive) the permission may be used"
    )
    allowed_days = models.JSONField(
        default=list,
        blank=True,
        help_text="Weekday names the permission may be used on (empty = any day)"
    )
    allowed_ips = models.JSONField(
        default=list,
        blank=True,
        help_text="IP addresses or CIDR blocks allowed to use the permission (empty = any)"
    )
    blocked_ips = models.JSONField(
        default=list,
        blank=True,
        help_text="IP addresses or CIDR blocks never allowed to use the permission"
    )
    requires_approval = models.BooleanField(
        default=False,
        help_text="Whether actions under this permission need a second approver"
    )
    rate_limit_max_requests = models.PositiveIntegerField(
        null=True,
        blank=True,
        help_text="Maximum uses per window (empty = unlimited)"
    )
    rate_limit_window_seconds = models.PositiveIntegerField(
        null=True,
        blank=True,
        help_text="Rate limit window length in seconds"
    )

    # Dependencies
    requires = models.ManyToManyField(
        'self',
        symmetrical=False,
        blank=True,
        related_name='required_by',
        help_text="Permissions that must also be held for this one to apply"
    )
    implies = models.ManyToManyField(
        'self',
        symmetrical=False,
        blank=True,
        related_name='implied_by',
        help_text="Permissions automatically granted with this one"
    )
    conflicts = models.ManyToManyField(
        'self',
        symmetrical=True,
        blank=True,
        help_text="Permissions that cannot be held together with this one"
    )

    objects = PermissionManager()

    class Meta:
        db_table = 'permissions'
        default_manager_name = 'objects'
        ordering = ['module', 'name']
        indexes = [
            models.Index(fields=['module', 'action']),
            models.Index(fields=['scope', 'is_active']),
        ]

    def __str__(self):
        return self.name

    def get_conditions(self):
        """Return an immutable snapshot of this permission's conditions."""
        return PermissionConditions(
            allowed_hours_start=self.allowed_hours_start,
            allowed_hours_end=self.allowed_hours_end,
            allowed_days=tuple(day.lower() for day in (self.allowed_days or [])),
            allowed_ips=tuple(self.allowed_ips or []),
            blocked_ips=tuple(self.blocked_ips or []),
            requires_approval=self.requires_approval,
            rate_limit_max_requests=self.rate_limit_max_requests,
            rate_limit_window_seconds=self.rate_limit_window_seconds,
        )


class RoleManager(models.Manager):
    """Manager for Role queries."""

    def get_queryset(self):
        return super().get_queryset().filter(deleted_at__isnull=True)

    def active(self):
        """Get active roles."""
        return self.filter(is_active=True)

    def by_name(self, name):
        """Find role by name."""
        return self.filter(name=name).first()

    def system_roles(self):
        return self.filter(is_system=True)

    def custom_roles(self):
        return self.filter(is_system=False)

    def reviewers_for(self, approval_level):
        """Get active roles that review applications at ``approval_level``."""
        return self.active().filter(approval_level=approval_level)


class Role(BaseModel):
    """
    Role definitions.

    ``level`` orders precedence (0 is the highest privilege). When two
    assignments contribute conflicting permissions, the one from the
    lower-level role wins.

    ``has_global_scope`` is the only way a role bypasses regional scope
    filtering. It is forced on for level 0 and may be set explicitly on any
    other role; nothing in the code base compares role names.
    """

    CATEGORY_CHOICES = [
        ('admin', 'Administrator'),
        ('coordinator', 'Coordinator'),
        ('staff', 'Staff'),
        ('beneficiary', 'Beneficiary'),
        ('external', 'External'),
    ]

    SCOPE_LEVEL_GLOBAL = 'global'
    SCOPE_LEVEL_CHOICES = [
        (SCOPE_LEVEL_GLOBAL, 'Global'),
        ('state', 'State'),
        ('district', 'District'),
        ('area', 'Area'),
        ('unit', 'Unit'),
        ('project', 'Project'),
        ('scheme', 'Scheme'),
    ]

    # Approval workflow levels, lowest first
    APPROVAL_UNIT = 'unit_admin'
    APPROVAL_AREA = 'area_admin'
    APPROVAL_DISTRICT = 'district_admin'
    APPROVAL_STATE = 'state_admin'

    APPROVAL_LEVEL_CHOICES = [
        (APPROVAL_UNIT, 'Unit Admin'),
        (APPROVAL_AREA, 'Area Admin'),
        (APPROVAL_DISTRICT, 'District Admin'),
        (APPROVAL_STATE, 'State Admin'),
    ]
    APPROVAL_LEVEL_ORDER = [APPROVAL_UNIT, APPROVAL_AREA, APPROVAL_DISTRICT, APPROVAL_STATE]

    name = models.CharField(
        max_length=100,
        unique=True,
        db_index=True,
        help_text="Role name (e.g., 'district_admin')"
    )
    display_name = models.CharField(
        max_length=150,
        help_text="Human-readable name (e.g., 'District Administrator')"
    )
    description = models.TextField(
        blank=True,
        help_text="Role description"
    )
    level = models.PositiveSmallIntegerField(
        validators=[MinValueValidator(0), MaxValueValidator(6)],
        db_index=True,
        help_text="Hierarchy level, 0 = highest privilege"
    )
    category = models.CharField(
        max_length=20,
        choices=CATEGORY_CHOICES,
        default='staff',
        help_text="Role category"
    )
    permissions = models.ManyToManyField(
        Permission,
        through='RolePermission',
        related_name='roles',
        blank=True,
    )

    # Scope configuration
    allowed_scope_levels = models.JSONField(
        default=list,
        blank=True,
        help_text="Scope levels assignments of this role may use"
    )
    default_scope_level = models.CharField(
        max_length=20,
        choices=SCOPE_LEVEL_CHOICES,
        blank=True,
        help_text="Scope level used when an assignment does not specify one"
    )
    allow_multiple_scopes = models.BooleanField(
        default=True,
        help_text="Whether one assignment may cover several regions/projects/schemes"
    )
    max_scopes = models.PositiveIntegerField(
        null=True,
        blank=True,
        help_text="Maximum regions + projects + schemes per assignment (empty = unlimited)"
    )

    # Constraints
    max_users = models.PositiveIntegerField(
        null=True,
        blank=True,
        help_text="Maximum users holding this role at once (empty = unlimited)"
    )
    requires_approval = models.BooleanField(
        default=False,
        help_text="Whether new assignments start pending approval"
    )
    is_deletable = models.BooleanField(default=True)
    is_modifiable = models.BooleanField(default=True)

    is_system = models.BooleanField(
        default=False,
        db_index=True,
        help_text="Whether this is a system-seeded role"
    )
    is_active = models.BooleanField(
        default=True,
        db_index=True,
        help_text="Inactive roles contribute no permissions"
    )
    approval_level = models.CharField(
        max_length=20,
        choices=APPROVAL_LEVEL_CHOICES,
        null=True,
        blank=True,
        db_index=True,
        help_text="Workflow level at which holders of this role review applications"
    )
    has_global_scope = models.BooleanField(
        default=False,
        help_text="Bypass regional scope filtering (always on for level 0)"
    )

    objects = RoleManager()

    class Meta:
        db_table = 'roles'
        default_manager_name = 'objects'
        ordering = ['level', 'name']
        indexes = [
            models.Index(fields=['level', 'is_active']),
            models.Index(fields=['is_system']),
        ]

    def __str__(self):
        return f"{self.name} (level {self.level})"

    def save(self, *args, **kwargs):
        if self.level == 0:
            self.has_global_scope = True
        super().save(*args, **kwargs)

    @property
    def grants_global_scope(self):
        """Whether assignments of this role see every region."""
        return self.has_global_scope or self.default_scope_level == self.SCOPE_LEVEL_GLOBAL

    def get_permissions(self):
        """Get all active permissions granted by this role."""
        return Permission.objects.filter(
            role_permissions__role=self,
            role_permissions__deleted_at__isnull=True,
            is_active=True,
        ).distinct()

    def has_permission(self, permission_name):
        """Check if role grants a specific permission directly."""
        return self.role_permissions.filter(permission__name=permission_name).exists()

    def active_holder_count(self):
        """Number of distinct users currently holding this role."""
        return (
            UserRoleAssignment.objects.active()
            .filter(role=self)
            .exclude(approval_status__in=[
                UserRoleAssignment.STATUS_REJECTED,
                UserRoleAssignment.STATUS_REVOKED,
            ])
            .values('user_id').distinct().count()
        )


class RolePermissionManager(models.Manager):
    """Manager for RolePermission queries."""

    def get_queryset(self):
        return super().get_queryset().filter(deleted_at__isnull=True)

    def for_role(self, role):
        """Get all permissions for a role."""
        return self.filter(role=role)

    def for_permission(self, permission):
        """Get all roles that have a permission."""
        return self.filter(permission=permission)

    def grant_permission(self, role, permission):
        """Grant permission to role (idempotent)."""
        role_permission, created = self.get_or_create(
            role=role,
            permission=permission
        )
        return role_permission, created

    def revoke_permission(self, role, permission):
        """Revoke permission from role."""
        return self.filter(role=role, permission=permission).delete()


class RolePermission(BaseModel):
    """
    Maps permissions to roles.

    Defines which permissions are granted by each role.
    """

    role = models.ForeignKey(
        Role,
        on_delete=models.CASCADE,
        related_name='role_permissions',
        db_index=True,
        help_text="Role that grants this permission"
    )
    permission = models.ForeignKey(
        Permission,
        on_delete=models.CASCADE,
        related_name='role_permissions',
        db_index=True,
        help_text="Permission being granted"
    )

    objects = RolePermissionManager()

    class Meta:
        db_table = 'role_permissions'
        default_manager_name = 'objects'
        unique_together = [('role', 'permission')]
        ordering = ['role', 'permission']

    def __str__(self):
        return f"{self.role.name} -> {self.permission.name}"


class UserRoleAssignmentManager(models.Manager):
    """Manager for role assignments."""

    def get_queryset(self):
        return super().get_queryset().filter(deleted_at__isnull=True)

    def active(self):
        return self.filter(is_active=True)

    def for_user(self, user):
        return self.filter(user=user)

    def pending(self):
        return self.active().filter(approval_status=UserRoleAssignment.STATUS_PENDING)

    def valid_for(self, user, at=None):
        """
        Get the assignments that contribute permissions for ``user``.

        An assignment contributes only while it is active, approved, inside
        its validity window at ``at`` and its role is active.

        Args:
            user: User instance (or id)
            at: Evaluation time (defaults to now)

        Returns:
            QuerySet of UserRoleAssignment with role preloaded
        """
        at = at or timezone.now()
        return (
            self.filter(
                user=user,
                is_active=True,
                approval_status=UserRoleAssignment.STATUS_APPROVED,
                valid_from__lte=at,
                role__is_active=True,
                role__deleted_at__isnull=True,
            )
            .filter(Q(valid_until__isnull=True) | Q(valid_until__gt=at))
            .select_related('role')
        )

    def stale(self, at=None):
        """Active assignments whose validity window has closed."""
        at = at or timezone.now()
        return self.active().filter(valid_until__isnull=False, valid_until__lte=at)


class UserRoleAssignment(BaseModel):
    """
    A user's role within a concrete scope.

    The scope (the user's "admin scope") lists the regions, projects and
    schemes the assignment covers. Regions include every location beneath
    them; projects and schemes are external identifiers.

    Assignments are never hard-deleted. Removing a role deactivates the
    assignment and records why; AssignmentHistory keeps the full lifecycle.
    """

    STATUS_PENDING = 'pending'
    STATUS_APPROVED = 'approved'
    STATUS_REJECTED = 'rejected'
    STATUS_REVOKED = 'revoked'

    APPROVAL_STATUS_CHOICES = [
        (STATUS_PENDING, 'Pending'),
        (STATUS_APPROVED, 'Approved'),
        (STATUS_REJECTED, 'Rejected'),
        (STATUS_REVOKED, 'Revoked'),
    ]

    user = models.ForeignKey(
        User,
        on_delete=models.CASCADE,
        related_name='role_assignments',
        db_index=True,
        help_text="User holding the role"
    )
    role = models.ForeignKey(
        Role,
        on_delete=models.PROTECT,
        related_name='assignments',
        db_index=True,
        help_text="Role assigned"
    )
    assigned_by = models.ForeignKey(
        User,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='assignments_made',
        help_text="User who assigned this role"
    )
    reason = models.TextField(blank=True)

    # Scope
    regions = models.ManyToManyField(
        'locations.Location',
        blank=True,
        related_name='role_assignments',
        help_text="Regions covered (descendants included)"
    )
    projects = models.JSONField(
        default=list,
        blank=True,
        help_text="Project ids covered"
    )
    schemes = models.JSONField(
        default=list,
        blank=True,
        help_text="Scheme ids covered"
    )

    # Validity
    valid_from = models.DateTimeField(default=timezone.now, db_index=True)
    valid_until = models.DateTimeField(null=True, blank=True, db_index=True)
    is_active = models.BooleanField(default=True, db_index=True)
    is_primary = models.BooleanField(default=False)

    # Approval
    approval_status = models.CharField(
        max_length=20,
        choices=APPROVAL_STATUS_CHOICES,
        default=STATUS_APPROVED,
        db_index=True
    )
    approved_by = models.ForeignKey(
        User,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='assignments_approved',
    )
    approved_at = models.DateTimeField(null=True, blank=True)

    deactivated_at = models.DateTimeField(null=True, blank=True)
    deactivation_reason = models.TextField(blank=True)

    objects = UserRoleAssignmentManager()

    class Meta:
        db_table = 'user_role_assignments'
        default_manager_name = 'objects'
        ordering = ['-is_primary', 'role__level', 'created_at']
        indexes = [
            models.Index(fields=['user', 'is_active', 'approval_status']),
            models.Index(fields=['role', 'is_active']),
        ]
        constraints = [
            models.UniqueConstraint(
                fields=['user'],
                condition=Q(is_primary=True, is_active=True, deleted_at__isnull=True),
                name='unique_primary_assignment_per_user',
            ),
        ]

    def __str__(self):
        return f"{self.user.email} -> {self.role.name}"

    def is_valid(self, at=None):
        """Whether this assignment contributes permissions at ``at``."""
        at = at or timezone.now()
        if not self.is_active or self.approval_status != self.STATUS_APPROVED:
            return False
        if not self.role.is_active:
            return False
        if self.valid_from and self.valid_from > at:
            return False
        if self.valid_until and self.valid_until <= at:
            return False
        return True

    def get_region_ids(self):
        return [str(region_id) for region_id in self.regions.values_list('id', flat=True)]

    def scope_size(self):
        return self.regions.count() + len(self.projects or []) + len(self.schemes or [])

    def active_overrides(self, at=None):
        """Overrides that have not expired at ``at``."""
        at = at or timezone.now()
        return self.permission_overrides.filter(
            Q(expires_at__isnull=True) | Q(expires_at__gt=at)
        ).select_related('permission')


class AssignmentPermissionOverride(BaseModel):
    """
    A per-assignment permission grant or restriction.

    ``granted=True`` adds a permission the role does not carry;
    ``granted=False`` withholds one it does. One override exists per
    (assignment, permission); granting after restricting replaces it.
    """

    assignment = models.ForeignKey(
        UserRoleAssignment,
        on_delete=models.CASCADE,
        related_name='permission_overrides',
    )
    permission = models.ForeignKey(
        Permission,
        on_delete=models.CASCADE,
        related_name='assignment_overrides',
    )
    granted = models.BooleanField(
        help_text="True = additional permission, False = restricted permission"
    )
    granted_by = models.ForeignKey(
        User,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='permission_overrides_made',
    )
    reason = models.TextField(blank=True)
    expires_at = models.DateTimeField(null=True, blank=True, db_index=True)

    class Meta:
        db_table = 'assignment_permission_overrides'
        unique_together = [('assignment', 'permission')]
        ordering = ['assignment', 'permission']

    def __str__(self):
        kind = 'grant' if self.granted else 'restrict'
        return f"{kind} {self.permission.name} on {self.assignment_id}"

    def is_expired(self, at=None):
        at = at or timezone.now()
        return self.expires_at is not None and self.expires_at <= at


class AssignmentHistory(AppendOnlyModel):
    """Append-only lifecycle log for a role assignment."""

    ACTION_ASSIGNED = 'assigned'
    ACTION_APPROVED = 'approved'
    ACTION_REJECTED = 'rejected'
    ACTION_PERMISSION_ADDED = 'permission_added'
    ACTION_PERMISSION_RESTRICTED = 'permission_restricted'
    ACTION_SUSPENDED = 'suspended'
    ACTION_REACTIVATED = 'reactivated'
    ACTION_REVOKED = 'revoked'
    ACTION_EXPIRED = 'expired'

    ACTION_CHOICES = [
        (ACTION_ASSIGNED, 'Assigned'),
        (ACTION_APPROVED, 'Approved'),
        (ACTION_REJECTED, 'Rejected'),
        (ACTION_PERMISSION_ADDED, 'Permission added'),
        (ACTION_PERMISSION_RESTRICTED, 'Permission restricted'),
        (ACTION_SUSPENDED, 'Suspended'),
        (ACTION_REACTIVATED, 'Reactivated'),
        (ACTION_REVOKED, 'Revoked'),
        (ACTION_EXPIRED, 'Expired'),
    ]

    assignment = models.ForeignKey(
        UserRoleAssignment,
        on_delete=models.CASCADE,
        related_name='history',
    )
    action = models.CharField(max_length=30, choices=ACTION_CHOICES, db_index=True)
    performed_by = models.ForeignKey(
        User,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='assignment_history_entries',
    )
    reason = models.TextField(blank=True)
    details = models.JSONField(default=dict, blank=True)

    class Meta:
        db_table = 'assignment_history'
        ordering = ['created_at']

    def __str__(self):
        return f"{self.assignment_id} {self.action}"


class AuditLogManager(models.Manager.from_queryset(AppendOnlyQuerySet)):
    """Manager for AuditLog queries. Rows can be added, never changed."""

    def get_queryset(self):
        return super().get_queryset().filter(deleted_at__isnull=True)

    def for_user(self, user):
        """Get audit logs for a specific user."""
        return self.filter(user=user)

    def by_action(self, action):
        """Get audit logs for a specific action."""
        return self.filter(action=action)

    def by_target(self, target_type, target_id=None):
        """Get audit logs for a specific target type and optionally target ID."""
        qs = self.filter(target_type=target_type)
        if target_id:
            qs = qs.filter(target_id=target_id)
        return qs

    def by_request(self, request_id):
        """Get all audit logs for a specific request."""
        return self.filter(request_id=request_id)

    def recent(self, days=30):
        """Get audit logs from the last N days."""
        from datetime import timedelta
        cutoff = timezone.now() - timedelta(days=days)
        return self.filter(created_at__gte=cutoff)


class AuditLog(AppendOnlyModel):
    """
    Append-only audit trail for access decisions and sensitive operations.

    Records audit-required permission decisions, role assignment changes
    and terminal workflow transitions for compliance review.
    """

    user = models.ForeignKey(
        User,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='audit_logs',
        db_index=True,
        help_text="User who performed the action (null for system actions)"
    )

    # Action Details
    action = models.CharField(
        max_length=100,
        db_index=True,
        help_text="Action performed (e.g., 'permission_denied', 'role_assigned', 'application_approved')"
    )
    target_type = models.CharField(
        max_length=50,
        blank=True,
        db_index=True,
        help_text="Type of target entity (e.g., 'permission', 'role_assignment', 'application')"
    )
    target_id = models.CharField(
        max_length=100,
        blank=True,
        db_index=True,
        help_text="ID or name of target entity"
    )

    # Change Tracking
    diff = models.JSONField(
        default=dict,
        blank=True,
        help_text="Before/after changes in JSON format"
    )

    # Request Context
    ip_address = models.GenericIPAddressField(
        null=True,
        blank=True,
        help_text="IP address of the request"
    )
    user_agent = models.TextField(
        blank=True,
        help_text="User agent string"
    )
    request_id = models.CharField(
        max_length=64,
        blank=True,
        db_index=True,
        help_text="Request ID for tracing"
    )

    # Additional Context
    metadata = models.JSONField(
        default=dict,
        blank=True,
        help_text="Additional context metadata"
    )

    objects = AuditLogManager()

    class Meta:
        db_table = 'audit_logs'
        default_manager_name = 'objects'
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['user', 'created_at']),
            models.Index(fields=['action', 'created_at']),
            models.Index(fields=['target_type', 'target_id']),
        ]

    def __str__(self):
        user_str = self.user.email if self.user else 'System'
        return f"{user_str} - {self.action}"

    @classmethod
    def log_action(cls, action, user=None, target_type=None, target_id=None,
                   diff=None, metadata=None, request=None, ip_address=None,
                   request_id=None):
        """
        Convenience method to create audit log entry.

        Args:
            action: Action name (e.g., 'role_assigned', 'permission_denied')
            user: User who performed action
            target_type: Type of target entity
            target_id: ID of target entity
            diff: Before/after changes dict
            metadata: Additional context dict (sanitized before storage)
            request: Django request object (for IP, user agent, request ID)
            ip_address: Client IP when no request is available
            request_id: Request ID when no request is available

        Returns:
            AuditLog instance, or None if the entry could not be written
        """
        if user is not None and not user.is_authenticated:
            user = None

        log_data = {
            'action': action,
            'user': user,
            'target_type': target_type or '',
            'target_id': str(target_id) if target_id else '',
            'diff': diff or {},
            'metadata': sanitize_dict_for_logging(metadata or {}),
            'ip_address': ip_address,
            'request_id': request_id or get_current_request_id() or '',
        }

        # Extract request context if provided
        if request is not None:
            log_data['ip_address'] = get_client_ip(request)
            log_data['user_agent'] = request.META.get('HTTP_USER_AGENT', '')
            log_data['request_id'] = getattr(request, 'request_id', None) or log_data['request_id']

        log_data['ip_address'] = _valid_ip_or_none(log_data['ip_address'])

        try:
            # Savepoint so a failed insert leaves the caller's transaction usable
            with transaction.atomic():
                return cls.objects.create(**log_data)
        except Exception as e:
            logger.error(
                f"Failed to create audit log: {str(e)}",
                extra={'action': action, 'target_type': target_type},
                exc_info=True
            )
            return None


def _valid_ip_or_none(value):
    if not value:
        return None
    try:
        validate_ipv46_address(value)
    except DjangoValidationError:
        return None
    return value
