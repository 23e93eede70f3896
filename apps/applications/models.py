"""
Application and approval ledger models.

Implements welfare scheme applications with:
- A four-level review chain (unit > area > district > state)
- Optimistic concurrency through a version counter
- SLA deadline tracking per review level
- An append-only approval ledger
"""
from datetime import timedelta

from django.conf import settings
from django.db import models
from django.db.models import Max
from django.utils import timezone

from apps.core.models import AppendOnlyModel, BaseModel
from apps.rbac.models import Role


class ApplicationManager(models.Manager):
    """Manager for application queries."""

    def get_queryset(self):
        return super().get_queryset().filter(deleted_at__isnull=True)

    def by_application_id(self, application_id):
        """Find application by its human-readable id."""
        return self.filter(application_id=application_id).first()

    def for_applicant(self, user):
        return self.filter(applicant=user)

    def open(self):
        """Applications still moving through review."""
        return self.exclude(status__in=Application.TERMINAL_STATUSES)

    def at_level(self, level):
        return self.open().filter(current_level=level)

    def next_application_id(self, year=None):
        """
        Next ``APP{year}{seq:06d}`` id for ``year``.

        Not reserved: concurrent submitters may compute the same id, in
        which case the unique constraint rejects the second insert.
        """
        year = year or timezone.now().year
        prefix = f'APP{year}'
        last = (
            Application.objects_with_deleted
            .filter(application_id__startswith=prefix)
            .aggregate(last=Max('application_id'))['last']
        )
        sequence = int(last[len(prefix):]) + 1 if last else 1
        return f'{prefix}{sequence:06d}'


class Application(BaseModel):
    """
    A beneficiary's application for support under a scheme or project.

    Status and current_level change only through ApplicationWorkflow, and
    always match the latest ApprovalEntry.
    """

    STATUS_PENDING = 'pending'
    STATUS_UNIT_REVIEW = 'unit_review'
    STATUS_AREA_REVIEW = 'area_review'
    STATUS_DISTRICT_REVIEW = 'district_review'
    STATUS_STATE_REVIEW = 'state_review'
    STATUS_APPROVED = 'approved'
    STATUS_REJECTED = 'rejected'
    STATUS_CANCELLED = 'cancelled'
    STATUS_COMPLETED = 'completed'

    STATUS_CHOICES = [
        (STATUS_PENDING, 'Pending'),
        (STATUS_UNIT_REVIEW, 'Unit Review'),
        (STATUS_AREA_REVIEW, 'Area Review'),
        (STATUS_DISTRICT_REVIEW, 'District Review'),
        (STATUS_STATE_REVIEW, 'State Review'),
        (STATUS_APPROVED, 'Approved'),
        (STATUS_REJECTED, 'Rejected'),
        (STATUS_CANCELLED, 'Cancelled'),
        (STATUS_COMPLETED, 'Completed'),
    ]

    TERMINAL_STATUSES = (STATUS_APPROVED, STATUS_REJECTED, STATUS_CANCELLED, STATUS_COMPLETED)

    # Review status while an application sits at each level
    REVIEW_STATUS = {
        Role.APPROVAL_UNIT: STATUS_UNIT_REVIEW,
        Role.APPROVAL_AREA: STATUS_AREA_REVIEW,
        Role.APPROVAL_DISTRICT: STATUS_DISTRICT_REVIEW,
        Role.APPROVAL_STATE: STATUS_STATE_REVIEW,
    }

    SLA_ON_TIME = 'on_time'
    SLA_DELAYED = 'delayed'
    SLA_OVERDUE = 'overdue'

    SLA_STATUS_CHOICES = [
        (SLA_ON_TIME, 'On Time'),
        (SLA_DELAYED, 'Delayed'),
        (SLA_OVERDUE, 'Overdue'),
    ]

    application_id = models.CharField(
        max_length=20,
        unique=True,
        db_index=True,
        help_text="Human-readable id (e.g., 'APP2026000042')"
    )
    applicant = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name='applications',
        help_text="Beneficiary who submitted the application"
    )
    scheme_id = models.CharField(
        max_length=64,
        blank=True,
        db_index=True,
        help_text="Scheme the application is filed under"
    )
    project_id = models.CharField(
        max_length=64,
        blank=True,
        db_index=True,
        help_text="Project the application is filed under"
    )
    title = models.CharField(max_length=255)
    description = models.TextField(blank=True)
    requested_amount = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        default=0,
        help_text="Amount requested by the applicant"
    )
    approved_amount = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        null=True,
        blank=True,
        help_text="Amount approved at the final decision"
    )

    # Workflow state
    status = models.CharField(
        max_length=20,
        choices=STATUS_CHOICES,
        default=STATUS_PENDING,
        db_index=True
    )
    current_level = models.CharField(
        max_length=20,
        choices=Role.APPROVAL_LEVEL_CHOICES,
        default=Role.APPROVAL_UNIT,
        db_index=True
    )
    version = models.PositiveIntegerField(
        default=1,
        help_text="Incremented on every transition; writes are conditional on it"
    )

    # Location chain
    state = models.ForeignKey(
        'locations.Location', on_delete=models.PROTECT, related_name='state_applications',
        null=True, blank=True
    )
    district = models.ForeignKey(
        'locations.Location', on_delete=models.PROTECT, related_name='district_applications',
        null=True, blank=True
    )
    area = models.ForeignKey(
        'locations.Location', on_delete=models.PROTECT, related_name='area_applications',
        null=True, blank=True
    )
    unit = models.ForeignKey(
        'locations.Location', on_delete=models.PROTECT, related_name='unit_applications',
        null=True, blank=True
    )

    # SLA
    sla_deadline = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the current level's review is due"
    )
    sla_status = models.CharField(
        max_length=10,
        choices=SLA_STATUS_CHOICES,
        default=SLA_ON_TIME,
        db_index=True
    )

    submitted_at = models.DateTimeField(default=timezone.now)
    decided_at = models.DateTimeField(null=True, blank=True)

    objects = ApplicationManager()

    class Meta:
        db_table = 'applications'
        default_manager_name = 'objects'
        ordering = ['-submitted_at']
        indexes = [
            models.Index(fields=['status', 'current_level']),
            models.Index(fields=['sla_status', 'sla_deadline']),
        ]

    def __str__(self):
        return f"{self.application_id} ({self.status})"

    @property
    def is_terminal(self):
        return self.status in self.TERMINAL_STATUSES

    def compute_sla_status(self, now=None):
        """
        SLA status of the current deadline at ``now``.

        on_time before the deadline, delayed within the grace period after
        it, overdue beyond that.
        """
        if self.sla_deadline is None:
            return self.SLA_ON_TIME
        now = now or timezone.now()
        if now <= self.sla_deadline:
            return self.SLA_ON_TIME
        grace = timedelta(hours=getattr(settings, 'APPLICATION_SLA_GRACE_HOURS', 24))
        if now <= self.sla_deadline + grace:
            return self.SLA_DELAYED
        return self.SLA_OVERDUE

    def last_entry(self):
        return self.approval_entries.order_by('-sequence').first()


class ApprovalEntry(AppendOnlyModel):
    """
    One step of an application's approval trail.

    ``level`` and ``status`` hold the application's state after the step,
    ``from_level`` the level at which it was taken. Entries are never
    changed or removed.
    """

    ACTION_SUBMIT = 'submit'
    ACTION_APPROVE = 'approve'
    ACTION_FORWARD = 'forward'
    ACTION_REJECT = 'reject'
    ACTION_RETURN = 'return'
    ACTION_CANCEL = 'cancel'

    ACTION_CHOICES = [
        (ACTION_SUBMIT, 'Submit'),
        (ACTION_APPROVE, 'Approve'),
        (ACTION_FORWARD, 'Forward'),
        (ACTION_REJECT, 'Reject'),
        (ACTION_RETURN, 'Return'),
        (ACTION_CANCEL, 'Cancel'),
    ]

    application = models.ForeignKey(
        Application,
        on_delete=models.PROTECT,
        related_name='approval_entries'
    )
    sequence = models.PositiveIntegerField(help_text="1-based position in the trail")
    action = models.CharField(max_length=10, choices=ACTION_CHOICES)
    from_level = models.CharField(
        max_length=20,
        choices=Role.APPROVAL_LEVEL_CHOICES,
        null=True,
        blank=True
    )
    level = models.CharField(max_length=20, choices=Role.APPROVAL_LEVEL_CHOICES)
    status = models.CharField(max_length=20, choices=Application.STATUS_CHOICES)
    assigned_to = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name='approval_entries',
        null=True,
        blank=True,
        help_text="User who took the action"
    )
    remarks = models.TextField(blank=True)
    comments = models.TextField(blank=True)
    deadline = models.DateTimeField(
        null=True,
        blank=True,
        help_text="SLA deadline for the level the application moved to"
    )
    request_id = models.CharField(
        max_length=64,
        null=True,
        blank=True,
        help_text="Client request id making the transition idempotent"
    )

    class Meta:
        db_table = 'application_approval_entries'
        ordering = ['application', 'sequence']
        constraints = [
            models.UniqueConstraint(
                fields=['application', 'sequence'],
                name='unique_approval_entry_sequence',
            ),
            models.UniqueConstraint(
                fields=['application', 'request_id'],
                condition=models.Q(request_id__isnull=False),
                name='unique_approval_entry_request_id',
            ),
        ]

    def __str__(self):
        return f"{self.application_id} #{self.sequence} {self.action}"
