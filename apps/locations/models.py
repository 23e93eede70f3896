"""
Location models for the administrative hierarchy.

States contain districts, districts contain areas and areas contain units.
Role assignments are scoped to locations and applications are filed under
one location of each type.
"""
from django.db import models
from django.core.exceptions import ValidationError

from apps.core.models import BaseModel


class LocationManager(models.Manager):
    """Manager for Location model with hierarchy helpers."""

    def get_queryset(self):
        return super().get_queryset().filter(deleted_at__isnull=True)

    def active(self):
        """Get active locations."""
        return self.filter(is_active=True)

    def by_code(self, code):
        """Get location by code."""
        try:
            return self.get(code=code)
        except self.model.DoesNotExist:
            return None

    def of_type(self, location_type):
        """Get all active locations of one type."""
        return self.active().filter(type=location_type)

    def children_of(self, location_ids):
        """Get the direct children of a set of locations."""
        return self.filter(parent_id__in=location_ids)


class Location(BaseModel):
    """
    A node in the state > district > area > unit hierarchy.

    Each location except a state has a parent exactly one level above it.
    Codes are globally unique and are what seed data and imports refer to.
    """

    TYPE_STATE = 'state'
    TYPE_DISTRICT = 'district'
    TYPE_AREA = 'area'
    TYPE_UNIT = 'unit'

    TYPE_CHOICES = [
        (TYPE_STATE, 'State'),
        (TYPE_DISTRICT, 'District'),
        (TYPE_AREA, 'Area'),
        (TYPE_UNIT, 'Unit'),
    ]

    # Top of the hierarchy first
    TYPE_ORDER = [TYPE_STATE, TYPE_DISTRICT, TYPE_AREA, TYPE_UNIT]

    name = models.CharField(
        max_length=100,
        help_text="Display name"
    )
    code = models.CharField(
        max_length=20,
        unique=True,
        db_index=True,
        help_text="Unique location code (e.g., 'KL', 'KL-TVM')"
    )
    type = models.CharField(
        max_length=20,
        choices=TYPE_CHOICES,
        db_index=True,
        help_text="Level of this location in the hierarchy"
    )
    parent = models.ForeignKey(
        'self',
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='children',
        help_text="Parent location (null for states)"
    )
    is_active = models.BooleanField(
        default=True,
        db_index=True,
        help_text="Whether this location accepts new applications"
    )

    objects = LocationManager()

    class Meta:
        db_table = 'locations'
        default_manager_name = 'objects'
        ordering = ['type', 'name']
        indexes = [
            models.Index(fields=['type', 'is_active']),
            models.Index(fields=['parent', 'type']),
        ]

    def __str__(self):
        return f"{self.name} ({self.get_type_display()})"

    def clean(self):
        """Validate that the parent sits exactly one level above this location."""
        super().clean()
        expected_parent_type = self.expected_parent_type()

        if expected_parent_type is None:
            if self.parent_id:
                raise ValidationError({'parent': 'A state cannot have a parent location.'})
            return

        if not self.parent_id:
            raise ValidationError({'parent': f'A {self.type} must have a {expected_parent_type} as parent.'})

        if self.parent.type != expected_parent_type:
            raise ValidationError({
                'parent': f'A {self.type} must have a {expected_parent_type} as parent, not a {self.parent.type}.'
            })

    def expected_parent_type(self):
        """Return the type a parent of this location must have, or None for states."""
        index = self.TYPE_ORDER.index(self.type)
        if index == 0:
            return None
        return self.TYPE_ORDER[index - 1]
