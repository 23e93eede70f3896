"""
Location signals for hierarchy cache invalidation.
"""
from django.db.models.signals import pre_save, post_save, post_delete
from django.dispatch import receiver

from apps.locations.models import Location


@receiver(pre_save, sender=Location)
def remember_previous_parent(sender, instance, **kwargs):
    """Record the parent a location had before this save so both subtrees get invalidated."""
    if instance.pk is None:
        return
    instance._previous_parent_id = (
        Location.objects_with_deleted.filter(pk=instance.pk).values_list('parent_id', flat=True).first()
    )


@receiver(post_save, sender=Location)
@receiver(post_delete, sender=Location)
def invalidate_location_hierarchy(sender, instance, **kwargs):
    """Invalidate cached ancestor/descendant lists touched by this location."""
    from apps.locations.services import LocationHierarchy
    LocationHierarchy.invalidate(instance)
