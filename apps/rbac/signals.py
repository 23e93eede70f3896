"""
RBAC signals for registry cache invalidation.

Any change to a permission, a role, a role's grants or the permission
dependency graph drops the cached registry snapshots. Soft deletes are
saves, so post_save covers them.
"""
from django.db.models.signals import m2m_changed, post_delete, post_save
from django.dispatch import receiver

from apps.rbac.models import Permission, Role, RolePermission
from apps.rbac.registry import invalidate_registries


@receiver(post_save, sender=Permission)
@receiver(post_delete, sender=Permission)
@receiver(post_save, sender=Role)
@receiver(post_delete, sender=Role)
@receiver(post_save, sender=RolePermission)
@receiver(post_delete, sender=RolePermission)
def invalidate_on_definition_change(sender, instance, **kwargs):
    """Drop cached definitions when a role or permission row changes."""
    invalidate_registries()


@receiver(m2m_changed, sender=Permission.requires.through)
@receiver(m2m_changed, sender=Permission.implies.through)
@receiver(m2m_changed, sender=Permission.conflicts.through)
@receiver(m2m_changed, sender=Role.permissions.through)
def invalidate_on_dependency_change(sender, instance, action, **kwargs):
    """Drop cached definitions when dependency edges are added or removed."""
    if action in ('post_add', 'post_remove', 'post_clear'):
        invalidate_registries()
