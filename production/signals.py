from __future__ import annotations

from django.contrib.auth.models import Group, Permission
from django.contrib.contenttypes.models import ContentType
from django.db.models.signals import post_migrate
from django.dispatch import Signal, receiver

PRODUCTION_MANAGER_GROUP = "Production Manager"

# Sent after commit with: fabric, color, quantity, is_low
stock_level_changed = Signal()
# Sent after commit with: demand, allocations [(roll, qty)], manual
allocation_completed = Signal()
# Sent after commit with: order, previous
production_order_transitioned = Signal()


@receiver(post_migrate)
def ensure_groups(sender, **kwargs):
    if getattr(sender, "name", None) != "production":
        return
    managers, _ = Group.objects.get_or_create(name=PRODUCTION_MANAGER_GROUP)

    def get_perm(code, model):
        try:
            return Permission.objects.get_by_natural_key(code, "production", model)
        except (Permission.DoesNotExist, ContentType.DoesNotExist):
            return None

    perms = [
        get_perm("change_productionorder", "productionorder"),
        get_perm("change_demand", "demand"),
        get_perm("view_roll", "roll"),
        get_perm("view_stockmovement", "stockmovement"),
    ]
    for p in perms:
        if p and p not in managers.permissions.all():
            managers.permissions.add(p)
