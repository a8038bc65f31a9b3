from django.core.exceptions import PermissionDenied
from rest_framework.permissions import SAFE_METHODS, BasePermission

from .signals import PRODUCTION_MANAGER_GROUP


def in_group(user, group_name: str) -> bool:
    return bool(
        user
        and user.is_authenticated
        and user.groups.filter(name=group_name).exists()
    )


def is_production_manager(user) -> bool:
    return bool(user and (user.is_superuser or in_group(user, PRODUCTION_MANAGER_GROUP)))


def require_authorized(authorized: bool, action: str):
    """Service-level guard; the caller decides who counts as authorized."""
    if not authorized:
        raise PermissionDenied(f"Not authorized to {action}.")


class IsProductionManagerOrReadOnly(BasePermission):
    """Anyone signed in may read; state changes need a production manager."""

    def has_permission(self, request, view):
        if not request.user or not request.user.is_authenticated:
            return False
        if request.method in SAFE_METHODS:
            return True
        return is_production_manager(request.user)
