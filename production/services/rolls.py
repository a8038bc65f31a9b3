from __future__ import annotations

import logging

from django.db import transaction

from production.models import Roll

logger = logging.getLogger(__name__)


def roll_queryset(*, fabric=None, color=None, status=None, kind=None, grade=None, include_archived=False):
    """Rolls filtered the way the roll ledger screens list them."""
    qs = Roll.objects.select_related("fabric", "batch", "demand", "reserved_for")
    if not include_archived:
        qs = qs.filter(archived=False)
    if fabric:
        qs = qs.filter(fabric_id=fabric)
    if color is not None and color != "":
        qs = qs.filter(color=color)
    if status:
        qs = qs.filter(status__in=str(status).split(","))
    if kind:
        qs = qs.filter(fabric_kind=kind)
    if grade:
        qs = qs.filter(quality_grade=grade)
    return qs.order_by("created_at", "roll_number")


def exhausted_rolls():
    """Fully allocated or consumed rolls still shown in the ledger."""
    return Roll.objects.filter(
        archived=False, status__in=(Roll.ALLOCATED, Roll.USED), remaining_length=0
    )


@transaction.atomic
def archive_exhausted_rolls(commit=False):
    """Hide exhausted rolls from default listings. Rolls are never deleted."""
    qs = exhausted_rolls()
    count = qs.count()
    if commit and count:
        qs.update(archived=True)
        logger.info("Archived %d exhausted rolls", count)
    return count


def check_roll_consistency(qs=None):
    """Return [(roll, [problems])] for rolls breaking ledger invariants."""
    qs = Roll.objects.all() if qs is None else qs
    out = []
    for roll in qs.iterator():
        errors = roll.consistency_errors()
        if errors:
            out.append((roll, errors))
    return out
