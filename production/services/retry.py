from __future__ import annotations

import functools
import logging

from django.conf import settings
from django.db import IntegrityError, OperationalError, transaction

from production.exceptions import ConcurrencyConflict

logger = logging.getLogger(__name__)


def conflict_retries() -> int:
    return int(getattr(settings, "PRODUCTION_CONFLICT_RETRIES", 2))


def retry_on_conflict(func):
    """Run ``func`` in its own atomic block, retrying on lock conflicts.

    Database lock/serialization failures and unique-key races are reported as
    ConcurrencyConflict. When called inside an enclosing atomic block the
    conflict is raised immediately, since only the outermost caller can
    restart the transaction.
    """

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        nested = transaction.get_connection().in_atomic_block
        attempts = 1 if nested else conflict_retries() + 1
        for attempt in range(1, attempts + 1):
            try:
                with transaction.atomic():
                    return func(*args, **kwargs)
            except ConcurrencyConflict as exc:
                error = exc
            except (OperationalError, IntegrityError) as exc:
                error = ConcurrencyConflict(f"{func.__name__}: {exc}")
                error.__cause__ = exc
            if attempt < attempts:
                logger.warning(
                    "%s hit a conflict (attempt %d/%d), retrying: %s",
                    func.__name__, attempt, attempts, error,
                )
        raise error

    return wrapper
