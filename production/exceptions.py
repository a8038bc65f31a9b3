from __future__ import annotations

from django.core.exceptions import ValidationError


class ProductionError(Exception):
    """Base class for errors raised by the production engine."""

    code = "production_error"


class InvalidTransition(ProductionError):
    """Raised when an operation is attempted from a state that does not allow it."""

    code = "invalid_transition"

    def __init__(self, message, *, current=None):
        super().__init__(message)
        self.current = current


class UnbalancedProductionError(ProductionError, ValidationError):
    """Coating output does not account for the fabric that went in."""

    code = "unbalanced_production"

    def __init__(self, total_input, total_output):
        self.total_input = total_input
        self.total_output = total_output
        message = (
            f"Total input ({total_input}m) must equal total output ({total_output}m). "
            f"Difference: {abs(total_input - total_output)}m"
        )
        ValidationError.__init__(self, message, code=self.code)


class NoAvailableStock(ProductionError):
    """Allocation found no usable roll; the demand simply stays unmet."""

    code = "no_available_stock"

    def __init__(self, message, *, demand_id=None, requirement=None):
        super().__init__(message)
        self.demand_id = demand_id
        self.requirement = requirement


class ConcurrencyConflict(ProductionError):
    """Lock or compare-and-swap conflict; the whole operation may be retried."""

    code = "concurrency_conflict"
