from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:  # pragma: no cover
    from services import MetricsValidation


class ValidationError(ValueError):
    """Bad input shape or range. Never retried; shown to the caller as is."""


class NotFoundOrAccessDenied(ValueError):
    """The entity does not exist or belongs to another user.

    Both cases share one error so that ownership is never leaked.
    """

    def __init__(self, entity: str = "Resource") -> None:
        super().__init__(f"{entity} not found or access denied")
        self.entity = entity


class StoreUnavailable(RuntimeError):
    """Transient store failure. Reconciliation calls are safe to retry."""

    retryable = True


class CalculationFailed(StoreUnavailable):
    pass


class StaleAggregateDetected(RuntimeError):
    def __init__(self, validation: "MetricsValidation") -> None:
        calculated = validation.calculated
        super().__init__(
            f"Stored monthly metrics for property {calculated.property_id} "
            f"{calculated.year}-{calculated.month:02d} do not match the ledger"
        )
        self.validation = validation

    @property
    def differences(self) -> Optional[dict[str, int]]:
        return self.validation.differences
