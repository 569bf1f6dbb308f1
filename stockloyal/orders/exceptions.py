"""Order lifecycle exceptions.

Usage:
    from stockloyal.orders.exceptions import BatchNotFoundError

    raise BatchNotFoundError("Batch not found", context={"batch_id": batch_id})
"""

from __future__ import annotations

from stockloyal.common.exceptions import (
    ConflictError,
    NotFoundError,
    StockLoyalError,
    ValidationError,
)


class InvalidTransitionError(ConflictError):
    """A status change that the order or batch state machine does not allow."""


class BatchNotFoundError(NotFoundError):
    """No prepare batch with the requested id."""


class BatchConflictError(ConflictError):
    """The batch is not ``staged`` (already approved or discarded)."""


class MissingBrokerAccountError(ValidationError):
    """The member has no linked brokerage account id."""


class SchedulingError(StockLoyalError):
    """No trading day could be resolved for a new order."""
