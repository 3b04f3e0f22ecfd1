"""
Error Taxonomy Module

Distinguishable error kinds raised by the lifecycle and reporting components,
so callers (and the HTTP layer) can tell bad input from an illegal transition
from a missing entity.
"""

from datetime import date
from typing import List, Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from .reconciliation import DailyCollectionReport


class LendingError(Exception):
    """Base class for all microlending errors"""
    pass


class ValidationError(LendingError, ValueError):
    """Malformed or out-of-range input; the caller can fix it and retry"""
    pass


class InvalidStateError(LendingError):
    """Operation is not legal in the entity's current state (e.g. double approval)"""
    pass


class NotFoundError(LendingError):
    """Referenced entity does not exist"""

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type} {entity_id} not found")


class PartialAggregationFailure(LendingError):
    """
    One or more days of a collection report could not be computed.

    The report itself is still complete (degraded days are zeroed and
    flagged); this error only surfaces the failure to callers that ask for it.
    """

    def __init__(self, failed_dates: List[date], report: Optional['DailyCollectionReport'] = None):
        self.failed_dates = sorted(failed_dates)
        self.report = report
        days = ", ".join(d.isoformat() for d in self.failed_dates)
        super().__init__(f"Collection report degraded for {len(self.failed_dates)} day(s): {days}")
