"""
Rate Table

Two conversion rates (amount per unit of usage), one per billing category.
The rate in effect when usage is reported is the one applied: accumulated
amounts are stored pre-converted and never repriced by a later change.

All arithmetic is unsigned integer arithmetic bounded by MAX_AMOUNT.
Exceeding the bound aborts the call instead of wrapping.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from threading import Lock
from typing import Dict, List
import structlog

from .errors import AmountOverflow, InvalidRate, RatesLocked

logger = structlog.get_logger()

# Largest representable amount (256-bit unsigned)
MAX_AMOUNT = 2 ** 256 - 1


class BillingCategory(Enum):
    """The two independent billing dimensions."""
    PRIMARY = "PRIMARY"
    SECONDARY = "SECONDARY"

    @classmethod
    def parse(cls, value: str) -> "BillingCategory":
        try:
            return cls[value.upper()]
        except KeyError:
            raise ValueError(f"Unknown billing category: {value}")


def checked_mul(a: int, b: int) -> int:
    result = a * b
    if result > MAX_AMOUNT:
        raise AmountOverflow(f"{a} * {b} exceeds the maximum amount")
    return result


def checked_add(a: int, b: int) -> int:
    result = a + b
    if result > MAX_AMOUNT:
        raise AmountOverflow(f"{a} + {b} exceeds the maximum amount")
    return result


def _require_rate(category: BillingCategory, rate: int) -> int:
    if isinstance(rate, bool) or not isinstance(rate, int):
        raise InvalidRate(f"{category.value} rate must be an integer, got {rate!r}")
    if rate <= 0:
        raise InvalidRate(f"{category.value} rate must be positive, got {rate}")
    if rate > MAX_AMOUNT:
        raise InvalidRate(f"{category.value} rate exceeds the maximum amount")
    return rate


@dataclass
class RateChange:
    """Audit record of a rate mutation."""
    category: BillingCategory
    old_rate: int
    new_rate: int
    changed_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict[str, object]:
        return {
            "category": self.category.value,
            "old_rate": self.old_rate,
            "new_rate": self.new_rate,
            "changed_at": self.changed_at,
        }


class RateTable:
    """
    Per-category conversion rates.

    Args:
        primary_rate: amount charged per primary unit
        secondary_rate: amount charged per secondary unit
        mutable: whether update() is allowed after construction
    """

    def __init__(self, primary_rate: int, secondary_rate: int, mutable: bool = True):
        self._rates: Dict[BillingCategory, int] = {
            BillingCategory.PRIMARY: _require_rate(BillingCategory.PRIMARY, primary_rate),
            BillingCategory.SECONDARY: _require_rate(BillingCategory.SECONDARY, secondary_rate),
        }
        self.mutable = mutable
        self._lock = Lock()
        self._history: List[RateChange] = []

    @property
    def primary_rate(self) -> int:
        return self._rates[BillingCategory.PRIMARY]

    @property
    def secondary_rate(self) -> int:
        return self._rates[BillingCategory.SECONDARY]

    def rate(self, category: BillingCategory) -> int:
        return self._rates[category]

    def convert(self, category: BillingCategory, units: int) -> int:
        """Convert a unit count into a billable amount at the current rate."""
        return checked_mul(units, self._rates[category])

    def update(self, category: BillingCategory, new_rate: int) -> RateChange:
        """
        Replace the rate for one category.

        Only usage reported after this call is priced at the new rate.
        """
        if not self.mutable:
            raise RatesLocked("Rates are fixed for the lifetime of this ledger")
        new_rate = _require_rate(category, new_rate)

        with self._lock:
            change = RateChange(
                category=category,
                old_rate=self._rates[category],
                new_rate=new_rate,
            )
            self._rates[category] = new_rate
            self._history.append(change)

        logger.info(
            "rate_updated",
            category=category.value,
            old_rate=change.old_rate,
            new_rate=change.new_rate,
        )
        return change

    def restore(self, category: BillingCategory, rate: int) -> None:
        """Load a previously persisted rate. Not an update: no history entry."""
        rate = _require_rate(category, rate)
        with self._lock:
            self._rates[category] = rate

    def get_history(self) -> List[RateChange]:
        return self._history.copy()

    def to_dict(self) -> Dict[str, object]:
        return {
            "primary_rate": self.primary_rate,
            "secondary_rate": self.secondary_rate,
            "mutable": self.mutable,
        }

    @classmethod
    def fixed(cls, primary_rate: int, secondary_rate: int) -> "RateTable":
        return cls(primary_rate, secondary_rate, mutable=False)
