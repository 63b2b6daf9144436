"""
Usage Ledger

Per-entity accumulator of reported-but-unsettled billable amounts.

Records are created lazily on first report and never deleted. An entity that
was never reported reads back as an all-zero record; "initialized" means
max_reported_epoch > 0.

Invariants:
- max_reported_epoch strictly increases on every accepted report
- last_*_settled_epoch <= max_reported_epoch
- accumulators grow only on report and shrink only by a settled amount
- the two categories are updated independently
"""

from abc import ABC, abstractmethod
from contextlib import nullcontext
from dataclasses import dataclass, replace
from typing import Any, ContextManager, Dict, Iterable, List, Optional, Sequence, Tuple
import structlog

from .epoch import EpochValidator
from .errors import InvalidEntityId, LedgerError
from .facts import FactJournal, FactType
from .rates import BillingCategory, RateTable, checked_add

logger = structlog.get_logger()


@dataclass
class UsageRecord:
    """Ledger state for one tracked entity."""
    entity_id: str
    primary_accumulated: int = 0
    secondary_accumulated: int = 0
    max_reported_epoch: int = 0
    last_primary_settled_epoch: int = 0
    last_secondary_settled_epoch: int = 0

    @property
    def is_initialized(self) -> bool:
        return self.max_reported_epoch > 0

    def accumulated(self, category: BillingCategory) -> int:
        if category == BillingCategory.PRIMARY:
            return self.primary_accumulated
        return self.secondary_accumulated

    def last_settled_epoch(self, category: BillingCategory) -> int:
        if category == BillingCategory.PRIMARY:
            return self.last_primary_settled_epoch
        return self.last_secondary_settled_epoch

    def copy(self) -> "UsageRecord":
        return replace(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity_id": self.entity_id,
            "primary_accumulated": self.primary_accumulated,
            "secondary_accumulated": self.secondary_accumulated,
            "max_reported_epoch": self.max_reported_epoch,
            "last_primary_settled_epoch": self.last_primary_settled_epoch,
            "last_secondary_settled_epoch": self.last_secondary_settled_epoch,
        }


class RecordStore(ABC):
    """Key-indexed storage for usage records."""

    @abstractmethod
    def get(self, entity_id: str) -> Optional[UsageRecord]:
        """Return a copy of the stored record, or None if never written."""
        pass

    @abstractmethod
    def save_many(self, records: Sequence[UsageRecord]) -> None:
        """Persist all records atomically (all or none)."""
        pass

    @abstractmethod
    def entity_ids(self) -> List[str]:
        pass

    def save(self, record: UsageRecord) -> None:
        self.save_many([record])

    def transaction(self) -> ContextManager[Any]:
        """
        Unit of work spanning reads, writes and fact appends.

        Stores without transactions rely on the operator lock.
        """
        return nullcontext()


class InMemoryRecordStore(RecordStore):
    """Dictionary-backed store; the default for tests and development."""

    def __init__(self):
        self._records: Dict[str, UsageRecord] = {}

    def get(self, entity_id: str) -> Optional[UsageRecord]:
        record = self._records.get(entity_id)
        return record.copy() if record else None

    def save_many(self, records: Sequence[UsageRecord]) -> None:
        # Dict assignment cannot fail midway, so this is atomic
        for record in records:
            self._records[record.entity_id] = record.copy()

    def entity_ids(self) -> List[str]:
        return list(self._records)


@dataclass
class _PendingReport:
    entity_id: str
    from_epoch: int
    to_epoch: int
    primary_units: int
    secondary_units: int


def require_entity_id(entity_id: Any) -> str:
    if entity_id is None or isinstance(entity_id, bool) or str(entity_id) == "":
        raise InvalidEntityId(f"Invalid entity id: {entity_id!r}")
    return str(entity_id)


class UsageLedger:
    """
    Accumulates usage reports into per-entity billable amounts.

    Amounts are converted at report time with the rate in effect then.
    """

    def __init__(
        self,
        rates: RateTable,
        store: Optional[RecordStore] = None,
        validator: Optional[EpochValidator] = None,
        journal: Optional[FactJournal] = None,
    ):
        self.rates = rates
        self.store = store if store is not None else InMemoryRecordStore()
        self.validator = validator or EpochValidator()
        self.journal = journal

    def transaction(self) -> ContextManager[Any]:
        return self.store.transaction()

    def get_record(self, entity_id: str) -> UsageRecord:
        """Record for an entity; all-zero defaults if never reported."""
        entity_id = require_entity_id(entity_id)
        return self.store.get(entity_id) or UsageRecord(entity_id=entity_id)

    def record_usage(
        self,
        entity_id: str,
        epoch: int,
        primary_units: int,
        secondary_units: int,
    ) -> UsageRecord:
        """Record a single usage rollup."""
        return self.record_usage_batch(
            [entity_id], [epoch], [primary_units], [secondary_units]
        )[0]

    def record_usage_batch(
        self,
        entity_ids: Sequence[str],
        epochs: Sequence[int],
        primary_units: Sequence[int],
        secondary_units: Sequence[int],
    ) -> List[UsageRecord]:
        """
        Record a batch of usage rollups.

        All-or-nothing: every tuple is validated and applied against a staged
        copy of the affected records, and the copies are only written once the
        whole batch has passed. The reads, the write and the USAGE_REPORTED
        facts share one store transaction. Returns the updated record for
        each tuple.
        """
        size = self.validator.validate_batch_shape(
            entity_ids, epochs, primary_units, secondary_units
        )
        with self.transaction():
            return self._apply_batch(size, entity_ids, epochs, primary_units, secondary_units)

    def _apply_batch(
        self,
        size: int,
        entity_ids: Sequence[str],
        epochs: Sequence[int],
        primary_units: Sequence[int],
        secondary_units: Sequence[int],
    ) -> List[UsageRecord]:
        staged: Dict[str, UsageRecord] = {}
        pending: List[_PendingReport] = []
        results: List[UsageRecord] = []

        for i in range(size):
            entity_id = require_entity_id(entity_ids[i])
            record = staged.get(entity_id) or self.get_record(entity_id)

            self.validator.validate(entity_id, epochs[i], record.max_reported_epoch)
            p_units = self.validator.validate_units(entity_id, primary_units[i])
            s_units = self.validator.validate_units(entity_id, secondary_units[i])

            p_amount = self.rates.convert(BillingCategory.PRIMARY, p_units)
            s_amount = self.rates.convert(BillingCategory.SECONDARY, s_units)

            pending.append(_PendingReport(
                entity_id=entity_id,
                from_epoch=record.max_reported_epoch + 1,
                to_epoch=epochs[i],
                primary_units=p_units,
                secondary_units=s_units,
            ))

            record.primary_accumulated = checked_add(record.primary_accumulated, p_amount)
            record.secondary_accumulated = checked_add(record.secondary_accumulated, s_amount)
            record.max_reported_epoch = epochs[i]
            staged[entity_id] = record
            results.append(record.copy())

        if not staged:
            return []

        self.store.save_many(list(staged.values()))

        for report in pending:
            logger.info(
                "usage_recorded",
                entity_id=report.entity_id,
                from_epoch=report.from_epoch,
                to_epoch=report.to_epoch,
                primary_units=report.primary_units,
                secondary_units=report.secondary_units,
            )
            if self.journal is not None:
                self.journal.append(FactType.USAGE_REPORTED, {
                    "entity_id": report.entity_id,
                    "from_epoch": report.from_epoch,
                    "to_epoch": report.to_epoch,
                    "primary_units": report.primary_units,
                    "secondary_units": report.secondary_units,
                })

        if size > 1:
            logger.info("usage_batch_recorded", reports=size, entities=len(staged))

        return results

    def apply_settlement(
        self,
        entity_id: str,
        category: BillingCategory,
        amount: int,
    ) -> Tuple[UsageRecord, int, int]:
        """
        Decrement one category's accumulator by an amount the payment
        collaborator accepted, and advance its settled epoch.

        Returns (updated_record, from_epoch, to_epoch) for the settled range.
        Draining a remainder left by an earlier partial settlement, with no
        new reports since, yields the single epoch (to_epoch, to_epoch).
        """
        record = self.get_record(entity_id)
        accumulated = record.accumulated(category)
        if amount <= 0 or amount > accumulated:
            raise LedgerError(
                f"Cannot settle {amount} of {accumulated} for {entity_id} ({category.value})"
            )

        to_epoch = record.max_reported_epoch
        from_epoch = min(record.last_settled_epoch(category) + 1, to_epoch)

        if category == BillingCategory.PRIMARY:
            record.primary_accumulated -= amount
            record.last_primary_settled_epoch = to_epoch
        else:
            record.secondary_accumulated -= amount
            record.last_secondary_settled_epoch = to_epoch

        self.store.save(record)
        return record, from_epoch, to_epoch

    def entity_ids(self) -> Iterable[str]:
        return self.store.entity_ids()
