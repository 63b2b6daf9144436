"""
Settlement Engine

Settles accumulated amounts for one billing category against the payment
collaborator, bounded by the lockup limit each rail reports at call time.

Per entity (SKIP policy):
1. uninitialized record            -> skip
2. nothing accumulated             -> skip
3. no rail configured              -> skip
4. settle_amount = min(accumulated, lockup)
5. settle_amount == 0              -> skip
6. collaborator.apply_settlement(entity, settle_amount, category)
7. ledger decremented by exactly settle_amount, settled epoch advanced
8. SETTLED fact emitted

Settlement can be partial and is safe to repeat: a second call with nothing
new accumulated is a no-op, and a call after the lockup is topped up drains
the remainder.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence
import structlog

from .collaborator import PaymentRailCollaborator
from .errors import InvalidEntityId, NoUsageToSettle, UninitializedEntity
from .facts import FactJournal, FactType
from .ledger import UsageLedger, require_entity_id
from .rates import BillingCategory

logger = structlog.get_logger()


class SettlementPolicy(Enum):
    """How to treat entities with nothing to settle."""
    SKIP = "SKIP"  # Silent no-op, keeps batches non-blocking
    STRICT = "STRICT"  # Raise before any collaborator call


class SkipReason(Enum):
    UNINITIALIZED = "UNINITIALIZED"
    NOTHING_TO_SETTLE = "NOTHING_TO_SETTLE"
    NO_RAIL = "NO_RAIL"
    LOCKUP_EXHAUSTED = "LOCKUP_EXHAUSTED"


@dataclass
class SettlementResult:
    """Outcome of settling one entity."""
    entity_id: str
    category: BillingCategory
    settled_amount: int = 0
    remaining: int = 0
    from_epoch: Optional[int] = None
    to_epoch: Optional[int] = None
    lockup_limit: Optional[int] = None
    skipped: Optional[SkipReason] = None

    @property
    def settled(self) -> bool:
        return self.settled_amount > 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity_id": self.entity_id,
            "category": self.category.value,
            "settled_amount": self.settled_amount,
            "remaining": self.remaining,
            "from_epoch": self.from_epoch,
            "to_epoch": self.to_epoch,
            "lockup_limit": self.lockup_limit,
            "skipped": self.skipped.value if self.skipped else None,
        }


class SettlementEngine:
    """
    Lockup-bounded, repeatable settlement.

    Entities in a batch are processed sequentially and independently, each in
    its own ledger transaction. A collaborator exception propagates
    unmodified; entities settled earlier in the batch keep their committed
    state.
    """

    def __init__(
        self,
        ledger: UsageLedger,
        rails: PaymentRailCollaborator,
        policy: SettlementPolicy = SettlementPolicy.SKIP,
        journal: Optional[FactJournal] = None,
    ):
        self.ledger = ledger
        self.rails = rails
        self.policy = policy
        self.journal = journal

    def settle(
        self,
        category: BillingCategory,
        entity_ids: Sequence[str],
    ) -> List[SettlementResult]:
        """Settle one category for each entity in order."""
        if isinstance(entity_ids, (str, bytes)):
            raise InvalidEntityId("entity_ids must be a sequence of ids, not a string")
        entity_ids = [require_entity_id(e) for e in entity_ids]

        if self.policy == SettlementPolicy.STRICT:
            self._check_preconditions(category, entity_ids)

        results = [self.settle_entity(category, entity_id) for entity_id in entity_ids]

        logger.info(
            "settlement_batch_complete",
            category=category.value,
            entities=len(results),
            settled=sum(1 for r in results if r.settled),
            total_amount=sum(r.settled_amount for r in results),
        )
        return results

    def settle_entity(self, category: BillingCategory, entity_id: str) -> SettlementResult:
        """Settle one entity in its own ledger transaction."""
        with self.ledger.transaction():
            return self._settle_entity(category, entity_id)

    def _settle_entity(self, category: BillingCategory, entity_id: str) -> SettlementResult:
        record = self.ledger.get_record(entity_id)
        accumulated = record.accumulated(category)

        if not record.is_initialized:
            return self._skip(entity_id, category, SkipReason.UNINITIALIZED, accumulated)

        if accumulated == 0:
            return self._skip(entity_id, category, SkipReason.NOTHING_TO_SETTLE, accumulated)

        rail_id = self.rails.get_rail_id(entity_id, category)
        if not rail_id:
            return self._skip(entity_id, category, SkipReason.NO_RAIL, accumulated)

        lockup = max(self.rails.get_lockup_limit(rail_id), 0)
        settle_amount = min(accumulated, lockup)
        if settle_amount == 0:
            return self._skip(
                entity_id, category, SkipReason.LOCKUP_EXHAUSTED, accumulated, lockup
            )

        try:
            self.rails.apply_settlement(entity_id, settle_amount, category)
        except Exception as e:
            logger.error(
                "settlement_collaborator_failed",
                entity_id=entity_id,
                category=category.value,
                amount=settle_amount,
                error=str(e),
            )
            raise

        record, from_epoch, to_epoch = self.ledger.apply_settlement(
            entity_id, category, settle_amount
        )

        logger.info(
            "settlement_applied",
            entity_id=entity_id,
            category=category.value,
            amount=settle_amount,
            remaining=record.accumulated(category),
            from_epoch=from_epoch,
            to_epoch=to_epoch,
        )
        if self.journal is not None:
            self.journal.append(FactType.SETTLED, {
                "entity_id": entity_id,
                "category": category.value,
                "from_epoch": from_epoch,
                "to_epoch": to_epoch,
                "amount": settle_amount,
            })

        return SettlementResult(
            entity_id=entity_id,
            category=category,
            settled_amount=settle_amount,
            remaining=record.accumulated(category),
            from_epoch=from_epoch,
            to_epoch=to_epoch,
            lockup_limit=lockup,
        )

    def _check_preconditions(self, category: BillingCategory, entity_ids: List[str]) -> None:
        for entity_id in entity_ids:
            record = self.ledger.get_record(entity_id)
            if not record.is_initialized:
                raise UninitializedEntity(entity_id)
            if record.accumulated(category) == 0:
                raise NoUsageToSettle(entity_id, category.value)

    def _skip(
        self,
        entity_id: str,
        category: BillingCategory,
        reason: SkipReason,
        accumulated: int,
        lockup: Optional[int] = None,
    ) -> SettlementResult:
        logger.debug(
            "settlement_skipped",
            entity_id=entity_id,
            category=category.value,
            reason=reason.value,
        )
        return SettlementResult(
            entity_id=entity_id,
            category=category,
            remaining=accumulated,
            lockup_limit=lockup,
            skipped=reason,
        )
