"""
In-Memory Payment Rails

Local implementation of the payment rail collaborator. Each rail holds a
lockup balance: applying a settlement draws it down and top_up() raises it
again. Used for development servers and tests; StripePaymentRails in
stripe_integration.py is the hosted counterpart.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Dict, List, Optional, Tuple
import structlog

from ..core.collaborator import PaymentRailCollaborator, RailError, RailRegistration
from ..core.rates import BillingCategory

logger = structlog.get_logger()


@dataclass
class RailState:
    rail_id: str
    entity_id: str
    category: BillingCategory
    lockup_limit: int = 0
    total_settled: int = 0
    terminated: bool = False
    terminated_at: Optional[str] = None


@dataclass
class SettlementReceipt:
    """Confirmation returned by the in-memory collaborator."""
    rail_id: str
    entity_id: str
    category: BillingCategory
    amount: int
    remaining_lockup: int
    applied_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


class InMemoryPaymentRails(PaymentRailCollaborator):
    """
    In-process payment rails.

    Each rail holds a lockup balance. Applying a settlement draws it down;
    top_up() raises it again. Terminating a rail stops nothing on the ledger
    side: already accrued amounts stay settleable while lockup remains.
    """

    def __init__(self):
        self._rails: Dict[str, RailState] = {}
        self._bindings: Dict[Tuple[str, BillingCategory], str] = {}
        self._payments: List[SettlementReceipt] = []
        self._lock = Lock()

    def register_rail(self, registration: RailRegistration) -> None:
        with self._lock:
            self._rails[registration.rail_id] = RailState(
                rail_id=registration.rail_id,
                entity_id=registration.entity_id,
                category=registration.category,
                lockup_limit=registration.lockup_limit,
            )
            self._bindings[(registration.entity_id, registration.category)] = registration.rail_id

        logger.info(
            "rail_registered",
            rail_id=registration.rail_id,
            entity_id=registration.entity_id,
            category=registration.category.value,
            lockup_limit=registration.lockup_limit,
        )

    def top_up(self, rail_id: str, amount: int) -> int:
        """Raise a rail's lockup limit. Returns the new limit."""
        if amount <= 0:
            raise RailError(f"Top-up amount must be positive, got {amount}")
        with self._lock:
            rail = self._require_rail(rail_id)
            rail.lockup_limit += amount
            return rail.lockup_limit

    def get_rail(self, rail_id: str) -> Optional[RailState]:
        return self._rails.get(rail_id)

    def get_rail_id(self, entity_id: str, category: BillingCategory) -> Optional[str]:
        return self._bindings.get((entity_id, category))

    def get_lockup_limit(self, rail_id: str) -> int:
        return self._require_rail(rail_id).lockup_limit

    def apply_settlement(
        self,
        entity_id: str,
        amount: int,
        category: BillingCategory,
    ) -> SettlementReceipt:
        with self._lock:
            rail_id = self._bindings.get((entity_id, category))
            if rail_id is None:
                raise RailError(f"No {category.value} rail for {entity_id}")
            rail = self._rails[rail_id]
            if amount > rail.lockup_limit:
                raise RailError(
                    f"Settlement of {amount} exceeds lockup {rail.lockup_limit} on {rail_id}"
                )

            rail.lockup_limit -= amount
            rail.total_settled += amount
            receipt = SettlementReceipt(
                rail_id=rail_id,
                entity_id=entity_id,
                category=category,
                amount=amount,
                remaining_lockup=rail.lockup_limit,
            )
            self._payments.append(receipt)

        return receipt

    def terminate_rails(self, entity_id: str) -> Optional[str]:
        with self._lock:
            rail_id = self._bindings.get((entity_id, BillingCategory.PRIMARY))
            if rail_id is None:
                raise RailError(f"No {BillingCategory.PRIMARY.value} rail for {entity_id}")
            rail = self._rails[rail_id]
            rail.terminated = True
            rail.terminated_at = datetime.now(timezone.utc).isoformat()
        return rail_id

    @property
    def payments(self) -> List[SettlementReceipt]:
        return self._payments.copy()

    def _require_rail(self, rail_id: str) -> RailState:
        rail = self._rails.get(rail_id)
        if rail is None:
            raise RailError(f"Unknown rail {rail_id}")
        return rail
