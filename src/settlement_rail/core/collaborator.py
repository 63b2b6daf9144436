"""
Payment Rail Collaborator Interface

The ledger never moves funds. It asks an external payment system, through
this narrow interface, for the rail bound to an (entity, category) pair, the
lockup limit currently available on that rail, and to apply a settlement.
Implementations live in the billing package.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Optional

from .rates import BillingCategory


class RailError(Exception):
    """Raised by a payment collaborator when it refuses an operation."""
    pass


@dataclass
class RailRegistration:
    """Provisioning request binding a rail to an (entity, category) pair."""
    entity_id: str
    category: BillingCategory
    rail_id: str
    lockup_limit: int = 0
    subscription_id: Optional[str] = None


class PaymentRailCollaborator(ABC):
    """Narrow settlement interface consumed by the settlement engine."""

    @abstractmethod
    def get_rail_id(self, entity_id: str, category: BillingCategory) -> Optional[str]:
        """Rail identifier for the pair, or None if no rail is configured."""
        pass

    @abstractmethod
    def get_lockup_limit(self, rail_id: str) -> int:
        """Amount currently available to settle against the rail."""
        pass

    @abstractmethod
    def apply_settlement(self, entity_id: str, amount: int, category: BillingCategory) -> Any:
        """Apply a bounded settlement. Raises on refusal."""
        pass

    @abstractmethod
    def terminate_rails(self, entity_id: str) -> Any:
        """Terminate the entity's primary-category rail."""
        pass

    @abstractmethod
    def register_rail(self, registration: RailRegistration) -> None:
        pass

    @abstractmethod
    def top_up(self, rail_id: str, amount: int) -> int:
        """Raise the rail's lockup limit. Returns the new limit."""
        pass
