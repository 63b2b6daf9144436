"""
Stripe Payment Rails

Payment rail collaborator backed by Stripe customer credit balances.

- A rail is a Stripe customer bound to an (entity, category) pair
- The lockup limit is the customer's prepaid credit (a negative Stripe
  balance), so a top-up in Stripe raises what can be settled
- Applying a settlement debits the credit with a balance transaction
- Terminating cancels the subscription tied to the entity's primary rail
"""

import os
from dataclasses import dataclass
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Dict, Optional, Tuple
import structlog
import stripe

from ..core.collaborator import PaymentRailCollaborator, RailError, RailRegistration
from ..core.rates import BillingCategory

logger = structlog.get_logger()


class StripeIntegrationError(RailError):
    """Raised when Stripe integration fails."""
    pass


@dataclass
class StripeRail:
    """A Stripe customer acting as a payment rail."""
    customer_id: str
    entity_id: str
    category: BillingCategory
    subscription_id: Optional[str] = None
    terminated_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "customer_id": self.customer_id,
            "entity_id": self.entity_id,
            "category": self.category.value,
            "subscription_id": self.subscription_id,
            "terminated_at": self.terminated_at,
        }


class StripePaymentRails(PaymentRailCollaborator):
    """
    Settles ledger amounts against Stripe customer credit.

    Amounts are passed to Stripe as integers in the smallest currency unit.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        currency: Optional[str] = None,
    ):
        """
        Initialize Stripe rails.

        Args:
            api_key: Stripe secret key (or STRIPE_API_KEY env var)
            currency: settlement currency (or STRIPE_CURRENCY env var, default usd)
        """
        self.api_key = api_key or os.environ.get("STRIPE_API_KEY")
        self.currency = currency or os.environ.get("STRIPE_CURRENCY", "usd")
        if not self.api_key:
            raise StripeIntegrationError("STRIPE_API_KEY is not configured")

        stripe.api_key = self.api_key
        self._rails: Dict[Tuple[str, BillingCategory], StripeRail] = {}
        self._lock = Lock()
        logger.info("stripe_rails_initialized", currency=self.currency)

    def register_rail(self, registration: RailRegistration) -> None:
        with self._lock:
            self._rails[(registration.entity_id, registration.category)] = StripeRail(
                customer_id=registration.rail_id,
                entity_id=registration.entity_id,
                category=registration.category,
                subscription_id=registration.subscription_id,
            )
        logger.info(
            "stripe_rail_registered",
            customer_id=registration.rail_id,
            entity_id=registration.entity_id,
            category=registration.category.value,
        )

    def get_rail(self, entity_id: str, category: BillingCategory) -> Optional[StripeRail]:
        return self._rails.get((entity_id, category))

    def get_rail_id(self, entity_id: str, category: BillingCategory) -> Optional[str]:
        rail = self._rails.get((entity_id, category))
        return rail.customer_id if rail else None

    def get_lockup_limit(self, rail_id: str) -> int:
        """Available customer credit; Stripe stores credit as a negative balance."""
        try:
            customer = stripe.Customer.retrieve(rail_id)
        except Exception as e:
            logger.error("stripe_customer_fetch_failed", customer_id=rail_id, error=str(e))
            raise StripeIntegrationError(f"Failed to fetch customer {rail_id}: {e}")

        balance = customer.balance or 0
        return max(0, -balance)

    def apply_settlement(
        self,
        entity_id: str,
        amount: int,
        category: BillingCategory,
    ) -> Dict[str, Any]:
        rail = self._rails.get((entity_id, category))
        if rail is None:
            raise StripeIntegrationError(f"No {category.value} rail for {entity_id}")

        try:
            transaction = stripe.Customer.create_balance_transaction(
                rail.customer_id,
                amount=amount,
                currency=self.currency,
                description=f"{category.value.lower()} usage settlement for {entity_id}",
                metadata={
                    "entity_id": entity_id,
                    "category": category.value,
                    "source": "settlement_rail",
                },
            )
        except Exception as e:
            logger.error(
                "stripe_settlement_failed",
                customer_id=rail.customer_id,
                entity_id=entity_id,
                error=str(e),
            )
            raise StripeIntegrationError(f"Failed to apply settlement: {e}")

        logger.info(
            "stripe_settlement_applied",
            transaction_id=transaction.id,
            customer_id=rail.customer_id,
            entity_id=entity_id,
            category=category.value,
            amount=amount,
        )

        return {
            "id": transaction.id,
            "customer_id": rail.customer_id,
            "amount": amount,
            "currency": self.currency,
            "ending_balance": transaction.ending_balance,
        }

    def top_up(self, rail_id: str, amount: int) -> int:
        """Credit the customer; a negative balance transaction adds credit."""
        if amount <= 0:
            raise StripeIntegrationError(f"Top-up amount must be positive, got {amount}")

        try:
            transaction = stripe.Customer.create_balance_transaction(
                rail_id,
                amount=-amount,
                currency=self.currency,
                description="lockup top-up",
                metadata={"source": "settlement_rail"},
            )
        except Exception as e:
            logger.error("stripe_top_up_failed", customer_id=rail_id, error=str(e))
            raise StripeIntegrationError(f"Failed to top up {rail_id}: {e}")

        lockup = max(0, -(transaction.ending_balance or 0))
        logger.info(
            "stripe_rail_topped_up",
            transaction_id=transaction.id,
            customer_id=rail_id,
            amount=amount,
            lockup_limit=lockup,
        )
        return lockup

    def terminate_rails(self, entity_id: str) -> Dict[str, Any]:
        rail = self._rails.get((entity_id, BillingCategory.PRIMARY))
        if rail is None:
            raise StripeIntegrationError(
                f"No {BillingCategory.PRIMARY.value} rail for {entity_id}"
            )

        status = "terminated"
        if rail.subscription_id:
            try:
                subscription = stripe.Subscription.cancel(rail.subscription_id)
                status = subscription.status
            except Exception as e:
                logger.error(
                    "stripe_subscription_cancel_failed",
                    subscription_id=rail.subscription_id,
                    error=str(e),
                )
                raise StripeIntegrationError(f"Failed to cancel subscription: {e}")

        rail.terminated_at = datetime.now(timezone.utc).isoformat()

        logger.warning(
            "stripe_rail_terminated",
            customer_id=rail.customer_id,
            entity_id=entity_id,
            subscription_id=rail.subscription_id,
        )

        return {
            "customer_id": rail.customer_id,
            "subscription_id": rail.subscription_id,
            "status": status,
            "terminated_at": rail.terminated_at,
        }
