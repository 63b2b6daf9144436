"""
SETTLEMENT RAIL - Billing Module

Payment rail collaborators the settlement engine settles against:
- InMemoryPaymentRails: local lockup balances for development and tests
- StripePaymentRails: Stripe customer credit balances
"""

from .rails import InMemoryPaymentRails, RailState, SettlementReceipt
from .stripe_integration import (
    StripePaymentRails,
    StripeRail,
    StripeIntegrationError,
)

__all__ = [
    "InMemoryPaymentRails",
    "RailState",
    "SettlementReceipt",
    "StripePaymentRails",
    "StripeRail",
    "StripeIntegrationError",
]
