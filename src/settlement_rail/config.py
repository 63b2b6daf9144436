"""
Configuration for the Settlement Rail

All settings come from environment variables; see RailConfig.from_env().
"""

import os
from dataclasses import dataclass, field
from typing import List, Optional

from .core.errors import ConfigurationError
from .core.settlement import SettlementPolicy


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}")


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    return raw.lower() in ("1", "true", "yes", "on")


@dataclass
class RailConfig:
    """Runtime configuration."""
    primary_rate: int = 1
    secondary_rate: int = 1
    rates_mutable: bool = True
    administrator: str = "admin"
    reporter: str = "reporter"
    settlement_policy: SettlementPolicy = SettlementPolicy.SKIP
    backend: str = "memory"  # memory | stripe
    database_url: Optional[str] = None  # in-memory store when unset
    signing_key: Optional[str] = None  # base64 Ed25519 private key
    api_key: str = "dev-key-change-in-production"
    stripe_api_key: Optional[str] = None
    stripe_currency: str = "usd"
    cors_origins: List[str] = field(default_factory=lambda: ["*"])

    @classmethod
    def from_env(cls) -> "RailConfig":
        policy_name = os.environ.get("RAIL_SETTLEMENT_POLICY", SettlementPolicy.SKIP.value)
        try:
            policy = SettlementPolicy[policy_name.upper()]
        except KeyError:
            raise ConfigurationError(f"Unknown settlement policy: {policy_name}")

        backend = os.environ.get("RAIL_BACKEND", "memory").lower()
        if backend not in ("memory", "stripe"):
            raise ConfigurationError(f"Unknown rail backend: {backend}")

        return cls(
            primary_rate=_env_int("RAIL_PRIMARY_RATE", 1),
            secondary_rate=_env_int("RAIL_SECONDARY_RATE", 1),
            rates_mutable=_env_bool("RAIL_RATES_MUTABLE", True),
            administrator=os.environ.get("RAIL_ADMINISTRATOR", "admin"),
            reporter=os.environ.get("RAIL_REPORTER", "reporter"),
            settlement_policy=policy,
            backend=backend,
            database_url=os.environ.get("DATABASE_URL") or None,
            signing_key=os.environ.get("RAIL_SIGNING_KEY") or None,
            api_key=os.environ.get("API_KEY", "dev-key-change-in-production"),
            stripe_api_key=os.environ.get("STRIPE_API_KEY") or None,
            stripe_currency=os.environ.get("STRIPE_CURRENCY", "usd"),
            cors_origins=os.environ.get("CORS_ORIGINS", "*").split(","),
        )
