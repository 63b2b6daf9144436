"""
Ledger Operator

Public entry point of the settlement rail. Wires the rate table, usage
ledger, settlement engine, access boundary and fact journal together and
gates every restricted call through the access boundary.

Calls are serialized: each one runs to completion (or fails) while holding
the operator lock, so two calls never interleave on the same record. With a
database store each call is also one ledger transaction, which serializes
operators in other processes sharing the database.
"""

from threading import RLock
from typing import Any, List, Optional, Sequence, Tuple
import structlog

from .config import RailConfig
from .core.access import AccessControl, Role
from .core.collaborator import PaymentRailCollaborator, RailRegistration
from .core.facts import FactJournal, FactType
from .core.ledger import RecordStore, UsageLedger, UsageRecord, require_entity_id
from .core.rates import BillingCategory, RateChange, RateTable
from .core.settlement import SettlementEngine, SettlementPolicy, SettlementResult

logger = structlog.get_logger()

# Setting names in the settings store
PRIMARY_RATE = "primary_rate"
SECONDARY_RATE = "secondary_rate"
ADMINISTRATOR = "administrator"
REPORTER = "reporter"

_RATE_SETTINGS = {
    BillingCategory.PRIMARY: PRIMARY_RATE,
    BillingCategory.SECONDARY: SECONDARY_RATE,
}


class LedgerOperator:
    """
    Usage accounting and settlement, behind role checks.

    Restricted:
    - record_usage / record_usage_batch / terminate: reporter
    - set_rate / set_reporter / transfer_administration / register_rail / top_up: administrator

    Open:
    - settle / settle_primary / settle_secondary
    - get_usage

    With a settings store, rate and role changes are written in the same
    transaction as their fact and reloaded on startup.
    """

    def __init__(
        self,
        rates: RateTable,
        access: AccessControl,
        rails: PaymentRailCollaborator,
        store: Optional[RecordStore] = None,
        journal: Optional[FactJournal] = None,
        policy: SettlementPolicy = SettlementPolicy.SKIP,
        settings: Optional[Any] = None,
    ):
        self.journal = journal if journal is not None else FactJournal()
        self.rates = rates
        self.access = access
        self.access.journal = self.journal
        self.rails = rails
        self.ledger = UsageLedger(rates, store=store, journal=self.journal)
        self.settlement = SettlementEngine(
            self.ledger, rails, policy=policy, journal=self.journal
        )
        self.settings = settings
        self._lock = RLock()

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def record_usage(
        self,
        caller: str,
        entity_id: str,
        epoch: int,
        primary_units: int,
        secondary_units: int,
    ) -> UsageRecord:
        with self._lock, self.ledger.transaction():
            self.reload_settings()
            self.access.require(Role.REPORTER, caller)
            return self.ledger.record_usage(entity_id, epoch, primary_units, secondary_units)

    def record_usage_batch(
        self,
        caller: str,
        entity_ids: Sequence[str],
        epochs: Sequence[int],
        primary_units: Sequence[int],
        secondary_units: Sequence[int],
    ) -> List[UsageRecord]:
        with self._lock, self.ledger.transaction():
            self.reload_settings()
            self.access.require(Role.REPORTER, caller)
            return self.ledger.record_usage_batch(
                entity_ids, epochs, primary_units, secondary_units
            )

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------

    def settle(
        self,
        category: BillingCategory,
        entity_ids: Sequence[str],
    ) -> List[SettlementResult]:
        # Not one transaction: each entity commits on its own
        with self._lock:
            return self.settlement.settle(category, entity_ids)

    def settle_primary(self, entity_ids: Sequence[str]) -> List[SettlementResult]:
        return self.settle(BillingCategory.PRIMARY, entity_ids)

    def settle_secondary(self, entity_ids: Sequence[str]) -> List[SettlementResult]:
        return self.settle(BillingCategory.SECONDARY, entity_ids)

    # ------------------------------------------------------------------
    # Termination
    # ------------------------------------------------------------------

    def terminate(self, caller: str, entity_id: str) -> Any:
        """
        Terminate the entity's primary rail with the payment collaborator.

        Accumulated amounts are left untouched and stay settleable.
        """
        with self._lock, self.ledger.transaction():
            self.reload_settings()
            self.access.require(Role.REPORTER, caller)
            entity_id = require_entity_id(entity_id)
            result = self.rails.terminate_rails(entity_id)

            logger.warning("rails_terminated", entity_id=entity_id)
            self.journal.append(FactType.TERMINATED, {"entity_id": entity_id})
            return result

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    def set_rate(self, caller: str, category: BillingCategory, new_rate: int) -> RateChange:
        with self._lock, self.ledger.transaction():
            self.reload_settings()
            self.access.require(Role.ADMINISTRATOR, caller)
            change = self.rates.update(category, new_rate)
            try:
                self._save_setting(_RATE_SETTINGS[category], change.new_rate)
                self.journal.append(FactType.RATE_UPDATED, {
                    "category": category.value,
                    "old_rate": change.old_rate,
                    "new_rate": change.new_rate,
                })
            except Exception:
                self.rates.restore(category, change.old_rate)
                raise
            return change

    def set_reporter(self, caller: str, new_reporter: str) -> Tuple[str, str]:
        with self._lock, self.ledger.transaction():
            self.reload_settings()
            old, new = self.access.set_reporter(caller, new_reporter)
            try:
                self._save_setting(REPORTER, new)
            except Exception:
                self.access.restore(reporter=old)
                raise
            return old, new

    def transfer_administration(self, caller: str, new_administrator: str) -> Tuple[str, str]:
        with self._lock, self.ledger.transaction():
            self.reload_settings()
            old, new = self.access.transfer_administration(caller, new_administrator)
            try:
                self._save_setting(ADMINISTRATOR, new)
            except Exception:
                self.access.restore(administrator=old)
                raise
            return old, new

    def register_rail(self, caller: str, registration: RailRegistration) -> None:
        with self._lock:
            self.reload_settings()
            self.access.require(Role.ADMINISTRATOR, caller)
            self.rails.register_rail(registration)

    def top_up(self, caller: str, rail_id: str, amount: int) -> int:
        """Raise a rail's lockup limit. Returns the new limit."""
        with self._lock:
            self.reload_settings()
            self.access.require(Role.ADMINISTRATOR, caller)
            lockup = self.rails.top_up(rail_id, amount)
            logger.info("rail_topped_up", rail_id=rail_id, amount=amount, lockup_limit=lockup)
            return lockup

    def reload_settings(self) -> None:
        """
        Apply persisted rates and role holders over the in-memory ones.

        Runs at startup and at the start of every gated call, so changes made
        by another process sharing the database take effect here too.
        """
        if self.settings is None:
            return
        saved = self.settings.load()
        for category, name in _RATE_SETTINGS.items():
            if name in saved:
                self.rates.restore(category, int(saved[name]))
        self.access.restore(
            administrator=saved.get(ADMINISTRATOR),
            reporter=saved.get(REPORTER),
        )

    def _save_setting(self, name: str, value: Any) -> None:
        if self.settings is not None:
            self.settings.save(name, value)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_usage(self, entity_id: str) -> UsageRecord:
        return self.ledger.get_record(entity_id)

    @classmethod
    def from_config(
        cls,
        config: RailConfig,
        rails: Optional[PaymentRailCollaborator] = None,
    ) -> "LedgerOperator":
        """Build an operator from configuration (database, signer, rails backend)."""
        from .crypto.signer import FactSigner

        signer = FactSigner.from_b64(config.signing_key) if config.signing_key else FactSigner()

        store: Optional[RecordStore] = None
        settings = None
        if config.database_url:
            from .persistence import (
                Database,
                FactRepository,
                SettingsRepository,
                UsageRecordRepository,
            )

            db = Database(config.database_url)
            db.initialize()
            store = UsageRecordRepository(db)
            settings = SettingsRepository(db)
            journal = FactRepository(db).open_journal(signer)
        else:
            journal = FactJournal(signer=signer)

        if rails is None:
            if config.backend == "stripe":
                from .billing.stripe_integration import StripePaymentRails
                rails = StripePaymentRails(
                    api_key=config.stripe_api_key,
                    currency=config.stripe_currency,
                )
            else:
                from .billing.rails import InMemoryPaymentRails
                rails = InMemoryPaymentRails()

        operator = cls(
            rates=RateTable(
                config.primary_rate,
                config.secondary_rate,
                mutable=config.rates_mutable,
            ),
            access=AccessControl(config.administrator, config.reporter),
            rails=rails,
            store=store,
            journal=journal,
            policy=config.settlement_policy,
            settings=settings,
        )
        operator.reload_settings()

        logger.info(
            "ledger_operator_ready",
            backend=config.backend,
            persistent=store is not None,
            policy=config.settlement_policy.value,
            key_id=signer.key_id,
        )
        return operator
