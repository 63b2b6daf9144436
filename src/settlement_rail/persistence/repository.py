"""
Repository Layer for the Settlement Rail

- UsageRecordRepository: database-backed RecordStore for the usage ledger
- FactRepository / PersistentFactJournal: the fact chain kept in ledger_facts
- SettingsRepository: administrator-controlled rates and role holders

All of them share one Database, so a ledger write, its fact and any setting
change made inside Database.transaction() commit or roll back together.
"""

from datetime import datetime, timezone
from typing import Any, ContextManager, Dict, Iterator, List, Optional, Tuple
import structlog

from ..core.facts import GENESIS, FactJournal, FactType, LedgerFact, verify_chain
from ..core.ledger import RecordStore, UsageRecord
from ..crypto.signer import FactSigner
from .database import Database
from .models import (
    fact_from_row,
    fact_to_db_tuple,
    usage_record_from_row,
    usage_record_to_db_tuple,
)

logger = structlog.get_logger()

CHAIN_PAGE_SIZE = 1000


class UsageRecordRepository(RecordStore):
    """Repository for per-entity usage records."""

    UPSERT_SQL = """INSERT INTO usage_ledger
               (entity_id, primary_accumulated, secondary_accumulated,
                max_reported_epoch, last_primary_settled_epoch,
                last_secondary_settled_epoch, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT (entity_id) DO UPDATE SET
                primary_accumulated = excluded.primary_accumulated,
                secondary_accumulated = excluded.secondary_accumulated,
                max_reported_epoch = excluded.max_reported_epoch,
                last_primary_settled_epoch = excluded.last_primary_settled_epoch,
                last_secondary_settled_epoch = excluded.last_secondary_settled_epoch,
                updated_at = excluded.updated_at"""

    def __init__(self, db: Database):
        self.db = db

    def transaction(self) -> ContextManager[Any]:
        return self.db.transaction()

    def get(self, entity_id: str) -> Optional[UsageRecord]:
        results = self.db.execute(
            "SELECT * FROM usage_ledger WHERE entity_id = ?",
            (entity_id,)
        )
        return usage_record_from_row(results[0]) if results else None

    def save_many(self, records: List[UsageRecord]) -> None:
        """Upsert all records in a single transaction."""
        if not records:
            return
        self.db.execute_many(
            self.UPSERT_SQL,
            [usage_record_to_db_tuple(r) for r in records]
        )
        logger.debug("usage_records_saved", count=len(records))

    def entity_ids(self) -> List[str]:
        results = self.db.execute("SELECT entity_id FROM usage_ledger ORDER BY entity_id")
        return [r["entity_id"] for r in results]

    def count(self) -> int:
        results = self.db.execute("SELECT COUNT(*) as cnt FROM usage_ledger")
        return results[0]["cnt"] if results else 0


class FactRepository:
    """Repository for journal entries."""

    def __init__(self, db: Database):
        self.db = db

    def create(self, fact: LedgerFact) -> LedgerFact:
        self.db.execute(
            """INSERT INTO ledger_facts
               (fact_id, sequence, fact_type, entity_id, payload, timestamp,
                prev_hash, fact_hash, signature, key_id)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            fact_to_db_tuple(fact)
        )
        return fact

    def get_latest(self) -> Optional[LedgerFact]:
        """Tail of the chain."""
        results = self.db.execute(
            "SELECT * FROM ledger_facts ORDER BY sequence DESC LIMIT 1"
        )
        return fact_from_row(results[0]) if results else None

    def iter_chain(self, page_size: int = CHAIN_PAGE_SIZE) -> Iterator[LedgerFact]:
        """Every fact in sequence order, fetched page by page."""
        after = -1
        while True:
            results = self.db.execute(
                "SELECT * FROM ledger_facts WHERE sequence > ? ORDER BY sequence ASC LIMIT ?",
                (after, page_size)
            )
            for row in results:
                fact = fact_from_row(row)
                after = fact.sequence
                yield fact
            if len(results) < page_size:
                return

    def get_chain(self, limit: Optional[int] = None) -> List[LedgerFact]:
        """Facts in sequence order; with a limit, the first `limit` of them."""
        if limit is None:
            return list(self.iter_chain())
        results = self.db.execute(
            "SELECT * FROM ledger_facts ORDER BY sequence ASC LIMIT ?",
            (limit,)
        )
        return [fact_from_row(r) for r in results]

    def query(
        self,
        fact_type: Optional[FactType] = None,
        entity_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[LedgerFact]:
        """Matching facts in chain order; with a limit, the most recent ones."""
        clauses = []
        params: List[Any] = []
        if fact_type is not None:
            clauses.append("fact_type = ?")
            params.append(fact_type.value)
        if entity_id is not None:
            clauses.append("entity_id = ?")
            params.append(entity_id)

        sql = "SELECT * FROM ledger_facts"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        if limit is None:
            sql += " ORDER BY sequence ASC"
            return [fact_from_row(r) for r in self.db.execute(sql, tuple(params))]

        sql += " ORDER BY sequence DESC LIMIT ?"
        results = self.db.execute(sql, tuple(params) + (max(limit, 0),))
        return [fact_from_row(r) for r in reversed(results)]

    def get_by_entity(self, entity_id: str, limit: int = 1000) -> List[LedgerFact]:
        return self.query(entity_id=entity_id, limit=limit)

    def get_by_type(self, fact_type: FactType, limit: int = 1000) -> List[LedgerFact]:
        return self.query(fact_type=fact_type, limit=limit)

    def count(self) -> int:
        results = self.db.execute("SELECT COUNT(*) as cnt FROM ledger_facts")
        return results[0]["cnt"] if results else 0

    def verify_chain_integrity(
        self,
        signer: Optional[FactSigner] = None,
    ) -> Tuple[bool, Optional[str], int]:
        """
        Verify the whole stored chain.

        Returns (is_valid, error_message, chain_length)
        """
        is_valid, error = verify_chain(self.iter_chain(), signer)
        return (is_valid, error, self.count())

    def open_journal(self, signer: Optional[FactSigner] = None) -> "PersistentFactJournal":
        """Journal appending to this repository."""
        return PersistentFactJournal(self, signer=signer)


class PersistentFactJournal(FactJournal):
    """
    Fact journal kept in ledger_facts.

    The tail is read from the database on every append, inside the write
    transaction, so several processes sharing the database extend one chain.
    """

    def __init__(self, repository: FactRepository, signer: Optional[FactSigner] = None):
        super().__init__(signer=signer)
        self.repository = repository

    @property
    def facts(self) -> List[LedgerFact]:
        return self.repository.get_chain()

    def __len__(self) -> int:
        return self.repository.count()

    def _write_scope(self) -> ContextManager[Any]:
        return self.repository.db.transaction()

    def _next_link(self) -> Tuple[int, str]:
        last = self.repository.get_latest()
        if last is None:
            return 0, GENESIS
        return last.sequence + 1, last.compute_hash()

    def _store(self, fact: LedgerFact) -> None:
        self.repository.create(fact)

    def query(
        self,
        fact_type: Optional[FactType] = None,
        entity_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[LedgerFact]:
        return self.repository.query(fact_type=fact_type, entity_id=entity_id, limit=limit)

    def verify_chain_integrity(self) -> Tuple[bool, Optional[str]]:
        is_valid, error, _ = self.repository.verify_chain_integrity(self.signer)
        return is_valid, error

    def export(self) -> List[Dict[str, Any]]:
        return [f.to_dict() for f in self.repository.iter_chain()]


class SettingsRepository:
    """Key/value store for values the administrator can change at runtime."""

    UPSERT_SQL = """INSERT INTO ledger_settings (name, value, updated_at)
               VALUES (?, ?, ?)
               ON CONFLICT (name) DO UPDATE SET
                value = excluded.value,
                updated_at = excluded.updated_at"""

    def __init__(self, db: Database):
        self.db = db

    def load(self) -> Dict[str, str]:
        results = self.db.execute("SELECT name, value FROM ledger_settings")
        return {r["name"]: r["value"] for r in results}

    def save(self, name: str, value: Any) -> None:
        self.db.execute(
            self.UPSERT_SQL,
            (name, str(value), datetime.now(timezone.utc).isoformat())
        )
        logger.debug("setting_saved", name=name)
