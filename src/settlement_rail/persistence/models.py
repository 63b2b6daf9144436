"""
Row Mapping for the Persistence Layer

Converts between core domain objects and database rows.
"""

import json
from datetime import datetime, timezone
from typing import Any, Dict

from ..core.facts import FactType, LedgerFact
from ..core.ledger import UsageRecord


def usage_record_to_db_tuple(record: UsageRecord) -> tuple:
    """Insert/upsert tuple for usage_ledger."""
    return (
        record.entity_id,
        str(record.primary_accumulated),
        str(record.secondary_accumulated),
        record.max_reported_epoch,
        record.last_primary_settled_epoch,
        record.last_secondary_settled_epoch,
        datetime.now(timezone.utc).isoformat(),
    )


def usage_record_from_row(row: Dict[str, Any]) -> UsageRecord:
    return UsageRecord(
        entity_id=row["entity_id"],
        primary_accumulated=int(row["primary_accumulated"]),
        secondary_accumulated=int(row["secondary_accumulated"]),
        max_reported_epoch=int(row["max_reported_epoch"]),
        last_primary_settled_epoch=int(row["last_primary_settled_epoch"]),
        last_secondary_settled_epoch=int(row["last_secondary_settled_epoch"]),
    )


def fact_to_db_tuple(fact: LedgerFact) -> tuple:
    return (
        fact.fact_id,
        fact.sequence,
        fact.fact_type.value,
        fact.entity_id,
        json.dumps(fact.payload, sort_keys=True),
        fact.timestamp,
        fact.prev_hash,
        fact.compute_hash(),
        fact.signature,
        fact.key_id,
    )


def fact_from_row(row: Dict[str, Any]) -> LedgerFact:
    # Timestamp is read back verbatim: it is covered by the hash and signature
    return LedgerFact(
        fact_id=row["fact_id"],
        fact_type=FactType(row["fact_type"]),
        payload=json.loads(row["payload"]),
        timestamp=row["timestamp"],
        sequence=int(row["sequence"]),
        prev_hash=row["prev_hash"],
        signature=row.get("signature"),
        key_id=row.get("key_id") or "",
    )
