"""
Observable Ledger Facts

Every state change the ledger commits is published as a fact: usage
reported, settled, terminated, and the administrative changes to rates and
roles. Facts are appended to a hash-chained journal so that an external
reconciler can replay them in order and detect gaps or tampering.

Each entry links to its predecessor via prev_hash (SHA3-256 of the previous
entry) and is optionally signed with Ed25519.
"""

import hashlib
import json
import uuid
from contextlib import nullcontext
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from threading import Lock
from typing import Any, Callable, ContextManager, Dict, Iterable, List, Optional, Tuple
import structlog

from ..crypto.signer import FactSigner

logger = structlog.get_logger()

GENESIS = "GENESIS"


class FactType(Enum):
    USAGE_REPORTED = "USAGE_REPORTED"
    SETTLED = "SETTLED"
    TERMINATED = "TERMINATED"
    RATE_UPDATED = "RATE_UPDATED"
    REPORTER_UPDATED = "REPORTER_UPDATED"
    ADMINISTRATOR_TRANSFERRED = "ADMINISTRATOR_TRANSFERRED"


@dataclass
class LedgerFact:
    """A single journal entry."""
    fact_id: str
    fact_type: FactType
    payload: Dict[str, Any]
    timestamp: str

    # Chain linking
    sequence: int
    prev_hash: str

    signature: Optional[str] = None
    key_id: str = ""

    @property
    def entity_id(self) -> Optional[str]:
        return self.payload.get("entity_id")

    def signing_payload(self) -> bytes:
        """Canonical bytes covered by the signature."""
        return json.dumps({
            "fact_id": self.fact_id,
            "fact_type": self.fact_type.value,
            "payload": self.payload,
            "timestamp": self.timestamp,
            "sequence": self.sequence,
            "prev_hash": self.prev_hash,
        }, sort_keys=True, separators=(',', ':')).encode('utf-8')

    def compute_hash(self) -> str:
        return hashlib.sha3_256(self.signing_payload()).hexdigest()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fact_id": self.fact_id,
            "fact_type": self.fact_type.value,
            "payload": self.payload,
            "timestamp": self.timestamp,
            "sequence": self.sequence,
            "prev_hash": self.prev_hash,
            "signature": self.signature,
            "key_id": self.key_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LedgerFact":
        return cls(
            fact_id=data["fact_id"],
            fact_type=FactType(data["fact_type"]),
            payload=data["payload"],
            timestamp=data["timestamp"],
            sequence=data["sequence"],
            prev_hash=data["prev_hash"],
            signature=data.get("signature"),
            key_id=data.get("key_id") or "",
        )


def verify_chain(
    facts: Iterable[LedgerFact],
    signer: Optional[FactSigner] = None,
) -> Tuple[bool, Optional[str]]:
    """
    Verify sequence numbering, hash links and (when a signer is given)
    signatures of facts in chain order. Accepts any iterable, so a stored
    chain can be streamed page by page.

    Returns (is_valid, error_message)
    """
    prev_hash = GENESIS
    for i, fact in enumerate(facts):
        if fact.sequence != i:
            return (False, f"Sequence mismatch at position {i}")
        if fact.prev_hash != prev_hash:
            return (False, f"Hash chain broken at position {i}")
        if signer is not None and fact.signature is not None:
            if not signer.verify(fact.signing_payload(), fact.signature).valid:
                return (False, f"Invalid signature at position {i}")
        prev_hash = fact.compute_hash()
    return (True, None)


class FactJournal:
    """
    Append-only, hash-chained journal of ledger facts, held in memory.

    Args:
        signer: optional Ed25519 signer applied to every entry
        history: earlier entries to continue the chain from

    Subclasses that keep the chain elsewhere override _write_scope(),
    _next_link() and _store(), plus the read methods.
    """

    def __init__(
        self,
        signer: Optional[FactSigner] = None,
        history: Optional[List[LedgerFact]] = None,
    ):
        self.signer = signer
        self._facts: List[LedgerFact] = list(history or [])
        self._subscribers: List[Callable[[LedgerFact], None]] = []
        self._lock = Lock()
        self._prev_hash = self._facts[-1].compute_hash() if self._facts else GENESIS

    @property
    def facts(self) -> List[LedgerFact]:
        return self._facts.copy()

    def __len__(self) -> int:
        return len(self._facts)

    def _write_scope(self) -> ContextManager[Any]:
        return nullcontext()

    def _next_link(self) -> Tuple[int, str]:
        """(sequence, prev_hash) for the next entry."""
        return len(self._facts), self._prev_hash

    def _store(self, fact: LedgerFact) -> None:
        self._facts.append(fact)
        self._prev_hash = fact.compute_hash()

    def append(self, fact_type: FactType, payload: Dict[str, Any]) -> LedgerFact:
        with self._lock, self._write_scope():
            sequence, prev_hash = self._next_link()
            fact = LedgerFact(
                fact_id=f"FCT-{uuid.uuid4().hex[:12].upper()}",
                fact_type=fact_type,
                payload=payload,
                timestamp=datetime.now(timezone.utc).isoformat(),
                sequence=sequence,
                prev_hash=prev_hash,
            )
            if self.signer is not None:
                fact.signature = self.signer.sign(fact.signing_payload())
                fact.key_id = self.signer.key_id
            self._store(fact)

        logger.debug(
            "fact_appended",
            fact_id=fact.fact_id,
            fact_type=fact_type.value,
            sequence=fact.sequence,
        )

        for callback in self._subscribers:
            try:
                callback(fact)
            except Exception as e:
                logger.error("fact_subscriber_error", fact_id=fact.fact_id, error=str(e))

        return fact

    def subscribe(self, callback: Callable[[LedgerFact], None]) -> None:
        """Register a callback invoked after each appended fact."""
        self._subscribers.append(callback)

    def query(
        self,
        fact_type: Optional[FactType] = None,
        entity_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[LedgerFact]:
        """Matching facts in chain order; with a limit, the most recent ones."""
        facts = [
            f for f in self._facts
            if (fact_type is None or f.fact_type == fact_type)
            and (entity_id is None or f.entity_id == entity_id)
        ]
        if limit is not None:
            facts = facts[-limit:] if limit > 0 else []
        return facts

    def verify_chain_integrity(self) -> Tuple[bool, Optional[str]]:
        return verify_chain(self._facts, self.signer)

    def export(self) -> List[Dict[str, Any]]:
        return [f.to_dict() for f in self._facts]
