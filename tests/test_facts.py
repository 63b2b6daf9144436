"""
Tests for the Fact Journal

The journal must be hash-chained, signed and tamper-evident.
"""

from settlement_rail.core.facts import (
    GENESIS,
    FactJournal,
    FactType,
    LedgerFact,
    verify_chain,
)
from settlement_rail.crypto.signer import FactSigner


def _journal_with_facts(signer=None, count=3):
    journal = FactJournal(signer=signer)
    for i in range(count):
        journal.append(FactType.USAGE_REPORTED, {
            "entity_id": f"ds-{i % 2}",
            "from_epoch": i + 1,
            "to_epoch": i + 1,
            "primary_units": i,
            "secondary_units": 0,
        })
    return journal


class TestChain:
    """Test hash-chain linking."""

    def test_first_fact_links_to_genesis(self):
        journal = _journal_with_facts(count=1)

        assert journal.facts[0].prev_hash == GENESIS
        assert journal.facts[0].sequence == 0

    def test_facts_link_to_predecessor(self):
        facts = _journal_with_facts().facts

        for prev, fact in zip(facts, facts[1:]):
            assert fact.prev_hash == prev.compute_hash()
            assert fact.sequence == prev.sequence + 1

    def test_intact_chain_verifies(self):
        assert _journal_with_facts().verify_chain_integrity() == (True, None)

    def test_tampered_payload_detected(self):
        facts = _journal_with_facts().facts
        facts[1].payload["primary_units"] = 1_000_000

        is_valid, error = verify_chain(facts)

        assert is_valid is False
        assert error == "Hash chain broken at position 2"

    def test_removed_fact_detected(self):
        facts = _journal_with_facts().facts
        del facts[1]

        is_valid, error = verify_chain(facts)

        assert is_valid is False
        assert "position 1" in error

    def test_history_continues_chain(self):
        first = _journal_with_facts()
        resumed = FactJournal(history=first.facts)

        fact = resumed.append(FactType.TERMINATED, {"entity_id": "ds-0"})

        assert fact.sequence == 3
        assert fact.prev_hash == first.facts[-1].compute_hash()
        assert resumed.verify_chain_integrity()[0] is True

    def test_verify_consumes_a_stream(self):
        signer = FactSigner()
        journal = _journal_with_facts(signer=signer, count=4)

        assert verify_chain((f for f in journal.facts), signer) == (True, None)


class TestSignatures:
    """Test Ed25519 signing of entries."""

    def test_facts_are_signed(self):
        signer = FactSigner()
        journal = _journal_with_facts(signer=signer)

        for fact in journal.facts:
            assert fact.key_id == signer.key_id
            assert signer.verify(fact.signing_payload(), fact.signature).valid

    def test_signature_from_other_key_rejected(self):
        facts = _journal_with_facts(signer=FactSigner()).facts

        is_valid, error = verify_chain(facts, FactSigner())

        assert is_valid is False
        assert error == "Invalid signature at position 0"

    def test_dict_form_preserves_signature(self):
        signer = FactSigner()
        fact = _journal_with_facts(signer=signer, count=1).facts[0]

        restored = LedgerFact.from_dict(fact.to_dict())

        assert restored.compute_hash() == fact.compute_hash()
        assert signer.verify(restored.signing_payload(), restored.signature).valid


class TestSubscribersAndQueries:
    """Test observers and filtering."""

    def test_subscriber_sees_committed_facts(self):
        journal = FactJournal()
        seen = []
        journal.subscribe(seen.append)

        fact = journal.append(FactType.TERMINATED, {"entity_id": "ds-1"})

        assert seen == [fact]

    def test_failing_subscriber_does_not_block_append(self):
        journal = FactJournal()

        def broken(fact):
            raise RuntimeError("boom")

        journal.subscribe(broken)
        journal.append(FactType.TERMINATED, {"entity_id": "ds-1"})

        assert len(journal) == 1

    def test_query_filters_by_entity_and_limit(self):
        journal = _journal_with_facts(count=5)

        facts = journal.query(entity_id="ds-0")
        assert [f.payload["from_epoch"] for f in facts] == [1, 3, 5]

        latest = journal.query(entity_id="ds-0", limit=1)
        assert latest[0].payload["from_epoch"] == 5

    def test_export_is_ordered(self):
        exported = _journal_with_facts().export()

        assert [e["sequence"] for e in exported] == [0, 1, 2]
        assert exported[0]["fact_type"] == "USAGE_REPORTED"
