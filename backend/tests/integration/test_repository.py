"""
Integration tests for the negotiation repository.

WHAT: Test create, load, versioned save and listing against SQLite
WHY: The compare-and-swap write is what keeps separate processes consistent
HOW: Fresh file-backed database per test
"""

import pytest
from datetime import timedelta, timezone
from decimal import Decimal

from blindtrade.core.repository import SaveResult
from blindtrade.models.negotiation import EntityType, NegotiationRecord, NegotiationStatus

from tests.fixtures.parties import BUYER_ID, ENTITY_ID, OUTSIDER_ID, SELLER_ID


def new_record(entity_id=ENTITY_ID, buyer_id=BUYER_ID, seller_id=SELLER_ID, **overrides):
    fields = {
        "entity_id": entity_id,
        "entity_type": EntityType.LEAD,
        "buyer_id": buyer_id,
        "seller_id": seller_id,
        "current_offer": Decimal("5000"),
        "version": 1,
        **overrides,
    }
    return NegotiationRecord(**fields)


def next_version(record, operation):
    """Apply a state machine event and bump the version like the service does."""
    updated = operation(record).record
    updated.version = record.version + 1
    return updated


@pytest.mark.integration
class TestCreateAndLoad:
    """Test inserting and reading back records."""

    def test_round_trip(self, repository, state_machine, simple_quote):
        record = new_record()
        assert repository.create(record) == SaveResult.OK

        updated = next_version(record, lambda r: state_machine.send_quote(r, SELLER_ID, simple_quote))
        assert repository.save(updated, expected_version=1) == SaveResult.OK

        loaded = repository.load(record.id)
        assert loaded.status == NegotiationStatus.COUNTER_OFFERED
        assert loaded.current_offer == Decimal("5310.00")
        assert loaded.version == 2
        assert [m.model_dump() for m in loaded.messages] == [m.model_dump() for m in updated.messages]
        assert loaded.messages[0].quote_details.final_price == Decimal("5310.00")

    def test_timestamps_come_back_as_utc(self, repository):
        record = new_record()
        repository.create(record)

        loaded = repository.load(record.id)

        assert loaded.created_at.tzinfo is not None
        assert loaded.created_at.utcoffset() == timedelta(0)
        assert loaded.created_at == record.created_at.astimezone(timezone.utc)

    def test_unknown_id(self, repository):
        assert repository.load("NEG-MISSING") is None

    def test_duplicate_triple_conflicts(self, repository):
        assert repository.create(new_record()) == SaveResult.OK
        assert repository.create(new_record()) == SaveResult.CONFLICT

    def test_create_requires_version_one(self, repository):
        with pytest.raises(ValueError):
            repository.create(new_record(version=2))

    def test_find_by_triple(self, repository):
        record = new_record()
        repository.create(record)

        assert repository.find_by_triple(ENTITY_ID, BUYER_ID, SELLER_ID).id == record.id
        assert repository.find_by_triple(ENTITY_ID, SELLER_ID, BUYER_ID) is None


@pytest.mark.integration
class TestVersionedSave:
    """Test compare-and-swap semantics."""

    def test_stale_writer_loses(self, repository, state_machine):
        record = new_record()
        repository.create(record)

        first = next_version(record, lambda r: state_machine.send_message(r, BUYER_ID, "first"))
        second = next_version(record, lambda r: state_machine.send_message(r, SELLER_ID, "second"))

        assert repository.save(first, expected_version=1) == SaveResult.OK
        assert repository.save(second, expected_version=1) == SaveResult.CONFLICT

        loaded = repository.load(record.id)
        assert [m.text for m in loaded.messages] == ["first"]
        assert loaded.version == 2

    def test_version_must_advance_by_one(self, repository, state_machine):
        record = new_record()
        repository.create(record)
        updated = state_machine.send_message(record, BUYER_ID, "hi").record
        updated.version = 5

        with pytest.raises(ValueError):
            repository.save(updated, expected_version=1)

    def test_only_new_messages_are_inserted(self, repository, state_machine):
        record = new_record()
        repository.create(record)
        v2 = next_version(record, lambda r: state_machine.send_message(r, BUYER_ID, "one"))
        repository.save(v2, expected_version=1)
        v3 = next_version(v2, lambda r: state_machine.send_message(r, SELLER_ID, "two"))
        repository.save(v3, expected_version=2)

        loaded = repository.load(record.id)

        assert [m.text for m in loaded.messages] == ["one", "two"]
        assert [m.id for m in loaded.messages] == [m.id for m in v3.messages]

    def test_payment_refs_persist(self, repository, state_machine):
        record = new_record()
        repository.create(record)
        v2 = next_version(record, lambda r: state_machine.accept(r, BUYER_ID))
        repository.save(v2, expected_version=1)
        v3 = next_version(v2, lambda r: state_machine.pay_governance_fee(r, SELLER_ID, "pay_s"))
        repository.save(v3, expected_version=2)

        loaded = repository.load(record.id)

        assert loaded.status == NegotiationStatus.SELLER_PAYMENT_DONE
        assert loaded.seller_payment_ref == "pay_s"
        assert loaded.buyer_payment_ref is None


@pytest.mark.integration
class TestListByParty:
    """Test per-user listing."""

    def test_newest_first_for_either_role(self, repository):
        older = new_record(entity_id="LEAD-1")
        newer = new_record(entity_id="LEAD-2", created_at=older.created_at + timedelta(seconds=5))
        as_seller = new_record(
            entity_id="LEAD-3", buyer_id=OUTSIDER_ID, seller_id=BUYER_ID,
            created_at=older.created_at + timedelta(seconds=10),
        )
        for record in (older, newer, as_seller):
            repository.create(record)

        listed = repository.list_by_party(BUYER_ID)

        assert [r.entity_id for r in listed] == ["LEAD-3", "LEAD-2", "LEAD-1"]
        assert repository.list_by_party(SELLER_ID)[0].entity_id == "LEAD-2"
        assert repository.list_by_party("nobody") == []
