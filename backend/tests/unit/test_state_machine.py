"""
Unit tests for the negotiation state machine.

WHAT: Test transitions, guards, the dual-payment gate and appended messages
WHY: Status must only move forward and identities unlock only after both fees
HOW: Apply events to in-memory records; no persistence involved
"""

import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from blindtrade.models.negotiation import NegotiationStatus, QuoteInput, SYSTEM_SENDER_ID
from blindtrade.services.state_machine import (
    NegotiationStateMachine,
    TERMINAL_STATUSES,
    TRANSITIONS,
    UNLOCKED_STATUSES,
    pseudonym,
)
from blindtrade.utils.exceptions import InvalidStateError, NotAParticipantError, ValidationError

from tests.fixtures.parties import ADMIN_ID, BUYER_ID, OUTSIDER_ID, SELLER_ID

S = NegotiationStatus


def accepted(machine, record):
    return machine.accept(record, BUYER_ID).record


def unlocked(machine, record):
    record = accepted(machine, record)
    record = machine.pay_governance_fee(record, BUYER_ID, "pay_b").record
    return machine.pay_governance_fee(record, SELLER_ID, "pay_s").record


@pytest.mark.unit
class TestTransitionTable:
    """Test the shape of the transition table."""

    def test_terminal_states_have_no_exits(self):
        for status in TERMINAL_STATUSES:
            assert TRANSITIONS[status] == frozenset()

    def test_no_transition_leads_back_to_started(self):
        for targets in TRANSITIONS.values():
            assert S.STARTED not in targets

    def test_every_non_terminal_state_can_be_withdrawn(self):
        for status, targets in TRANSITIONS.items():
            if status not in TERMINAL_STATUSES:
                assert S.REJECTED in targets

    def test_pseudonym_uses_last_four_characters(self):
        assert pseudonym("buyer", "buyer-1001") == "Buyer_#1001"
        assert pseudonym("seller", "abc") == "Seller_#abc"


@pytest.mark.unit
class TestSendQuote:
    """Test counter-offers."""

    def test_quote_moves_to_counter_offered_and_sets_offer(self, state_machine, record, simple_quote):
        result = state_machine.send_quote(record, SELLER_ID, simple_quote)

        assert result.record.status == S.COUNTER_OFFERED
        assert result.record.current_offer == Decimal("5310.00")
        assert len(result.appended) == 1
        message = result.appended[0]
        assert message.is_quote
        assert message.quote_details.version == 1
        assert message.sender_name == "Seller_#2002"

    def test_input_record_is_not_mutated(self, state_machine, record, simple_quote):
        state_machine.send_quote(record, SELLER_ID, simple_quote)

        assert record.status == S.STARTED
        assert record.messages == []
        assert record.current_offer == Decimal("5000")

    def test_versions_increase_by_one_per_quote(self, state_machine, record, simple_quote):
        for sender in (SELLER_ID, BUYER_ID, SELLER_ID):
            record = state_machine.send_quote(record, sender, simple_quote).record

        versions = [m.quote_details.version for m in record.messages if m.is_quote]
        assert versions == [1, 2, 3]
        assert record.status == S.COUNTER_OFFERED

    def test_versions_ignore_chat_messages(self, state_machine, record, simple_quote):
        record = state_machine.send_message(record, BUYER_ID, "Can you do better?").record
        record = state_machine.send_quote(record, SELLER_ID, simple_quote).record
        record = state_machine.send_message(record, BUYER_ID, "Still high").record
        record = state_machine.send_quote(record, SELLER_ID, simple_quote).record

        assert [m.quote_details.version for m in record.messages if m.is_quote] == [1, 2]

    def test_invalid_quote_leaves_record_unchanged(self, state_machine, record):
        bad = QuoteInput(price=Decimal("100"), discount=Decimal("500"))

        with pytest.raises(ValidationError):
            state_machine.send_quote(record, SELLER_ID, bad)
        assert record.messages == []

    def test_quote_after_accept_rejected(self, state_machine, record, simple_quote):
        record = accepted(state_machine, record)

        with pytest.raises(InvalidStateError) as exc_info:
            state_machine.send_quote(record, SELLER_ID, simple_quote)
        assert exc_info.value.current_status == "ACCEPTED"

    def test_outsider_cannot_quote(self, state_machine, record, simple_quote):
        with pytest.raises(NotAParticipantError):
            state_machine.send_quote(record, OUTSIDER_ID, simple_quote)


@pytest.mark.unit
class TestSendMessage:
    """Test chat messages."""

    def test_message_keeps_status(self, state_machine, record):
        result = state_machine.send_message(record, BUYER_ID, "Hello", idempotency_key="k1")

        assert result.record.status == S.STARTED
        assert result.appended[0].text == "Hello"
        assert result.appended[0].idempotency_key == "k1"
        assert result.appended[0].sender_name == "Buyer_#1001"

    def test_chat_allowed_while_awaiting_fees(self, state_machine, record):
        record = accepted(state_machine, record)
        result = state_machine.send_message(record, SELLER_ID, "Paying now")
        assert result.record.status == S.ACCEPTED

    @pytest.mark.parametrize("text", ["", "   "])
    def test_empty_text_rejected(self, state_machine, record, text):
        with pytest.raises(ValidationError):
            state_machine.send_message(record, BUYER_ID, text)

    def test_overlong_text_rejected(self, record):
        machine = NegotiationStateMachine(max_message_length=10)
        with pytest.raises(ValidationError):
            machine.send_message(record, BUYER_ID, "x" * 11)

    def test_message_after_withdraw_rejected(self, state_machine, record):
        record = state_machine.withdraw(record, SELLER_ID).record

        with pytest.raises(InvalidStateError):
            state_machine.send_message(record, BUYER_ID, "Wait")

    def test_timestamps_never_go_backwards(self, record):
        """A clock stepping back still yields non-decreasing timestamps."""
        times = iter([
            datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc),
            datetime(2026, 1, 1, 11, 0, tzinfo=timezone.utc),
        ])
        machine = NegotiationStateMachine(clock=lambda: next(times))

        record = machine.send_message(record, BUYER_ID, "first").record
        record = machine.send_message(record, SELLER_ID, "second").record

        assert record.messages[1].timestamp >= record.messages[0].timestamp


@pytest.mark.unit
class TestAcceptAndPayments:
    """Test acceptance and the dual-payment gate."""

    def test_accept_appends_directive(self, state_machine, record):
        result = state_machine.accept(record, SELLER_ID)

        assert result.record.status == S.ACCEPTED
        assert result.appended[0].is_system
        assert "PROPOSAL ACCEPTED" in result.appended[0].text

    def test_accept_twice_rejected(self, state_machine, record):
        record = accepted(state_machine, record)
        with pytest.raises(InvalidStateError):
            state_machine.accept(record, SELLER_ID)

    def test_pay_before_accept_rejected(self, state_machine, record):
        with pytest.raises(InvalidStateError):
            state_machine.pay_governance_fee(record, BUYER_ID, "pay_1")

    def test_buyer_then_seller_unlocks(self, state_machine, record):
        record = accepted(state_machine, record)

        first = state_machine.pay_governance_fee(record, BUYER_ID, "pay_b")
        assert first.record.status == S.BUYER_PAYMENT_DONE
        assert first.record.buyer_payment_ref == "pay_b"

        second = state_machine.pay_governance_fee(first.record, SELLER_ID, "pay_s")
        assert second.record.status == S.ADMIN_VERIFIED
        assert second.record.both_fees_paid
        assert [m.sender_id for m in second.appended] == [SYSTEM_SENDER_ID, SYSTEM_SENDER_ID]
        assert "Identities unlocked" in second.appended[-1].text

    def test_seller_first_also_unlocks(self, state_machine, record):
        record = accepted(state_machine, record)
        record = state_machine.pay_governance_fee(record, SELLER_ID, "pay_s").record
        assert record.status == S.SELLER_PAYMENT_DONE

        record = state_machine.pay_governance_fee(record, BUYER_ID, "pay_b").record
        assert record.status == S.ADMIN_VERIFIED

    def test_existing_counterpart_ref_unlocks_from_accepted(self, state_machine, record):
        """ACCEPTED with the seller ref already present goes straight to ADMIN_VERIFIED."""
        record = accepted(state_machine, record)
        record.seller_payment_ref = "pay_s"

        result = state_machine.pay_governance_fee(record, BUYER_ID, "pay_b")
        assert result.record.status == S.ADMIN_VERIFIED

    def test_same_role_cannot_pay_twice(self, state_machine, record):
        record = accepted(state_machine, record)
        record = state_machine.pay_governance_fee(record, BUYER_ID, "pay_b").record

        with pytest.raises(InvalidStateError):
            state_machine.pay_governance_fee(record, BUYER_ID, "pay_b2")

    def test_outsider_cannot_pay(self, state_machine, record):
        record = accepted(state_machine, record)
        with pytest.raises(NotAParticipantError):
            state_machine.ensure_can_pay(record, OUTSIDER_ID)

    def test_gate_blocks_unlock_without_both_refs(self, state_machine, record):
        """The transition function itself refuses an unlock with a missing payment."""
        record = accepted(state_machine, record)
        record = state_machine.pay_governance_fee(record, BUYER_ID, "pay_b").record
        forged = record.model_copy(deep=True)

        with pytest.raises(InvalidStateError):
            state_machine._transition(forged, S.ADMIN_VERIFIED, "forge unlock")
        assert forged.status == S.BUYER_PAYMENT_DONE

    def test_unlocked_states_always_have_both_refs(self, state_machine, record):
        record = unlocked(state_machine, record)
        record = state_machine.finalize(record, BUYER_ID).record

        assert record.status in UNLOCKED_STATUSES
        assert record.buyer_payment_ref and record.seller_payment_ref


@pytest.mark.unit
class TestFinalizeAndWithdraw:
    """Test closing a negotiation."""

    def test_finalize_after_unlock(self, state_machine, record):
        record = unlocked(state_machine, record)
        result = state_machine.finalize(record, SELLER_ID)

        assert result.record.status == S.FINALIZED
        assert result.appended[0].sender_id == SYSTEM_SENDER_ID

    def test_admin_can_finalize(self, state_machine, record):
        record = unlocked(state_machine, record)
        assert state_machine.finalize(record, ADMIN_ID).record.status == S.FINALIZED

    def test_outsider_cannot_finalize(self, state_machine, record):
        record = unlocked(state_machine, record)
        with pytest.raises(NotAParticipantError):
            state_machine.finalize(record, OUTSIDER_ID)

    def test_finalize_before_unlock_rejected(self, state_machine, record):
        record = accepted(state_machine, record)
        with pytest.raises(InvalidStateError):
            state_machine.finalize(record, BUYER_ID)

    def test_withdraw_records_reason(self, state_machine, record):
        result = state_machine.withdraw(record, BUYER_ID, reason="Budget cut")

        assert result.record.status == S.REJECTED
        assert result.appended[0].is_system
        assert result.appended[0].sender_id == BUYER_ID
        assert result.appended[0].text.endswith("Reason: Budget cut")

    def test_withdraw_allowed_while_awaiting_fees(self, state_machine, record):
        record = accepted(state_machine, record)
        record = state_machine.pay_governance_fee(record, BUYER_ID, "pay_b").record
        assert state_machine.withdraw(record, SELLER_ID).record.status == S.REJECTED

    @pytest.mark.parametrize("closing", ["withdraw", "finalize"])
    def test_terminal_states_reject_every_mutation(self, state_machine, record, simple_quote, closing):
        if closing == "withdraw":
            record = state_machine.withdraw(record, BUYER_ID).record
        else:
            record = state_machine.finalize(unlocked(state_machine, record), BUYER_ID).record

        attempts = [
            lambda: state_machine.send_message(record, BUYER_ID, "hi"),
            lambda: state_machine.send_quote(record, SELLER_ID, simple_quote),
            lambda: state_machine.accept(record, BUYER_ID),
            lambda: state_machine.ensure_can_pay(record, BUYER_ID),
            lambda: state_machine.finalize(record, BUYER_ID),
            lambda: state_machine.withdraw(record, BUYER_ID),
        ]
        for attempt in attempts:
            with pytest.raises(InvalidStateError):
                attempt()


@pytest.mark.unit
class TestUpdateOffer:
    """Test direct offer changes from the merging start path."""

    def test_offer_change_while_negotiating(self, state_machine, record):
        result = state_machine.update_offer(record, BUYER_ID, Decimal("4800"))
        assert result.record.current_offer == Decimal("4800")
        assert result.appended == []

    def test_same_offer_is_a_no_op_in_any_state(self, state_machine, record):
        record = accepted(state_machine, record)
        result = state_machine.update_offer(record, BUYER_ID, Decimal("5000"))
        assert result.record is record

    def test_offer_change_after_accept_rejected(self, state_machine, record):
        record = accepted(state_machine, record)
        with pytest.raises(InvalidStateError):
            state_machine.update_offer(record, BUYER_ID, Decimal("1"))

    def test_negative_offer_rejected(self, state_machine, record):
        with pytest.raises(ValidationError):
            state_machine.update_offer(record, BUYER_ID, Decimal("-1"))

    def test_timestamps_are_utc(self, state_machine, record):
        message = state_machine.send_message(record, BUYER_ID, "hi").appended[0]
        assert message.timestamp.utcoffset() == timedelta(0)
