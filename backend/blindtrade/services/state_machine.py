"""
Negotiation state machine.

WHAT: Validate and apply negotiation events (quote, chat, accept, pay, finalize, withdraw)
WHY: Status must only move forward and identities unlock only after both fees are paid
HOW: Explicit transition table; every event returns a new record plus the appended messages

State flow:

    STARTED ──quote──► COUNTER_OFFERED ──quote──┐
       │                    │  ▲────────────────┘
       └──────accept────────┴──► ACCEPTED
                                   │ pay(buyer)          │ pay(seller)
                                   ▼                     ▼
                          BUYER_PAYMENT_DONE    SELLER_PAYMENT_DONE
                                   │ pay(seller)         │ pay(buyer)
                                   └────────► ADMIN_VERIFIED ◄┘
                                                   │ finalize
                                                   ▼
                                               FINALIZED

    any non-terminal ──withdraw──► REJECTED
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Callable, Iterable, Optional

from ..models.negotiation import (
    Message,
    NegotiationRecord,
    NegotiationStatus,
    PartyRole,
    QuoteInput,
    SYSTEM_SENDER_ID,
    SYSTEM_SENDER_NAME,
    utcnow,
)
from ..utils.exceptions import InvalidStateError, NotAParticipantError, ValidationError
from ..utils.logger import get_logger
from .quote_calculator import build_quote_details

logger = get_logger(__name__)

S = NegotiationStatus

TERMINAL_STATUSES = frozenset({S.FINALIZED, S.REJECTED})
NEGOTIATING_STATUSES = frozenset({S.STARTED, S.COUNTER_OFFERED})
PAYMENT_STATUSES = frozenset({S.ACCEPTED, S.BUYER_PAYMENT_DONE, S.SELLER_PAYMENT_DONE})
UNLOCKED_STATUSES = frozenset({S.ADMIN_VERIFIED, S.FINALIZED})

TRANSITIONS: dict[NegotiationStatus, frozenset[NegotiationStatus]] = {
    S.STARTED: frozenset({S.COUNTER_OFFERED, S.ACCEPTED, S.REJECTED}),
    S.COUNTER_OFFERED: frozenset({S.COUNTER_OFFERED, S.ACCEPTED, S.REJECTED}),
    S.ACCEPTED: frozenset({S.BUYER_PAYMENT_DONE, S.SELLER_PAYMENT_DONE, S.ADMIN_VERIFIED, S.REJECTED}),
    S.BUYER_PAYMENT_DONE: frozenset({S.ADMIN_VERIFIED, S.REJECTED}),
    S.SELLER_PAYMENT_DONE: frozenset({S.ADMIN_VERIFIED, S.REJECTED}),
    S.ADMIN_VERIFIED: frozenset({S.FINALIZED, S.REJECTED}),
    S.FINALIZED: frozenset(),  # Terminal
    S.REJECTED: frozenset(),   # Terminal
}

GOVERNANCE_LABELS = {
    S.STARTED: "Negotiating",
    S.COUNTER_OFFERED: "Negotiating",
    S.ACCEPTED: "Awaiting Fees",
    S.BUYER_PAYMENT_DONE: "Buyer Paid",
    S.SELLER_PAYMENT_DONE: "Seller Paid",
    S.ADMIN_VERIFIED: "Unlocked",
    S.FINALIZED: "Finalized",
    S.REJECTED: "Withdrawn",
}


def pseudonym(role: PartyRole, user_id: str) -> str:
    """Deterministic masked name for a party: Buyer_#1234 / Seller_#abcd."""
    prefix = "Buyer" if role == "buyer" else "Seller"
    return f"{prefix}_#{user_id[-4:]}"


def is_terminal(status: NegotiationStatus) -> bool:
    return status in TERMINAL_STATUSES


def identities_unlocked(status: NegotiationStatus) -> bool:
    return status in UNLOCKED_STATUSES


@dataclass
class TransitionResult:
    """Outcome of one event: the new record and what was appended to its log."""
    record: NegotiationRecord
    appended: list[Message] = field(default_factory=list)


class NegotiationStateMachine:
    """
    Apply negotiation events to a record.

    The input record is never mutated; each event works on a deep copy so a
    failed guard leaves the caller's record untouched.
    """

    def __init__(
        self,
        currency_decimals: int = 2,
        admin_user_ids: Iterable[str] = (),
        max_message_length: int = 5000,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.currency_decimals = currency_decimals
        self.admin_user_ids = frozenset(admin_user_ids)
        self.max_message_length = max_message_length
        self.clock = clock

    # ---------- guards ----------

    def _require_participant(self, record: NegotiationRecord, user_id: str) -> PartyRole:
        role = record.role_of(user_id)
        if role is None:
            raise NotAParticipantError(record.id, user_id)
        return role

    def _require_not_terminal(self, record: NegotiationRecord, operation: str):
        if is_terminal(record.status):
            raise InvalidStateError(record.id, record.status.value, operation, "negotiation is closed")

    def _require_negotiating(self, record: NegotiationRecord, operation: str):
        self._require_not_terminal(record, operation)
        if record.status not in NEGOTIATING_STATUSES:
            raise InvalidStateError(record.id, record.status.value, operation, "proposal already accepted")

    def _transition(self, record: NegotiationRecord, target: NegotiationStatus, operation: str):
        """
        Move record to target status in place.

        The dual-payment gate is checked here as well, so an out-of-order
        call can never reach an unlocked status with a missing payment.
        """
        if target not in TRANSITIONS[record.status]:
            raise InvalidStateError(record.id, record.status.value, operation)
        if target in UNLOCKED_STATUSES and not record.both_fees_paid:
            raise InvalidStateError(
                record.id, record.status.value, operation,
                "both governance fees must be paid"
            )
        logger.info(f"Negotiation {record.id}: {record.status.value} -> {target.value} ({operation})")
        record.status = target

    # ---------- message log ----------

    def _next_timestamp(self, record: NegotiationRecord) -> datetime:
        now = self.clock()
        if record.messages and record.messages[-1].timestamp > now:
            return record.messages[-1].timestamp
        return now

    def _append(self, record: NegotiationRecord, message: Message) -> Message:
        record.messages.append(message)
        return message

    def _party_message(
        self,
        record: NegotiationRecord,
        sender_id: str,
        role: PartyRole,
        text: str,
        idempotency_key: Optional[str] = None,
        **extra,
    ) -> Message:
        return self._append(record, Message(
            sender_id=sender_id,
            sender_name=pseudonym(role, sender_id),
            text=text,
            timestamp=self._next_timestamp(record),
            idempotency_key=idempotency_key,
            **extra,
        ))

    def _system_message(self, record: NegotiationRecord, text: str) -> Message:
        return self._append(record, Message(
            sender_id=SYSTEM_SENDER_ID,
            sender_name=SYSTEM_SENDER_NAME,
            text=text,
            timestamp=self._next_timestamp(record),
            is_system=True,
        ))

    def _check_text(self, text: str, allow_empty: bool = False) -> str:
        text = (text or "").strip()
        if not text and not allow_empty:
            raise ValidationError("Message text must not be empty", field_errors=[{"field": "text", "error": "required"}])
        if len(text) > self.max_message_length:
            raise ValidationError(
                f"Message text exceeds {self.max_message_length} characters",
                field_errors=[{"field": "text", "error": "too long"}]
            )
        return text

    # ---------- events ----------

    def send_message(
        self,
        record: NegotiationRecord,
        sender_id: str,
        text: str,
        idempotency_key: Optional[str] = None,
    ) -> TransitionResult:
        """Append a free-text chat message; status is unchanged."""
        role = self._require_participant(record, sender_id)
        self._require_not_terminal(record, "send message")
        text = self._check_text(text)

        updated = record.model_copy(deep=True)
        message = self._party_message(updated, sender_id, role, text, idempotency_key)
        return TransitionResult(updated, [message])

    def send_quote(
        self,
        record: NegotiationRecord,
        sender_id: str,
        quote: QuoteInput,
        text: str = "",
        idempotency_key: Optional[str] = None,
    ) -> TransitionResult:
        """
        Append a formal quote and make its final price the current offer.

        WHAT: STARTED/COUNTER_OFFERED -> COUNTER_OFFERED
        WHY: Each round of the exchange is a versioned, priced proposal
        HOW: Calculate, version = quotes so far + 1, append, transition

        Raises:
            NotAParticipantError: sender is not buyer or seller
            InvalidStateError: negotiation accepted or closed
            ValidationError: quote input rejected by the calculator
        """
        role = self._require_participant(record, sender_id)
        self._require_negotiating(record, "send quote")
        text = self._check_text(text, allow_empty=True)

        version = record.quote_count + 1
        details = build_quote_details(quote, version=version, decimals=self.currency_decimals)

        updated = record.model_copy(deep=True)
        message = self._party_message(
            updated, sender_id, role,
            text or f"Formalized Quote v{version} submitted.",
            idempotency_key,
            is_quote=True,
            quote_details=details,
        )
        self._transition(updated, S.COUNTER_OFFERED, "send quote")
        updated.current_offer = details.final_price
        return TransitionResult(updated, [message])

    def accept(
        self,
        record: NegotiationRecord,
        actor_id: str,
        idempotency_key: Optional[str] = None,
    ) -> TransitionResult:
        """Accept the current offer; no further quotes after this."""
        role = self._require_participant(record, actor_id)
        self._require_negotiating(record, "accept")

        updated = record.model_copy(deep=True)
        self._transition(updated, S.ACCEPTED, "accept")
        message = self._party_message(
            updated, actor_id, role,
            "Protocol Directive: PROPOSAL ACCEPTED. Governance fees required to unlock identities.",
            idempotency_key,
            is_system=True,
        )
        return TransitionResult(updated, [message])

    def ensure_can_pay(self, record: NegotiationRecord, payer_id: str) -> PartyRole:
        """
        Check that payer may pay the governance fee now.

        Used before contacting the payment gateway so a doomed payment is
        never taken.

        Returns:
            The payer's role
        """
        role = self._require_participant(record, payer_id)
        self._require_not_terminal(record, "pay governance fee")
        if record.status not in PAYMENT_STATUSES:
            raise InvalidStateError(
                record.id, record.status.value, "pay governance fee",
                "proposal must be accepted first" if record.status in NEGOTIATING_STATUSES else ""
            )
        existing = record.buyer_payment_ref if role == "buyer" else record.seller_payment_ref
        if existing is not None:
            raise InvalidStateError(
                record.id, record.status.value, "pay governance fee",
                f"governance fee already recorded for {role}"
            )
        return role

    def pay_governance_fee(self, record: NegotiationRecord, payer_id: str, payment_ref: str) -> TransitionResult:
        """
        Record a confirmed governance fee payment.

        The second payment moves the negotiation straight to ADMIN_VERIFIED,
        whichever side pays last.
        """
        role = self.ensure_can_pay(record, payer_id)
        if not payment_ref:
            raise ValidationError("Payment reference must not be empty")

        updated = record.model_copy(deep=True)
        if role == "buyer":
            updated.buyer_payment_ref = payment_ref
        else:
            updated.seller_payment_ref = payment_ref

        appended = [self._system_message(
            updated, f"Protocol Directive: {role.capitalize()} has paid the governance fee."
        )]
        if updated.both_fees_paid:
            self._transition(updated, S.ADMIN_VERIFIED, "pay governance fee")
            appended.append(self._system_message(
                updated, "Protocol Directive: Both governance fees received. Identities unlocked."
            ))
        else:
            target = S.BUYER_PAYMENT_DONE if role == "buyer" else S.SELLER_PAYMENT_DONE
            self._transition(updated, target, "pay governance fee")
        return TransitionResult(updated, appended)

    def finalize(self, record: NegotiationRecord, actor_id: str) -> TransitionResult:
        """Close a verified negotiation for good. Participants or administrators only."""
        if not record.is_participant(actor_id) and actor_id not in self.admin_user_ids:
            raise NotAParticipantError(record.id, actor_id)
        self._require_not_terminal(record, "finalize")

        updated = record.model_copy(deep=True)
        self._transition(updated, S.FINALIZED, "finalize")
        message = self._system_message(updated, "Protocol Directive: Negotiation finalized.")
        return TransitionResult(updated, [message])

    def withdraw(
        self,
        record: NegotiationRecord,
        actor_id: str,
        reason: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> TransitionResult:
        """Withdraw from a non-terminal negotiation; chat and quoting close."""
        role = self._require_participant(record, actor_id)
        self._require_not_terminal(record, "withdraw")
        reason = self._check_text(reason or "", allow_empty=True)

        updated = record.model_copy(deep=True)
        self._transition(updated, S.REJECTED, "withdraw")
        text = f"Protocol Directive: {role.capitalize()} withdrew from the negotiation."
        if reason:
            text = f"{text} Reason: {reason}"
        message = self._party_message(updated, actor_id, role, text, idempotency_key, is_system=True)
        return TransitionResult(updated, [message])

    def update_offer(self, record: NegotiationRecord, actor_id: str, offer: Decimal) -> TransitionResult:
        """
        Set current_offer directly (merging start path).

        Re-sending the unchanged value is accepted in any state so clients
        can replay their last known record.
        """
        self._require_participant(record, actor_id)
        if offer < 0:
            raise ValidationError("Offer must be non-negative", field_errors=[{"field": "current_offer", "error": "must be non-negative"}])
        if offer == record.current_offer:
            return TransitionResult(record, [])
        self._require_negotiating(record, "update offer")

        updated = record.model_copy(deep=True)
        updated.current_offer = offer
        return TransitionResult(updated, [])
