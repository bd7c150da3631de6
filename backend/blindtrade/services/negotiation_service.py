"""
Negotiation service.

WHAT: Facade over the state machine, visibility policy, persistence and relay
WHY: One writer per negotiation; every mutation is validated, persisted
     atomically and then announced to realtime subscribers
HOW: Per-id in-process lock plus a compare-and-swap save on the record
     version; on conflict the operation is re-applied to the fresh record
"""

import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Callable, Iterator, Optional, Sequence

from ..collaborators.factory import (
    get_catalog,
    get_payment_gateway,
    get_realtime_relay,
    get_user_directory,
)
from ..collaborators.provider import Catalog, PaymentGateway, RealtimePublisher, UserDirectory
from ..collaborators.types import RealtimeEvent
from ..core.config import settings
from ..core.repository import NegotiationRepository, SaveResult
from ..models.negotiation import (
    EntityType,
    Message,
    MessageDraft,
    NegotiationRecord,
    NegotiationStatus,
    NegotiationSummary,
    NegotiationView,
    QuoteDefaults,
    QuoteInput,
    SYSTEM_SENDER_ID,
)
from ..utils.exceptions import (
    CollaboratorUnavailableError,
    ConflictError,
    InvalidStateError,
    NegotiationNotFoundError,
    NotAParticipantError,
    PaymentNotConfirmedError,
    ValidationError,
)
from ..utils.logger import get_logger, negotiation_context
from .state_machine import NegotiationStateMachine, TransitionResult
from .visibility_filter import build_negotiation_view, build_summary

logger = get_logger(__name__)

Operation = Callable[[NegotiationRecord], TransitionResult]

# Requested status -> state machine event on the merging start path
STATUS_EVENTS = {
    NegotiationStatus.ACCEPTED: "accept",
    NegotiationStatus.REJECTED: "withdraw",
    NegotiationStatus.FINALIZED: "finalize",
}


@dataclass
class _LockEntry:
    lock: threading.Lock
    users: int = 0


@dataclass
class _Outcome:
    """Result of one serialized read-modify-write."""
    record: NegotiationRecord
    appended: list[Message] = field(default_factory=list)
    changed: bool = False


class NegotiationService:
    """
    Orchestrates negotiations.

    Collaborators default to the configured singletons; tests pass their own.
    """

    def __init__(
        self,
        repository: Optional[NegotiationRepository] = None,
        directory: Optional[UserDirectory] = None,
        payments: Optional[PaymentGateway] = None,
        catalog: Optional[Catalog] = None,
        relay: Optional[RealtimePublisher] = None,
        state_machine: Optional[NegotiationStateMachine] = None,
        max_conflict_retries: Optional[int] = None,
        governance_fee: Optional[Decimal] = None,
    ):
        self.repository = repository or NegotiationRepository()
        self.directory = directory or get_user_directory()
        self.payments = payments or get_payment_gateway()
        self.catalog = catalog or get_catalog()
        self.relay = relay or get_realtime_relay()
        self.state_machine = state_machine or NegotiationStateMachine(
            currency_decimals=settings.CURRENCY_DECIMALS,
            admin_user_ids=settings.get_admin_user_ids(),
            max_message_length=settings.MAX_MESSAGE_LENGTH,
        )
        self.max_conflict_retries = max(1, max_conflict_retries or settings.CONFLICT_MAX_RETRIES)
        self.governance_fee = governance_fee if governance_fee is not None else settings.GOVERNANCE_FEE_AMOUNT

        self._locks: dict[str, _LockEntry] = {}
        self._registry_lock = threading.Lock()

    # ========== Serialization ==========

    @contextmanager
    def _serialized(self, negotiation_id: str) -> Iterator[None]:
        """
        Hold the in-process lock of one negotiation.

        The registry lock only guards the lock table; it is never held while
        an operation runs. Entries are dropped when their last user leaves.
        Log lines inside the block carry the negotiation id.
        """
        with self._registry_lock:
            entry = self._locks.get(negotiation_id)
            if entry is None:
                entry = self._locks[negotiation_id] = _LockEntry(threading.Lock())
            entry.users += 1
        try:
            with entry.lock, negotiation_context(negotiation_id):
                yield
        finally:
            with self._registry_lock:
                entry.users -= 1
                if entry.users == 0:
                    del self._locks[negotiation_id]

    def _load(self, negotiation_id: str) -> NegotiationRecord:
        record = self.repository.load(negotiation_id)
        if record is None:
            raise NegotiationNotFoundError(negotiation_id)
        return record

    def _apply_with_retry(
        self,
        negotiation_id: str,
        operation: Operation,
        dedupe: Optional[tuple[str, Optional[str]]] = None,
    ) -> "_Outcome":
        """
        Read-modify-write with compare-and-swap. Caller holds the id lock.

        Args:
            negotiation_id: Negotiation to mutate
            operation: Pure function from current record to TransitionResult
            dedupe: (sender_id, idempotency_key); an existing match makes the
                call a no-op

        Returns:
            _Outcome with the stored record and the messages this call appended

        Raises:
            ConflictError: Every attempt lost to a concurrent writer
        """
        for attempt in range(1, self.max_conflict_retries + 1):
            current = self._load(negotiation_id)

            if dedupe is not None and current.find_message(*dedupe) is not None:
                logger.info(
                    f"Duplicate request on {negotiation_id} "
                    f"(sender={dedupe[0]}, key={dedupe[1]}), returning current record"
                )
                return _Outcome(current)

            result = operation(current)
            if result.record is current:
                return _Outcome(current)

            result.record.version = current.version + 1
            if self.repository.save(result.record, expected_version=current.version) == SaveResult.OK:
                return _Outcome(result.record, result.appended, changed=True)

            logger.warning(
                f"Write conflict on {negotiation_id} "
                f"(attempt {attempt}/{self.max_conflict_retries}), retrying on fresh record"
            )

        raise ConflictError(negotiation_id, self.max_conflict_retries)

    def _mutate(
        self,
        negotiation_id: str,
        operation: Operation,
        dedupe: Optional[tuple[str, Optional[str]]] = None,
    ) -> NegotiationRecord:
        with self._serialized(negotiation_id):
            outcome = self._apply_with_retry(negotiation_id, operation, dedupe)
        self._publish_messages(outcome.record, outcome.appended)
        return outcome.record

    # ========== Realtime ==========

    def _publish(self, negotiation_id: str, event: RealtimeEvent):
        """Fire-and-forget; subscribers recover by re-reading the negotiation."""
        try:
            self.relay.publish(negotiation_id, event)
        except Exception as e:
            logger.error(f"Realtime publish of {event.type} for {negotiation_id} failed: {e}")

    def _publish_messages(self, record: NegotiationRecord, appended: Sequence[Message]):
        for message in appended:
            role = "system" if message.sender_id == SYSTEM_SENDER_ID else record.role_of(message.sender_id)
            self._publish(record.id, RealtimeEvent(
                type="new_message",
                negotiation_id=record.id,
                data={
                    "id": message.id,
                    "sender_role": role,
                    "sender_name": message.sender_name,
                    "text": message.text,
                    "timestamp": message.timestamp.isoformat(),
                    "is_quote": message.is_quote,
                    "is_system": message.is_system,
                    "quote_details": (
                        message.quote_details.model_dump(mode="json") if message.quote_details else None
                    ),
                    "status": record.status.value,
                    "current_offer": str(record.current_offer),
                },
            ))

    def _publish_updated(self, record: NegotiationRecord):
        self._publish(record.id, RealtimeEvent(
            type="negotiation_updated",
            negotiation_id=record.id,
            data={
                "id": record.id,
                "status": record.status.value,
                "current_offer": str(record.current_offer),
                "version": record.version,
            },
        ))

    # ========== Start (create or merge) ==========

    def start(
        self,
        entity_id: str,
        entity_type: EntityType,
        buyer_id: str,
        seller_id: str,
        initial_offer: Decimal,
        *,
        status: Optional[NegotiationStatus] = None,
        messages: Optional[Sequence[MessageDraft]] = None,
        actor_id: Optional[str] = None,
    ) -> NegotiationRecord:
        """
        Open a negotiation or merge an update into the existing one.

        WHAT: One public entry point, two explicit branches: create / apply_update
        WHY: Clients re-send start for a triple they already negotiate on
        HOW: Look up the (entity, buyer, seller) triple; a lost create race
             falls through to apply_update on the winner's record

        Args:
            entity_id: Lead, product or service id
            entity_type: Kind of entity
            buyer_id: Buyer user id
            seller_id: Seller user id
            initial_offer: Offer for a new record, or the requested current_offer
            status: Requested status (routed to a state machine event)
            messages: Drafts appended through send_message / send_quote
            actor_id: Who requests the status change (defaults to the buyer)

        Returns:
            The stored record

        Raises:
            ValidationError: Same buyer and seller, missing ids, negative offer
            InvalidStateError: Update not allowed in the current status
        """
        self._validate_start(entity_id, buyer_id, seller_id, initial_offer)
        entity_type = EntityType(entity_type)
        actor_id = actor_id or buyer_id
        drafts = list(messages or [])

        existing = self.repository.find_by_triple(entity_id, buyer_id, seller_id)
        if existing is None:
            created = self.create(
                entity_id, entity_type, buyer_id, seller_id, initial_offer,
                actor_id=actor_id, status=status, messages=drafts,
            )
            if created is not None:
                return created
            existing = self.repository.find_by_triple(entity_id, buyer_id, seller_id)
            if existing is None:
                raise ConflictError(f"{entity_id}:{buyer_id}:{seller_id}", 1)

        return self.apply_update(
            existing.id, actor_id, current_offer=initial_offer, status=status, messages=drafts
        )

    def _validate_start(self, entity_id: str, buyer_id: str, seller_id: str, initial_offer: Decimal):
        errors = []
        for name, value in (("entity_id", entity_id), ("buyer_id", buyer_id), ("seller_id", seller_id)):
            if not value or not value.strip():
                errors.append({"field": name, "error": "required"})
        if buyer_id and buyer_id == seller_id:
            errors.append({"field": "seller_id", "error": "buyer and seller must differ"})
        if initial_offer is None or not Decimal(initial_offer).is_finite() or Decimal(initial_offer) < 0:
            errors.append({"field": "initial_offer", "error": "must be a non-negative number"})
        if errors:
            raise ValidationError("Invalid negotiation start", field_errors=errors)

    def create(
        self,
        entity_id: str,
        entity_type: EntityType,
        buyer_id: str,
        seller_id: str,
        initial_offer: Decimal,
        *,
        actor_id: Optional[str] = None,
        status: Optional[NegotiationStatus] = None,
        messages: Sequence[MessageDraft] = (),
    ) -> Optional[NegotiationRecord]:
        """
        Insert a fresh record, with any initial drafts and status applied.

        The drafts and status run through the state machine on the in-memory
        STARTED record, so a rejected update inserts nothing.

        Returns:
            The new record, or None if another writer created the triple first
        """
        record = NegotiationRecord(
            entity_id=entity_id,
            entity_type=entity_type,
            buyer_id=buyer_id,
            seller_id=seller_id,
            current_offer=Decimal(initial_offer),
            status=NegotiationStatus.STARTED,
            version=1,
        )
        result = self._merge_operation(actor_id or buyer_id, None, status, messages)(record)
        initial = result.record
        initial.version = 1

        if self.repository.create(initial) != SaveResult.OK:
            logger.info(f"Negotiation for ({entity_id}, {buyer_id}, {seller_id}) already exists, merging")
            return None

        self._publish_updated(initial)
        self._publish_messages(initial, result.appended)
        return initial

    def apply_update(
        self,
        negotiation_id: str,
        actor_id: str,
        *,
        current_offer: Optional[Decimal] = None,
        status: Optional[NegotiationStatus] = None,
        messages: Sequence[MessageDraft] = (),
    ) -> NegotiationRecord:
        """
        Merge an update into an existing record through state machine events.

        Drafts are applied first, then the offer, then the status. The whole
        update is one compare-and-swap write.
        """
        operation = self._merge_operation(actor_id, current_offer, status, messages)

        with self._serialized(negotiation_id):
            outcome = self._apply_with_retry(negotiation_id, operation)
        if outcome.changed:
            self._publish_updated(outcome.record)
        self._publish_messages(outcome.record, outcome.appended)
        return outcome.record

    def _merge_operation(
        self,
        actor_id: str,
        current_offer: Optional[Decimal],
        status: Optional[NegotiationStatus],
        messages: Sequence[MessageDraft],
    ) -> Operation:
        carries_quote = any(d.quote is not None for d in messages)

        def operation(record: NegotiationRecord) -> TransitionResult:
            working = record
            appended: list[Message] = []

            for draft in messages:
                if working.find_message(draft.sender_id, draft.idempotency_key) is not None:
                    continue
                if draft.quote is not None:
                    step = self.state_machine.send_quote(
                        working, draft.sender_id, draft.quote, draft.text, draft.idempotency_key
                    )
                else:
                    step = self.state_machine.send_message(
                        working, draft.sender_id, draft.text, draft.idempotency_key
                    )
                working = step.record
                appended.extend(step.appended)

            if current_offer is not None and not carries_quote:
                working = self.state_machine.update_offer(working, actor_id, Decimal(current_offer)).record

            if status is not None and status != working.status:
                step = self._route_status(working, actor_id, NegotiationStatus(status))
                working = step.record
                appended.extend(step.appended)

            return TransitionResult(working, appended)

        return operation

    def _route_status(
        self, record: NegotiationRecord, actor_id: str, target: NegotiationStatus
    ) -> TransitionResult:
        event = STATUS_EVENTS.get(target)
        if event == "accept":
            return self.state_machine.accept(record, actor_id)
        if event == "withdraw":
            return self.state_machine.withdraw(record, actor_id)
        if event == "finalize":
            return self.state_machine.finalize(record, actor_id)
        raise InvalidStateError(
            record.id, record.status.value, f"set status {target.value}",
            "status is reached through quotes or payments only"
        )

    # ========== Events ==========

    def send_message(
        self,
        negotiation_id: str,
        sender_id: str,
        text: str,
        idempotency_key: Optional[str] = None,
    ) -> NegotiationRecord:
        """Append a chat message."""
        return self._mutate(
            negotiation_id,
            lambda r: self.state_machine.send_message(r, sender_id, text, idempotency_key),
            dedupe=(sender_id, idempotency_key) if idempotency_key else None,
        )

    def send_quote(
        self,
        negotiation_id: str,
        sender_id: str,
        quote: QuoteInput,
        idempotency_key: Optional[str] = None,
        text: str = "",
    ) -> NegotiationRecord:
        """Append a formal quote; its final price becomes the current offer."""
        return self._mutate(
            negotiation_id,
            lambda r: self.state_machine.send_quote(r, sender_id, quote, text, idempotency_key),
            dedupe=(sender_id, idempotency_key) if idempotency_key else None,
        )

    def accept(
        self,
        negotiation_id: str,
        sender_id: str,
        idempotency_key: Optional[str] = None,
    ) -> NegotiationRecord:
        """Accept the current offer."""
        return self._mutate(
            negotiation_id,
            lambda r: self.state_machine.accept(r, sender_id, idempotency_key),
            dedupe=(sender_id, idempotency_key) if idempotency_key else None,
        )

    def pay_governance_fee(self, negotiation_id: str, payer_id: str) -> NegotiationRecord:
        """
        Charge and record the payer's governance fee.

        WHAT: Check eligibility, charge once through the gateway, record the reference
        WHY: Both fees unlock identities; a doomed payment must never be taken
        HOW: Eligibility and charge happen under the id lock; only recording
             the reference goes through the conflict retry loop

        Raises:
            NotAParticipantError: Payer is neither party
            InvalidStateError: Not accepted yet, closed, or this role already paid
            PaymentNotConfirmedError: Gateway declined
            CollaboratorUnavailableError: Gateway unreachable
        """
        with self._serialized(negotiation_id):
            record = self._load(negotiation_id)
            self.state_machine.ensure_can_pay(record, payer_id)

            confirmation = self.payments.confirm_payment(negotiation_id, payer_id, self.governance_fee)
            if not confirmation.confirmed or not confirmation.reference:
                raise PaymentNotConfirmedError(
                    negotiation_id, payer_id, confirmation.reason or "payment not captured"
                )

            try:
                outcome = self._apply_with_retry(
                    negotiation_id,
                    lambda r: self.state_machine.pay_governance_fee(r, payer_id, confirmation.reference),
                )
            except Exception:
                logger.error(
                    f"Captured payment {confirmation.reference} from {payer_id} "
                    f"could not be recorded on {negotiation_id}"
                )
                raise

        logger.info(f"Governance fee {confirmation.reference} recorded for {payer_id} on {negotiation_id}")
        self._publish_messages(outcome.record, outcome.appended)
        return outcome.record

    def finalize(self, negotiation_id: str, actor_id: str) -> NegotiationRecord:
        """Close an unlocked negotiation."""
        return self._mutate(negotiation_id, lambda r: self.state_machine.finalize(r, actor_id))

    def withdraw(
        self,
        negotiation_id: str,
        actor_id: str,
        reason: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> NegotiationRecord:
        """Withdraw from the negotiation."""
        return self._mutate(
            negotiation_id,
            lambda r: self.state_machine.withdraw(r, actor_id, reason, idempotency_key),
            dedupe=(actor_id, idempotency_key) if idempotency_key else None,
        )

    # ========== Reads ==========

    def get_record(self, negotiation_id: str) -> NegotiationRecord:
        return self._load(negotiation_id)

    def get(self, negotiation_id: str, viewer_id: str) -> NegotiationView:
        """Negotiation with every identity resolved for viewer_id."""
        return build_negotiation_view(self._load(negotiation_id), viewer_id, self.directory)

    def list_for_user(self, user_id: str) -> list[NegotiationSummary]:
        """Negotiations of user_id, newest first."""
        return [build_summary(r, user_id, self.directory) for r in self.repository.list_by_party(user_id)]

    def quote_defaults(self, negotiation_id: str, viewer_id: str) -> QuoteDefaults:
        """
        Pre-filled quote form values.

        Catalog data when available; otherwise the latest quote on the record,
        then the current offer. Only participants get the form.
        """
        record = self._load(negotiation_id)
        if not record.is_participant(viewer_id):
            raise NotAParticipantError(negotiation_id, viewer_id)

        try:
            snapshot = self.catalog.get_entity_snapshot(record.entity_id, record.entity_type.value)
        except CollaboratorUnavailableError as e:
            logger.warning(f"Catalog unavailable for {record.entity_id}, using record data: {e.message}")
            snapshot = None

        if snapshot is not None:
            return QuoteDefaults(
                product_name=snapshot.title,
                quantity=max(1, snapshot.quantity),
                price=snapshot.price if snapshot.price is not None else (snapshot.budget or record.current_offer),
                budget=snapshot.budget,
                source="catalog",
            )

        last_quote = next((m.quote_details for m in reversed(record.messages) if m.is_quote), None)
        if last_quote is not None:
            return QuoteDefaults(
                product_name=last_quote.product_name or record.entity_id,
                quantity=last_quote.quantity,
                price=last_quote.price,
                source="record",
            )
        return QuoteDefaults(
            product_name=record.entity_id,
            quantity=1,
            price=record.current_offer,
            source="record",
        )


# Singleton instance
_service_instance: Optional[NegotiationService] = None
_service_lock = threading.Lock()


def get_negotiation_service() -> NegotiationService:
    """Get the process-wide negotiation service."""
    global _service_instance
    if _service_instance is None:
        # Sync dependency; first requests may race in the threadpool
        with _service_lock:
            if _service_instance is None:
                _service_instance = NegotiationService()
    return _service_instance


def reset_negotiation_service() -> None:
    """Reset the service singleton (useful for testing)."""
    global _service_instance
    _service_instance = None
