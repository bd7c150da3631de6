"""
Negotiation domain models.

WHAT: Core data structures for blind negotiations, quotes and views
WHY: One typed record shared by the state machine, persistence and API
HOW: Pydantic v2 models; messages are frozen once appended
"""

import enum
from datetime import datetime, timezone
from decimal import Decimal
from typing import Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, model_validator


SYSTEM_SENDER_ID = "system"
SYSTEM_SENDER_NAME = "System"

PartyRole = Literal["buyer", "seller"]


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def new_negotiation_id() -> str:
    return f"NEG-{uuid4().hex[:8].upper()}"


def new_message_id() -> str:
    return f"MSG-{uuid4().hex[:12].upper()}"


class NegotiationStatus(str, enum.Enum):
    """Negotiation lifecycle states."""
    STARTED = "STARTED"
    COUNTER_OFFERED = "COUNTER_OFFERED"
    ACCEPTED = "ACCEPTED"
    BUYER_PAYMENT_DONE = "BUYER_PAYMENT_DONE"
    SELLER_PAYMENT_DONE = "SELLER_PAYMENT_DONE"
    ADMIN_VERIFIED = "ADMIN_VERIFIED"
    FINALIZED = "FINALIZED"
    REJECTED = "REJECTED"


class EntityType(str, enum.Enum):
    """Catalog object kinds that can be negotiated."""
    LEAD = "LEAD"
    PRODUCT = "PRODUCT"
    SERVICE = "SERVICE"


class QuoteInput(BaseModel):
    """
    Structured price breakdown submitted with a quote.

    Monetary fields are validated by the quote calculator, not here, so that
    a bad quote surfaces as a business ValidationError with field details.
    """

    price: Decimal = Decimal("0")
    quantity: int = 1
    discount: Decimal = Decimal("0")
    visit_required: bool = False
    visit_charge: Decimal = Decimal("0")
    installation_required: bool = False
    installation_charge: Decimal = Decimal("0")
    other_charges: Decimal = Decimal("0")
    gst_percent: Decimal = Decimal("0")

    # Descriptive terms, carried through untouched
    product_name: str = ""
    visit_notes: str = ""
    installation_notes: str = ""
    other_charges_remark: str = ""
    delivery_days: Optional[int] = None
    installation_time: str = ""
    terms_and_conditions: str = ""
    attachment_url: Optional[str] = None


class QuoteDetails(QuoteInput):
    """Quote input plus the computed breakdown and its round number."""

    model_config = ConfigDict(frozen=True)

    base_total: Decimal
    extras: Decimal
    subtotal: Decimal
    gst_amount: Decimal
    final_price: Decimal
    version: int = Field(ge=1)


class Message(BaseModel):
    """A message in the negotiation log. Immutable once appended."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_message_id)
    sender_id: str
    sender_name: str
    text: str
    timestamp: datetime = Field(default_factory=utcnow)
    is_quote: bool = False
    quote_details: Optional[QuoteDetails] = None
    is_system: bool = False
    idempotency_key: Optional[str] = None

    @model_validator(mode="after")
    def check_quote_details(self):
        """quote_details must be present exactly when is_quote is set."""
        if self.is_quote != (self.quote_details is not None):
            raise ValueError("quote_details must be present if and only if is_quote is true")
        return self


class NegotiationRecord(BaseModel):
    """Persisted negotiation between one buyer and one seller over one entity."""

    id: str = Field(default_factory=new_negotiation_id)
    entity_id: str
    entity_type: EntityType
    buyer_id: str
    seller_id: str
    current_offer: Decimal = Field(ge=0)
    status: NegotiationStatus = NegotiationStatus.STARTED
    messages: list[Message] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    buyer_payment_ref: Optional[str] = None
    seller_payment_ref: Optional[str] = None
    version: int = Field(default=0, ge=0)

    def role_of(self, user_id: str) -> Optional[PartyRole]:
        """Return "buyer", "seller" or None for an arbitrary user id."""
        if user_id == self.buyer_id:
            return "buyer"
        if user_id == self.seller_id:
            return "seller"
        return None

    def is_participant(self, user_id: str) -> bool:
        return self.role_of(user_id) is not None

    @property
    def quote_count(self) -> int:
        return sum(1 for m in self.messages if m.is_quote)

    @property
    def both_fees_paid(self) -> bool:
        return self.buyer_payment_ref is not None and self.seller_payment_ref is not None

    def find_message(self, sender_id: str, idempotency_key: Optional[str]) -> Optional[Message]:
        """Find a previously appended message by its client idempotency key."""
        if not idempotency_key:
            return None
        for message in self.messages:
            if message.sender_id == sender_id and message.idempotency_key == idempotency_key:
                return message
        return None


class MessageDraft(BaseModel):
    """A message to append through the merging start entry point."""

    sender_id: str
    text: str = ""
    quote: Optional[QuoteInput] = None
    idempotency_key: Optional[str] = None


# ========== Read-side views ==========

class DisplayIdentity(BaseModel):
    """What a viewer is allowed to see of one party."""

    display_name: str
    role: Literal["buyer", "seller", "system", "self"]
    masked: bool
    profile_image: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    company_name: Optional[str] = None


class MessageView(BaseModel):
    """A message as rendered for one viewer."""

    id: str
    sender: DisplayIdentity
    is_mine: bool
    text: str
    timestamp: datetime
    is_quote: bool
    is_system: bool
    quote_details: Optional[QuoteDetails] = None


class NegotiationStats(BaseModel):
    """Summary figures shown beside a negotiation."""

    rounds: int
    best_offer: Decimal
    governance_status: str
    buyer_fee_paid: bool
    seller_fee_paid: bool


class NegotiationView(BaseModel):
    """Full negotiation as seen by one viewer."""

    id: str
    entity_id: str
    entity_type: EntityType
    status: NegotiationStatus
    current_offer: Decimal
    created_at: datetime
    viewer_role: Optional[PartyRole]
    identities_unlocked: bool
    counterpart: Optional[DisplayIdentity]
    messages: list[MessageView]
    stats: NegotiationStats


class NegotiationSummary(BaseModel):
    """List entry for a user's negotiations."""

    id: str
    entity_id: str
    entity_type: EntityType
    status: NegotiationStatus
    current_offer: Decimal
    created_at: datetime
    viewer_role: Optional[PartyRole]
    counterpart: Optional[DisplayIdentity]
    stats: NegotiationStats


class QuoteDefaults(BaseModel):
    """Pre-filled quote form values for a negotiation."""

    product_name: str
    quantity: int
    price: Decimal
    budget: Optional[Decimal] = None
    source: Literal["catalog", "record"]
