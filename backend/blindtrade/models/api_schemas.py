"""
Pydantic API schemas for the negotiation endpoints.

WHAT: Request and response models for FastAPI
WHY: Type-safe validation and serialization at the HTTP boundary
HOW: Pydantic v2 models with constraints; domain models are reused for responses
"""

from decimal import Decimal
from typing import Optional, List
from pydantic import BaseModel, Field

from ..core.config import settings
from .negotiation import (
    EntityType,
    MessageDraft,
    NegotiationRecord,
    NegotiationStatus,
    QuoteInput,
)


# ========== Requests ==========

class StartNegotiationRequest(BaseModel):
    """Open a negotiation, or merge an update into the existing one."""
    entity_id: str = Field(..., min_length=1, max_length=100, description="Lead, product or service ID")
    entity_type: EntityType = Field(..., description="Kind of entity")
    buyer_id: str = Field(..., min_length=1, max_length=100, description="Buyer user ID")
    seller_id: str = Field(..., min_length=1, max_length=100, description="Seller user ID")
    initial_offer: Decimal = Field(..., ge=0, description="Opening offer, or requested current offer")
    status: Optional[NegotiationStatus] = Field(None, description="Requested status on an existing negotiation")
    messages: List[MessageDraft] = Field(default_factory=list, description="Messages to append")
    actor_id: Optional[str] = Field(None, max_length=100, description="Who requests the status change")


class SendMessageRequest(BaseModel):
    """Chat message from a participant."""
    sender_id: str = Field(..., min_length=1, max_length=100)
    text: str = Field(..., min_length=1, max_length=settings.MAX_MESSAGE_LENGTH)
    idempotency_key: Optional[str] = Field(None, max_length=100)


class SendQuoteRequest(BaseModel):
    """Formal quote from a participant."""
    sender_id: str = Field(..., min_length=1, max_length=100)
    quote: QuoteInput
    text: str = Field("", max_length=settings.MAX_MESSAGE_LENGTH)
    idempotency_key: Optional[str] = Field(None, max_length=100)


class ActorRequest(BaseModel):
    """Body of accept / finalize."""
    actor_id: str = Field(..., min_length=1, max_length=100)
    idempotency_key: Optional[str] = Field(None, max_length=100)


class PayGovernanceFeeRequest(BaseModel):
    """Governance fee payment by one party."""
    payer_id: str = Field(..., min_length=1, max_length=100)


class WithdrawRequest(BaseModel):
    """Withdraw from a negotiation."""
    actor_id: str = Field(..., min_length=1, max_length=100)
    reason: Optional[str] = Field(None, max_length=settings.MAX_MESSAGE_LENGTH)
    idempotency_key: Optional[str] = Field(None, max_length=100)


# ========== Responses ==========

class NegotiationAck(BaseModel):
    """Result of a mutation; identities are not included."""
    id: str
    status: NegotiationStatus
    current_offer: Decimal
    version: int
    message_count: int
    stream_url: str

    @classmethod
    def from_record(cls, record: NegotiationRecord) -> "NegotiationAck":
        return cls(
            id=record.id,
            status=record.status,
            current_offer=record.current_offer,
            version=record.version,
            message_count=len(record.messages),
            stream_url=f"/api/v1/negotiations/{record.id}/stream",
        )
