"""
Collaborator types and dataclasses.

WHAT: Data contracts exchanged with the directory, payment gateway, catalog and relay
WHY: Ensure consistent contracts across static, sandbox and HTTP implementations
HOW: Plain dataclasses; failures use CollaboratorUnavailableError from utils.exceptions
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Literal, Optional


@dataclass
class UserProfile:
    """Real identity of a marketplace user, revealed after unlock."""
    user_id: str
    name: str
    profile_image: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    company_name: Optional[str] = None


@dataclass
class EntitySnapshot:
    """Current catalog data of a lead, product or service."""
    entity_id: str
    entity_type: str
    title: str
    quantity: int = 1
    price: Optional[Decimal] = None
    budget: Optional[Decimal] = None


@dataclass
class PaymentConfirmation:
    """Outcome of a governance fee charge."""
    confirmed: bool
    reference: Optional[str]
    amount: Decimal
    currency: str
    reason: Optional[str] = None


EventType = Literal["connected", "negotiation_updated", "new_message", "heartbeat"]


@dataclass
class RealtimeEvent:
    """Event pushed to realtime subscribers of one negotiation."""
    type: EventType
    negotiation_id: str
    data: dict[str, Any] = field(default_factory=dict)

