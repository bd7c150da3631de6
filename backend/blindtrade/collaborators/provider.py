"""
Collaborator protocol definitions.

WHAT: Abstract interfaces for the services the negotiation core depends on
WHY: Decouple the service from concrete directory/payment/catalog backends
HOW: Use Protocol to define the synchronous methods each backend implements
"""

from decimal import Decimal
from typing import Optional, Protocol

from .types import EntitySnapshot, PaymentConfirmation, RealtimeEvent, UserProfile


class UserDirectory(Protocol):
    """Lookup of real user identities."""

    def get_profile(self, user_id: str) -> Optional[UserProfile]:
        """Return the user's profile, or None if the user is unknown."""
        ...


class PaymentGateway(Protocol):
    """Charges the governance fee."""

    def confirm_payment(self, negotiation_id: str, payer_id: str, amount: Decimal) -> PaymentConfirmation:
        """Charge amount to payer and report whether it was captured."""
        ...


class Catalog(Protocol):
    """Read access to leads, products and services."""

    def get_entity_snapshot(self, entity_id: str, entity_type: str) -> Optional[EntitySnapshot]:
        """Return the entity's current data, or None if unknown."""
        ...


class RealtimePublisher(Protocol):
    """Fire-and-forget delivery of negotiation events."""

    def publish(self, negotiation_id: str, event: RealtimeEvent) -> int:
        """Deliver event to current subscribers; return how many were reached."""
        ...
