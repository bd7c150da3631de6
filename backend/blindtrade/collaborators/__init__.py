"""External collaborators of the negotiation core."""

from .types import (
    UserProfile,
    EntitySnapshot,
    PaymentConfirmation,
    RealtimeEvent,
)
from .provider import UserDirectory, PaymentGateway, Catalog, RealtimePublisher
from .realtime import RealtimeRelay, Subscription
from .factory import (
    get_user_directory,
    get_payment_gateway,
    get_catalog,
    get_realtime_relay,
    reset_collaborators,
)

__all__ = [
    "UserProfile",
    "EntitySnapshot",
    "PaymentConfirmation",
    "RealtimeEvent",
    "UserDirectory",
    "PaymentGateway",
    "Catalog",
    "RealtimePublisher",
    "RealtimeRelay",
    "Subscription",
    "get_user_directory",
    "get_payment_gateway",
    "get_catalog",
    "get_realtime_relay",
    "reset_collaborators",
]
