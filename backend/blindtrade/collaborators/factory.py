"""
Collaborator factory with singleton pattern.

WHAT: Factories for the configured directory, payment gateway, catalog and relay
WHY: Centralize provider selection and avoid multiple instances
HOW: Read *_PROVIDER from config, cache singletons, log selection
"""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .provider import Catalog, PaymentGateway, UserDirectory
    from .realtime import RealtimeRelay

# Singleton instances
_directory_instance: "UserDirectory | None" = None
_payment_instance: "PaymentGateway | None" = None
_catalog_instance: "Catalog | None" = None
_relay_instance: "RealtimeRelay | None" = None


def get_user_directory() -> "UserDirectory":
    """
    Get the configured user directory singleton.

    Raises:
        ValueError: If DIRECTORY_PROVIDER is unknown
    """
    global _directory_instance

    if _directory_instance is None:
        # Import here to avoid circular dependencies
        from ..core.config import settings
        from ..utils.logger import get_logger

        logger = get_logger(__name__)
        provider_name = settings.DIRECTORY_PROVIDER

        if provider_name == "static":
            from .user_directory import StaticUserDirectory
            _directory_instance = StaticUserDirectory()
        elif provider_name == "http":
            from .user_directory import HttpUserDirectory
            _directory_instance = HttpUserDirectory()
        else:
            raise ValueError(f"Unknown directory provider: {provider_name}")

        logger.info(f"User directory initialized: {provider_name}")

    return _directory_instance


def get_payment_gateway() -> "PaymentGateway":
    """
    Get the configured payment gateway singleton.

    Raises:
        ValueError: If PAYMENT_PROVIDER is unknown
    """
    global _payment_instance

    if _payment_instance is None:
        from ..core.config import settings
        from ..utils.logger import get_logger

        logger = get_logger(__name__)
        provider_name = settings.PAYMENT_PROVIDER

        if provider_name == "sandbox":
            from .payment_gateway import SandboxPaymentGateway
            _payment_instance = SandboxPaymentGateway()
        elif provider_name == "http":
            from .payment_gateway import HttpPaymentGateway
            _payment_instance = HttpPaymentGateway()
        else:
            raise ValueError(f"Unknown payment provider: {provider_name}")

        logger.info(f"Payment gateway initialized: {provider_name}")

    return _payment_instance


def get_catalog() -> "Catalog":
    """
    Get the configured catalog singleton.

    Raises:
        ValueError: If CATALOG_PROVIDER is unknown
    """
    global _catalog_instance

    if _catalog_instance is None:
        from ..core.config import settings
        from ..utils.logger import get_logger

        logger = get_logger(__name__)
        provider_name = settings.CATALOG_PROVIDER

        if provider_name == "static":
            from .catalog import StaticCatalog
            _catalog_instance = StaticCatalog()
        elif provider_name == "http":
            from .catalog import HttpCatalog
            _catalog_instance = HttpCatalog()
        else:
            raise ValueError(f"Unknown catalog provider: {provider_name}")

        logger.info(f"Catalog initialized: {provider_name}")

    return _catalog_instance


def get_realtime_relay() -> "RealtimeRelay":
    """Get the process-wide realtime relay."""
    global _relay_instance

    if _relay_instance is None:
        from ..core.config import settings
        from .realtime import RealtimeRelay
        _relay_instance = RealtimeRelay(queue_size=settings.REALTIME_QUEUE_SIZE)

    return _relay_instance


def reset_collaborators() -> None:
    """Reset all collaborator singletons (useful for testing)."""
    global _directory_instance, _payment_instance, _catalog_instance, _relay_instance
    _directory_instance = None
    _payment_instance = None
    _catalog_instance = None
    _relay_instance = None
