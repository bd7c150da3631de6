"""
Catalog implementations.

WHAT: Read current data of the lead, product or service under negotiation
WHY: Quote forms are pre-filled from the catalog
HOW: StaticCatalog for local data, HttpCatalog for a remote catalog service
"""

from decimal import Decimal, InvalidOperation
from typing import Mapping, Optional

from ..core.config import settings
from ..utils.exceptions import CollaboratorUnavailableError
from ..utils.logger import get_logger
from .http_client import RetryingHttpClient
from .types import EntitySnapshot

logger = get_logger(__name__)


class StaticCatalog:
    """In-memory catalog keyed by (entity_type, entity_id)."""

    def __init__(self, entities: Optional[Mapping[tuple[str, str], EntitySnapshot]] = None):
        self.entities = dict(entities or {})

    def add(self, snapshot: EntitySnapshot):
        self.entities[(snapshot.entity_type, snapshot.entity_id)] = snapshot

    def get_entity_snapshot(self, entity_id: str, entity_type: str) -> Optional[EntitySnapshot]:
        return self.entities.get((entity_type, entity_id))


def _decimal_or_none(value) -> Optional[Decimal]:
    if value is None:
        return None
    return Decimal(str(value))


class HttpCatalog:
    """
    Remote catalog.

    GET {CATALOG_URL}/entities/{entity_type}/{entity_id}
        200 -> {"id", "type", "title", "quantity", "price", "budget"}
        404 -> unknown entity
    """

    def __init__(self, http: Optional[RetryingHttpClient] = None):
        self.http = http or RetryingHttpClient(
            name="catalog",
            base_url=settings.CATALOG_URL,
            timeout=settings.COLLABORATOR_TIMEOUT,
            max_retries=settings.COLLABORATOR_MAX_RETRIES,
            retry_delay=settings.COLLABORATOR_RETRY_DELAY,
        )

    def get_entity_snapshot(self, entity_id: str, entity_type: str) -> Optional[EntitySnapshot]:
        response = self.http.request(
            "GET", f"/entities/{entity_type.lower()}/{entity_id}", allow_status=(404,)
        )
        if response.status_code == 404:
            return None

        data = self.http.json(response)
        try:
            return EntitySnapshot(
                entity_id=str(data.get("id", entity_id)),
                entity_type=str(data.get("type", entity_type)).upper(),
                title=data["title"],
                quantity=int(data.get("quantity") or 1),
                price=_decimal_or_none(data.get("price")),
                budget=_decimal_or_none(data.get("budget")),
            )
        except (KeyError, ValueError, InvalidOperation) as e:
            raise CollaboratorUnavailableError("catalog", f"invalid response: {e}") from e
