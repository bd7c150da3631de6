"""
SSE streaming endpoint.

WHAT: Server-Sent Events stream of one negotiation's realtime events
WHY: Participants see new messages and status changes live
HOW: EventSourceResponse over a RealtimeRelay subscription with periodic heartbeats
"""

import asyncio
import json
from datetime import datetime, timezone
from typing import AsyncIterator, Optional

from fastapi import APIRouter, Depends, Request
from sse_starlette.sse import EventSourceResponse

from ....collaborators.factory import get_realtime_relay
from ....collaborators.realtime import RealtimeRelay
from ....core.config import settings
from ....services.negotiation_service import NegotiationService, get_negotiation_service
from ....utils.logger import get_logger

logger = get_logger(__name__)

router = APIRouter()


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


async def negotiation_event_generator(
    negotiation_id: str,
    relay: RealtimeRelay,
    request: Optional[Request] = None,
    heartbeat_interval: float = settings.SSE_HEARTBEAT_INTERVAL,
    max_events: Optional[int] = None,
) -> AsyncIterator[dict]:
    """
    Generate SSE events for a negotiation.

    WHAT: Stream relay events with heartbeats
    WHY: Real-time updates to frontend
    HOW: Subscribe on this loop, wait for events with a heartbeat timeout

    Args:
        negotiation_id: Negotiation to follow
        relay: Realtime relay to subscribe to
        request: Incoming request, used to stop on client disconnect
        heartbeat_interval: Seconds without events before a heartbeat
        max_events: Stop after this many relay events (None = until disconnect)

    Yields:
        SSE event dicts
    """
    subscription = relay.subscribe(negotiation_id)
    logger.info(f"Starting SSE stream for negotiation {negotiation_id}")

    try:
        # Send connected event immediately
        yield {
            "event": "connected",
            "data": json.dumps({
                "type": "connected",
                "negotiation_id": negotiation_id,
                "timestamp": _now()
            })
        }

        delivered = 0
        while max_events is None or delivered < max_events:
            if request is not None and await request.is_disconnected():
                logger.info(f"SSE client for {negotiation_id} disconnected")
                break

            try:
                event = await subscription.get(timeout=heartbeat_interval)
            except asyncio.TimeoutError:
                yield {
                    "event": "heartbeat",
                    "data": json.dumps({"type": "heartbeat", "timestamp": _now()})
                }
                continue

            payload = dict(event.data)
            payload["type"] = event.type
            payload.setdefault("timestamp", _now())
            yield {
                "event": event.type,
                "data": json.dumps(payload, default=str)
            }
            delivered += 1
    finally:
        relay.unsubscribe(subscription)
        logger.info(f"SSE stream closed for negotiation {negotiation_id}")


@router.get("/negotiations/{negotiation_id}/stream")
async def stream_negotiation(
    negotiation_id: str,
    request: Request,
    service: NegotiationService = Depends(get_negotiation_service),
):
    """
    Stream realtime events of a negotiation.

    Events: connected, negotiation_updated, new_message, heartbeat. Payloads
    carry sender roles and pseudonyms only; clients re-read the negotiation
    for identity-resolved data.
    """
    # 404 for unknown negotiations before opening the stream
    await asyncio.to_thread(service.get_record, negotiation_id)

    return EventSourceResponse(
        negotiation_event_generator(negotiation_id, get_realtime_relay(), request)
    )
