"""
Negotiation endpoints.

WHAT: HTTP surface of the negotiation service
WHY: Start, read and advance blind negotiations
HOW: Thin sync FastAPI handlers (run in the threadpool) calling NegotiationService;
     business exceptions are translated by middleware.error_handler
"""

from fastapi import APIRouter, Depends, Query, status

from ....models.api_schemas import (
    ActorRequest,
    NegotiationAck,
    PayGovernanceFeeRequest,
    SendMessageRequest,
    SendQuoteRequest,
    StartNegotiationRequest,
    WithdrawRequest,
)
from ....models.negotiation import NegotiationSummary, NegotiationView, QuoteDefaults
from ....services.negotiation_service import NegotiationService, get_negotiation_service
from ....utils.logger import get_logger

logger = get_logger(__name__)

router = APIRouter()


@router.post("/negotiations/start", response_model=NegotiationAck, status_code=status.HTTP_200_OK)
def start_negotiation(
    request: StartNegotiationRequest,
    service: NegotiationService = Depends(get_negotiation_service),
):
    """
    Start a negotiation or update the existing one for the same triple.

    WHAT: Create-or-merge entry point
    WHY: Clients re-send start for a negotiation they already have
    HOW: NegotiationService.start branches on existence
    """
    logger.info(
        f"Start negotiation: entity={request.entity_id}, "
        f"buyer={request.buyer_id}, seller={request.seller_id}"
    )
    record = service.start(
        request.entity_id,
        request.entity_type,
        request.buyer_id,
        request.seller_id,
        request.initial_offer,
        status=request.status,
        messages=request.messages,
        actor_id=request.actor_id,
    )
    return NegotiationAck.from_record(record)


@router.get("/negotiations/user/{user_id}", response_model=list[NegotiationSummary])
def list_negotiations(user_id: str, service: NegotiationService = Depends(get_negotiation_service)):
    """Negotiations of a user, newest first."""
    return service.list_for_user(user_id)


@router.get("/negotiations/{negotiation_id}", response_model=NegotiationView)
def get_negotiation(
    negotiation_id: str,
    viewer_id: str = Query(..., min_length=1, description="Who is looking"),
    service: NegotiationService = Depends(get_negotiation_service),
):
    """Negotiation with identities resolved for viewer_id."""
    return service.get(negotiation_id, viewer_id)


@router.get("/negotiations/{negotiation_id}/quote-defaults", response_model=QuoteDefaults)
def get_quote_defaults(
    negotiation_id: str,
    viewer_id: str = Query(..., min_length=1),
    service: NegotiationService = Depends(get_negotiation_service),
):
    """Pre-filled quote form values."""
    return service.quote_defaults(negotiation_id, viewer_id)


@router.post("/negotiations/{negotiation_id}/messages", response_model=NegotiationAck)
def send_message(
    negotiation_id: str,
    request: SendMessageRequest,
    service: NegotiationService = Depends(get_negotiation_service),
):
    record = service.send_message(negotiation_id, request.sender_id, request.text, request.idempotency_key)
    return NegotiationAck.from_record(record)


@router.post("/negotiations/{negotiation_id}/quotes", response_model=NegotiationAck)
def send_quote(
    negotiation_id: str,
    request: SendQuoteRequest,
    service: NegotiationService = Depends(get_negotiation_service),
):
    record = service.send_quote(
        negotiation_id, request.sender_id, request.quote, request.idempotency_key, text=request.text
    )
    return NegotiationAck.from_record(record)


@router.post("/negotiations/{negotiation_id}/accept", response_model=NegotiationAck)
def accept_offer(
    negotiation_id: str,
    request: ActorRequest,
    service: NegotiationService = Depends(get_negotiation_service),
):
    record = service.accept(negotiation_id, request.actor_id, request.idempotency_key)
    return NegotiationAck.from_record(record)


@router.post("/negotiations/{negotiation_id}/pay", response_model=NegotiationAck)
def pay_governance_fee(
    negotiation_id: str,
    request: PayGovernanceFeeRequest,
    service: NegotiationService = Depends(get_negotiation_service),
):
    """
    Pay the governance fee for one party.

    Returns 402 if the gateway declines and 409 if this party already paid.
    """
    record = service.pay_governance_fee(negotiation_id, request.payer_id)
    return NegotiationAck.from_record(record)


@router.post("/negotiations/{negotiation_id}/finalize", response_model=NegotiationAck)
def finalize_negotiation(
    negotiation_id: str,
    request: ActorRequest,
    service: NegotiationService = Depends(get_negotiation_service),
):
    record = service.finalize(negotiation_id, request.actor_id)
    return NegotiationAck.from_record(record)


@router.post("/negotiations/{negotiation_id}/withdraw", response_model=NegotiationAck)
def withdraw_negotiation(
    negotiation_id: str,
    request: WithdrawRequest,
    service: NegotiationService = Depends(get_negotiation_service),
):
    record = service.withdraw(negotiation_id, request.actor_id, request.reason, request.idempotency_key)
    return NegotiationAck.from_record(record)
