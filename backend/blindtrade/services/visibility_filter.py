"""
Identity visibility for negotiation views.

WHAT: Decide what each viewer sees of the other party and of every sender
WHY: Blind negotiation - identities stay masked until both governance fees are paid
HOW: Pure function of (status, buyer_id, seller_id, viewer_id); real names come
     from the user directory only after unlock, and stored messages are never rewritten
"""

from typing import Optional

from ..collaborators.provider import UserDirectory
from ..models.negotiation import (
    DisplayIdentity,
    Message,
    MessageView,
    NegotiationRecord,
    NegotiationStats,
    NegotiationSummary,
    NegotiationView,
    SYSTEM_SENDER_ID,
    SYSTEM_SENDER_NAME,
)
from ..utils.logger import get_logger
from .state_machine import GOVERNANCE_LABELS, identities_unlocked, pseudonym

logger = get_logger(__name__)

SELF_DISPLAY_NAME = "You"


def pseudonym_for(record: NegotiationRecord, user_id: str) -> str:
    """
    Masked name of a party of this negotiation.

    Args:
        record: Negotiation the user belongs to
        user_id: Buyer or seller id

    Returns:
        Buyer_#<last4> or Seller_#<last4>
    """
    role = record.role_of(user_id)
    if role is None:
        raise ValueError(f"{user_id} is not a party of negotiation {record.id}")
    return pseudonym(role, user_id)


def fallback_name(user_id: str) -> str:
    """Name shown after unlock when the directory has no profile."""
    return f"User_{user_id[-4:]}"


def resolve_display_name(
    record: NegotiationRecord,
    viewer_id: str,
    counterpart_id: str,
    directory: UserDirectory,
) -> DisplayIdentity:
    """
    Resolve how counterpart_id is shown to viewer_id.

    WHAT: "You", "System", a pseudonym, or the real directory profile
    WHY: Real identity is the thing the governance fee pays for
    HOW: Status and participation decide; the directory is only consulted
         once the negotiation is unlocked and the viewer is a participant

    Args:
        record: Negotiation being viewed
        viewer_id: Who is looking
        counterpart_id: Whose identity is displayed (buyer, seller or "system")
        directory: User directory collaborator

    Returns:
        DisplayIdentity for the counterpart

    Raises:
        CollaboratorUnavailableError: Directory failed after unlock
    """
    if counterpart_id == SYSTEM_SENDER_ID:
        return DisplayIdentity(display_name=SYSTEM_SENDER_NAME, role="system", masked=False)

    if counterpart_id == viewer_id:
        return DisplayIdentity(display_name=SELF_DISPLAY_NAME, role="self", masked=False)

    role = record.role_of(counterpart_id)
    if role is None:
        raise ValueError(f"{counterpart_id} is not a party of negotiation {record.id}")

    if not (identities_unlocked(record.status) and record.is_participant(viewer_id)):
        return DisplayIdentity(display_name=pseudonym(role, counterpart_id), role=role, masked=True)

    profile = directory.get_profile(counterpart_id)
    if profile is None:
        logger.warning(f"No directory profile for {counterpart_id}, using fallback name")
        return DisplayIdentity(display_name=fallback_name(counterpart_id), role=role, masked=False)

    return DisplayIdentity(
        display_name=profile.name,
        role=role,
        masked=False,
        profile_image=profile.profile_image,
        email=profile.email,
        phone=profile.phone,
        company_name=profile.company_name,
    )


def governance_status_label(record: NegotiationRecord) -> str:
    return GOVERNANCE_LABELS[record.status]


def compute_stats(record: NegotiationRecord) -> NegotiationStats:
    """Quote rounds, best offer and governance label for the side panel."""
    return NegotiationStats(
        rounds=record.quote_count,
        best_offer=record.current_offer,
        governance_status=governance_status_label(record),
        buyer_fee_paid=record.buyer_payment_ref is not None,
        seller_fee_paid=record.seller_payment_ref is not None,
    )


class _IdentityCache:
    """Resolve each sender once per view build; nothing outlives the call."""

    def __init__(self, record: NegotiationRecord, viewer_id: str, directory: UserDirectory):
        self.record = record
        self.viewer_id = viewer_id
        self.directory = directory
        self._resolved: dict[str, DisplayIdentity] = {}

    def get(self, counterpart_id: str) -> DisplayIdentity:
        if counterpart_id not in self._resolved:
            self._resolved[counterpart_id] = resolve_display_name(
                self.record, self.viewer_id, counterpart_id, self.directory
            )
        return self._resolved[counterpart_id]


def build_message_view(message: Message, viewer_id: str, sender: DisplayIdentity) -> MessageView:
    return MessageView(
        id=message.id,
        sender=sender,
        is_mine=message.sender_id == viewer_id,
        text=message.text,
        timestamp=message.timestamp,
        is_quote=message.is_quote,
        is_system=message.is_system,
        quote_details=message.quote_details,
    )


def _counterpart_of(record: NegotiationRecord, viewer_id: str) -> Optional[str]:
    role = record.role_of(viewer_id)
    if role == "buyer":
        return record.seller_id
    if role == "seller":
        return record.buyer_id
    return None


def build_negotiation_view(
    record: NegotiationRecord,
    viewer_id: str,
    directory: UserDirectory,
) -> NegotiationView:
    """
    Render a negotiation for one viewer.

    Every message sender is re-resolved through resolve_display_name, so the
    stored send-time pseudonym is never what a viewer sees after unlock.
    """
    identities = _IdentityCache(record, viewer_id, directory)
    counterpart_id = _counterpart_of(record, viewer_id)

    return NegotiationView(
        id=record.id,
        entity_id=record.entity_id,
        entity_type=record.entity_type,
        status=record.status,
        current_offer=record.current_offer,
        created_at=record.created_at,
        viewer_role=record.role_of(viewer_id),
        identities_unlocked=identities_unlocked(record.status) and record.is_participant(viewer_id),
        counterpart=identities.get(counterpart_id) if counterpart_id else None,
        messages=[
            build_message_view(m, viewer_id, identities.get(m.sender_id))
            for m in record.messages
        ],
        stats=compute_stats(record),
    )


def build_summary(record: NegotiationRecord, viewer_id: str, directory: UserDirectory) -> NegotiationSummary:
    """List entry for the viewer's dashboard."""
    counterpart_id = _counterpart_of(record, viewer_id)
    return NegotiationSummary(
        id=record.id,
        entity_id=record.entity_id,
        entity_type=record.entity_type,
        status=record.status,
        current_offer=record.current_offer,
        created_at=record.created_at,
        viewer_role=record.role_of(viewer_id),
        counterpart=(
            resolve_display_name(record, viewer_id, counterpart_id, directory)
            if counterpart_id else None
        ),
        stats=compute_stats(record),
    )
