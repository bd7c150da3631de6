"""
ORM models for negotiation persistence.

WHAT: SQLAlchemy models for negotiations and their message logs
WHY: Persist records with an optimistic-concurrency version and an append-only log
HOW: Declarative models with constraints, relationships, and indexes; money is
     stored as exact decimal text, quote breakdowns as JSON
"""

from datetime import datetime, timezone
from sqlalchemy import (
    Column, Integer, String, Boolean, DateTime, Text, JSON,
    ForeignKey, CheckConstraint, UniqueConstraint, Index, Enum as SQLEnum
)
from sqlalchemy.orm import relationship

from .database import Base
from ..models.negotiation import EntityType, NegotiationStatus


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class NegotiationRow(Base):
    """
    Negotiation table - one blind negotiation between a buyer and a seller.

    WHAT: Status, current offer, payment references and version of a negotiation
    WHY: At most one negotiation per (entity, buyer, seller); version guards
         concurrent writers from other processes
    HOW: Unique triple constraint; writers update WHERE version = expected
    """
    __tablename__ = "negotiations"

    pk = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(String(36), unique=True, nullable=False)
    entity_id = Column(String(100), nullable=False)
    entity_type = Column(SQLEnum(EntityType), nullable=False)
    buyer_id = Column(String(100), nullable=False)
    seller_id = Column(String(100), nullable=False)
    current_offer = Column(String(40), nullable=False)  # Decimal as text
    status = Column(SQLEnum(NegotiationStatus), nullable=False, default=NegotiationStatus.STARTED)
    buyer_payment_ref = Column(String(100), nullable=True)
    seller_payment_ref = Column(String(100), nullable=True)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, nullable=False, default=_utcnow)
    updated_at = Column(DateTime, nullable=False, default=_utcnow, onupdate=_utcnow)

    # Relationships
    messages = relationship(
        "MessageRow",
        back_populates="negotiation",
        cascade="all, delete-orphan",
        order_by="MessageRow.position",
    )

    __table_args__ = (
        UniqueConstraint("entity_id", "buyer_id", "seller_id", name="unique_negotiation_triple"),
        CheckConstraint("buyer_id <> seller_id", name="check_distinct_parties"),
        CheckConstraint("version >= 1", name="check_version_positive"),
        Index("idx_negotiation_buyer", "buyer_id"),
        Index("idx_negotiation_seller", "seller_id"),
    )

    def __repr__(self):
        return f"<NegotiationRow(id={self.id}, status={self.status}, version={self.version})>"


class MessageRow(Base):
    """
    Message table - append-only negotiation log.

    WHAT: Chat messages, quotes and protocol directives in log order
    WHY: Full history survives every status change
    HOW: Unique (negotiation, position) ordering; unique idempotency key per sender
    """
    __tablename__ = "negotiation_messages"

    pk = Column(Integer, primary_key=True, autoincrement=True)
    message_id = Column(String(36), unique=True, nullable=False)
    negotiation_pk = Column(Integer, ForeignKey("negotiations.pk", ondelete="CASCADE"), nullable=False)
    position = Column(Integer, nullable=False)
    sender_id = Column(String(100), nullable=False)
    sender_name = Column(String(100), nullable=False)
    text = Column(Text, nullable=False)
    timestamp = Column(DateTime, nullable=False, default=_utcnow)
    is_quote = Column(Boolean, nullable=False, default=False)
    is_system = Column(Boolean, nullable=False, default=False)
    quote_details = Column(JSON, nullable=True)
    idempotency_key = Column(String(100), nullable=True)

    # Relationships
    negotiation = relationship("NegotiationRow", back_populates="messages")

    __table_args__ = (
        UniqueConstraint("negotiation_pk", "position", name="unique_message_position"),
        UniqueConstraint("negotiation_pk", "sender_id", "idempotency_key", name="unique_message_idempotency"),
        CheckConstraint("position >= 0", name="check_position_non_negative"),
        Index("idx_message_negotiation_position", "negotiation_pk", "position"),
    )

    def __repr__(self):
        return f"<MessageRow(id={self.message_id}, sender={self.sender_name}, position={self.position})>"
