"""
Negotiation repository.

WHAT: Load, create and compare-and-swap save negotiation records
WHY: Writers in other processes must not silently overwrite each other
HOW: UPDATE ... WHERE id = ? AND version = ? inside one transaction with the
     appended messages; zero affected rows means the caller lost the race
"""

import enum
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Iterator, Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, selectinload, sessionmaker

from .database import SessionLocal
from .models import MessageRow, NegotiationRow
from ..models.negotiation import Message, NegotiationRecord, QuoteDetails
from ..utils.exceptions import CollaboratorUnavailableError
from ..utils.logger import get_logger

logger = get_logger(__name__)


class SaveResult(str, enum.Enum):
    """Outcome of a versioned write."""
    OK = "ok"
    CONFLICT = "conflict"


def _as_utc(value: datetime) -> datetime:
    """SQLite returns naive datetimes; stored values are always UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _message_from_row(row: MessageRow) -> Message:
    return Message(
        id=row.message_id,
        sender_id=row.sender_id,
        sender_name=row.sender_name,
        text=row.text,
        timestamp=_as_utc(row.timestamp),
        is_quote=row.is_quote,
        is_system=row.is_system,
        quote_details=QuoteDetails.model_validate(row.quote_details) if row.quote_details else None,
        idempotency_key=row.idempotency_key,
    )


def _record_from_row(row: NegotiationRow) -> NegotiationRecord:
    return NegotiationRecord(
        id=row.id,
        entity_id=row.entity_id,
        entity_type=row.entity_type,
        buyer_id=row.buyer_id,
        seller_id=row.seller_id,
        current_offer=Decimal(row.current_offer),
        status=row.status,
        messages=[_message_from_row(m) for m in row.messages],
        created_at=_as_utc(row.created_at),
        buyer_payment_ref=row.buyer_payment_ref,
        seller_payment_ref=row.seller_payment_ref,
        version=row.version,
    )


def _message_row(negotiation_pk: int, position: int, message: Message) -> MessageRow:
    return MessageRow(
        message_id=message.id,
        negotiation_pk=negotiation_pk,
        position=position,
        sender_id=message.sender_id,
        sender_name=message.sender_name,
        text=message.text,
        timestamp=message.timestamp,
        is_quote=message.is_quote,
        is_system=message.is_system,
        quote_details=message.quote_details.model_dump(mode="json") if message.quote_details else None,
        idempotency_key=message.idempotency_key,
    )


class NegotiationRepository:
    """SQLAlchemy-backed store of negotiation records."""

    def __init__(self, session_factory: sessionmaker = SessionLocal):
        self.session_factory = session_factory

    @contextmanager
    def _transaction(self) -> Iterator[Session]:
        """
        Session scope that commits on success.

        IntegrityError propagates for callers that treat it as a lost race;
        any other database failure becomes CollaboratorUnavailableError.
        """
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except IntegrityError:
            session.rollback()
            raise
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Persistence failure: {e}")
            raise CollaboratorUnavailableError("persistence", str(e)) from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _query(self):
        return select(NegotiationRow).options(selectinload(NegotiationRow.messages))

    def load(self, negotiation_id: str) -> Optional[NegotiationRecord]:
        with self._transaction() as session:
            row = session.execute(
                self._query().where(NegotiationRow.id == negotiation_id)
            ).scalar_one_or_none()
            return _record_from_row(row) if row else None

    def find_by_triple(self, entity_id: str, buyer_id: str, seller_id: str) -> Optional[NegotiationRecord]:
        with self._transaction() as session:
            row = session.execute(
                self._query().where(
                    NegotiationRow.entity_id == entity_id,
                    NegotiationRow.buyer_id == buyer_id,
                    NegotiationRow.seller_id == seller_id,
                )
            ).scalar_one_or_none()
            return _record_from_row(row) if row else None

    def list_by_party(self, user_id: str) -> list[NegotiationRecord]:
        """Negotiations where user_id is buyer or seller, newest first."""
        with self._transaction() as session:
            rows = session.execute(
                self._query()
                .where(or_(NegotiationRow.buyer_id == user_id, NegotiationRow.seller_id == user_id))
                .order_by(NegotiationRow.created_at.desc(), NegotiationRow.pk.desc())
            ).scalars().all()
            return [_record_from_row(row) for row in rows]

    def create(self, record: NegotiationRecord) -> SaveResult:
        """
        Insert a new negotiation with version 1.

        Returns:
            OK, or CONFLICT when the id or (entity, buyer, seller) triple
            already exists
        """
        if record.version != 1:
            raise ValueError(f"New negotiation must have version 1, got {record.version}")

        try:
            with self._transaction() as session:
                row = NegotiationRow(
                    id=record.id,
                    entity_id=record.entity_id,
                    entity_type=record.entity_type,
                    buyer_id=record.buyer_id,
                    seller_id=record.seller_id,
                    current_offer=str(record.current_offer),
                    status=record.status,
                    buyer_payment_ref=record.buyer_payment_ref,
                    seller_payment_ref=record.seller_payment_ref,
                    version=record.version,
                    created_at=record.created_at,
                )
                session.add(row)
                session.flush()
                for position, message in enumerate(record.messages):
                    session.add(_message_row(row.pk, position, message))
        except IntegrityError as e:
            logger.info(f"Create of negotiation {record.id} lost to an existing row: {e.orig}")
            return SaveResult.CONFLICT

        logger.info(
            f"Created negotiation {record.id} "
            f"(entity={record.entity_id}, buyer={record.buyer_id}, seller={record.seller_id})"
        )
        return SaveResult.OK

    def save(self, record: NegotiationRecord, expected_version: int) -> SaveResult:
        """
        Compare-and-swap write of an existing negotiation.

        Messages are append-only: rows already stored are left alone and
        only messages beyond the stored count are inserted.

        Args:
            record: New state; record.version must be expected_version + 1
            expected_version: Version the caller read

        Returns:
            OK, or CONFLICT if the stored version moved on
        """
        if record.version != expected_version + 1:
            raise ValueError(
                f"Record version {record.version} must be expected_version + 1 ({expected_version + 1})"
            )

        try:
            with self._transaction() as session:
                result = session.execute(
                    update(NegotiationRow)
                    .where(NegotiationRow.id == record.id, NegotiationRow.version == expected_version)
                    .values(
                        current_offer=str(record.current_offer),
                        status=record.status,
                        buyer_payment_ref=record.buyer_payment_ref,
                        seller_payment_ref=record.seller_payment_ref,
                        version=record.version,
                        updated_at=datetime.now(timezone.utc),
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    logger.info(
                        f"Version conflict on negotiation {record.id} (expected {expected_version})"
                    )
                    return SaveResult.CONFLICT

                negotiation_pk = session.execute(
                    select(NegotiationRow.pk).where(NegotiationRow.id == record.id)
                ).scalar_one()
                stored = session.execute(
                    select(func.count(MessageRow.pk)).where(MessageRow.negotiation_pk == negotiation_pk)
                ).scalar_one()
                for position in range(stored, len(record.messages)):
                    session.add(_message_row(negotiation_pk, position, record.messages[position]))
        except IntegrityError as e:
            logger.warning(f"Message append conflict on negotiation {record.id}: {e.orig}")
            return SaveResult.CONFLICT

        return SaveResult.OK
