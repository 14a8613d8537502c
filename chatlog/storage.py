import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Iterable, Iterator, NamedTuple, Optional, Protocol

from sqlalchemy import create_engine, func, inspect, or_, text, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from chatlog.config import Settings, settings
from chatlog.domain import (
    FORWARD_FROM,
    Direction,
    Message,
    MessageStatus,
    pick_status_target,
    validate_required,
)
from chatlog.exceptions import StorageError
from chatlog.utils import ensure_utc, utc_now

logger = logging.getLogger(__name__)


def _connect_args(url: str) -> dict:
    # check_same_thread=False is required for SQLite to work with FastAPI's threadpool
    if url.startswith("sqlite"):
        return {"check_same_thread": False}
    return {}


engine = create_engine(
    settings.DATABASE_URL,
    connect_args=_connect_args(settings.DATABASE_URL),
    echo=False,
)

# Create SessionLocal class for creating database sessions
SessionLocal = sessionmaker(autoflush=False, bind=engine)

# Base class for SQLAlchemy models
Base = declarative_base()


def init_db() -> None:
    """
    Initialize the database by creating all tables.
    Called during application startup when the SQL backend is selected.
    """
    logger.debug(f"Initializing database with URL: {settings.DATABASE_URL}")
    try:
        # Import models to register them with Base.metadata
        from chatlog.models import MessageRecord  # noqa: F401

        Base.metadata.create_all(bind=engine)
        logger.info("Database initialized successfully")
    except SQLAlchemyError as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


# =============================================================================
# Store Contract
# =============================================================================

class InsertResult(NamedTuple):
    inserted: bool
    stored: Message


class MessageStore(Protocol):
    """
    Capability interface every message backend implements.

    insert_if_absent and update_status_by_identifier must be atomic with
    respect to their lookup-then-write. Reads return snapshots.
    """

    def insert_if_absent(self, message: Message) -> InsertResult: ...

    def update_status_by_identifier(
        self, candidate_ids: Iterable[str], new_status: MessageStatus, at: datetime
    ) -> bool: ...

    def list_by_conversation(self, counterparty_id: str) -> list[Message]: ...

    def mark_all_incoming_read(self, counterparty_id: str, at: datetime) -> int: ...

    def list_all(self) -> list[Message]: ...

    def latest_in_conversation(self, counterparty_id: str) -> Optional[Message]: ...

    def count_by_status(self) -> dict[str, int]: ...

    def is_ready(self) -> bool: ...


def build_store(config: Settings) -> MessageStore:
    """Create the MessageStore selected by STORE_BACKEND."""
    if config.STORE_BACKEND == "memory":
        from chatlog.memory_store import InMemoryMessageStore

        logger.info("Using in-memory message store")
        return InMemoryMessageStore()

    init_db()
    logger.info("Using SQL message store")
    return SqlMessageStore(SessionLocal)


# =============================================================================
# SQL Backend
# =============================================================================

def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    return ensure_utc(value).replace(tzinfo=None)


def _to_domain(record) -> Message:
    return Message(
        message_id=record.message_id,
        meta_msg_id=record.meta_msg_id,
        counterparty_id=record.counterparty_id,
        display_name=record.display_name,
        message_type=record.message_type,
        body=record.body,
        direction=record.direction,
        status=record.status,
        timestamp=ensure_utc(record.timestamp),
        status_updated_at=ensure_utc(record.status_updated_at),
        phone_number_id=record.phone_number_id,
        display_phone_number=record.display_phone_number,
        seq=record.seq,
    )


class SqlMessageStore:
    """
    MessageStore backed by SQLAlchemy.

    Idempotent insert relies on the unique constraint on message_id; status
    changes are conditional UPDATEs so two writers never both apply.
    """

    def __init__(self, session_factory: sessionmaker = SessionLocal):
        self._session_factory = session_factory

    @contextmanager
    def _session(self) -> Iterator[Session]:
        db = self._session_factory()
        try:
            yield db
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Storage operation failed: {e}")
            raise StorageError(str(e)) from e
        finally:
            db.close()

    def insert_if_absent(self, message: Message) -> InsertResult:
        from chatlog.models import MessageRecord

        validate_required(message)
        logger.debug(f"Inserting message: id={message.message_id}, counterparty={message.counterparty_id}")

        with self._session() as db:
            record = MessageRecord(
                message_id=message.message_id,
                meta_msg_id=message.meta_msg_id,
                counterparty_id=message.counterparty_id,
                display_name=message.display_name,
                message_type=message.message_type.value,
                body=message.body,
                direction=message.direction.value,
                status=message.status.value,
                timestamp=_naive_utc(message.timestamp),
                status_updated_at=_naive_utc(message.status_updated_at),
                phone_number_id=message.phone_number_id,
                display_phone_number=message.display_phone_number,
                created_at=_naive_utc(utc_now()),
            )
            try:
                db.add(record)
                db.commit()
            except IntegrityError:
                # message_id already exists - expected for idempotency
                db.rollback()
                existing = (
                    db.query(MessageRecord)
                    .filter(MessageRecord.message_id == message.message_id)
                    .one()
                )
                logger.info(f"Duplicate message detected: {message.message_id}")
                return InsertResult(False, _to_domain(existing))

            db.refresh(record)
            return InsertResult(True, _to_domain(record))

    def update_status_by_identifier(
        self, candidate_ids: Iterable[str], new_status: MessageStatus, at: datetime
    ) -> bool:
        from chatlog.models import MessageRecord

        ids = sorted({i for i in candidate_ids if i})
        allowed = [s.value for s in FORWARD_FROM[MessageStatus(new_status)]]
        if not ids or not allowed:
            return False

        with self._session() as db:
            matches = (
                db.query(MessageRecord)
                .filter(or_(MessageRecord.message_id.in_(ids), MessageRecord.meta_msg_id.in_(ids)))
                .all()
            )
            target = pick_status_target(matches, ids)
            if target is None:
                logger.debug(f"No message matches status identifiers {ids}")
                return False

            result = db.execute(
                update(MessageRecord)
                .where(MessageRecord.seq == target.seq, MessageRecord.status.in_(allowed))
                .values(status=MessageStatus(new_status).value, status_updated_at=_naive_utc(at))
            )
            db.commit()
            return result.rowcount == 1

    def list_by_conversation(self, counterparty_id: str) -> list[Message]:
        from chatlog.models import MessageRecord

        with self._session() as db:
            records = (
                db.query(MessageRecord)
                .filter(MessageRecord.counterparty_id == counterparty_id)
                .order_by(MessageRecord.timestamp.asc(), MessageRecord.seq.asc())
                .all()
            )
            return [_to_domain(r) for r in records]

    def mark_all_incoming_read(self, counterparty_id: str, at: datetime) -> int:
        from chatlog.models import MessageRecord

        with self._session() as db:
            result = db.execute(
                update(MessageRecord)
                .where(
                    MessageRecord.counterparty_id == counterparty_id,
                    MessageRecord.direction == Direction.INCOMING.value,
                    MessageRecord.status != MessageStatus.READ.value,
                )
                .values(status=MessageStatus.READ.value, status_updated_at=_naive_utc(at))
            )
            db.commit()
            logger.debug(f"Marked {result.rowcount} messages read for {counterparty_id}")
            return result.rowcount

    def list_all(self) -> list[Message]:
        from chatlog.models import MessageRecord

        with self._session() as db:
            records = (
                db.query(MessageRecord)
                .order_by(MessageRecord.timestamp.asc(), MessageRecord.seq.asc())
                .all()
            )
            return [_to_domain(r) for r in records]

    def latest_in_conversation(self, counterparty_id: str) -> Optional[Message]:
        from chatlog.models import MessageRecord

        with self._session() as db:
            record = (
                db.query(MessageRecord)
                .filter(MessageRecord.counterparty_id == counterparty_id)
                .order_by(MessageRecord.timestamp.desc(), MessageRecord.seq.desc())
                .first()
            )
            return _to_domain(record) if record else None

    def count_by_status(self) -> dict[str, int]:
        from chatlog.models import MessageRecord

        with self._session() as db:
            rows = (
                db.query(MessageRecord.status, func.count(MessageRecord.seq).label("count"))
                .group_by(MessageRecord.status)
                .all()
            )
            return {row.status: row.count for row in rows}

    def is_ready(self) -> bool:
        """
        Check if the database is reachable and schema is applied.

        Returns:
            True if DB is healthy and schema exists, False otherwise.
        """
        try:
            with self._session_factory() as db:
                db.execute(text("SELECT 1"))
                if not inspect(db.get_bind()).has_table("messages"):
                    logger.error("Database schema not applied: 'messages' table not found")
                    return False
            return True
        except SQLAlchemyError as e:
            logger.error(f"Database health check failed: {e}")
            return False
