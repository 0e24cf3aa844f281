import logging
from typing import List, NamedTuple, Optional, Tuple

from sqlalchemy import create_engine, text
from sqlalchemy.orm import sessionmaker, Session, declarative_base
from sqlalchemy.exc import IntegrityError
from starlette.concurrency import run_in_threadpool

from relay.config import settings

logger = logging.getLogger(__name__)

# check_same_thread=False is required because log operations run in the threadpool
engine = create_engine(
    settings.DATABASE_URL,
    connect_args={"check_same_thread": False},
    echo=False,
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()

# (id, content) as read back from the log
Row = Tuple[int, str]


class AppendResult(NamedTuple):
    """
    Outcome of an idempotent append.

    - (id, False): row created with the given id
    - (None, True): idempotency token already stored, nothing written
    - (None, False): write failed, nothing written; caller may retry
    """
    message_id: Optional[int]
    is_duplicate: bool

    @property
    def created(self) -> bool:
        return self.message_id is not None


def init_db() -> None:
    """
    Initialize the database by creating all tables.
    Called during application startup.
    """
    logger.debug(f"Initializing database with URL: {settings.DATABASE_URL}")
    try:
        # Import models to register them with Base.metadata
        from relay.models import Message  # noqa: F401

        Base.metadata.create_all(bind=engine)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


def check_db_health() -> bool:
    """
    Check if the database is reachable and schema is applied.

    Returns:
        True if DB is healthy and schema exists, False otherwise.
    """
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
            result = db.execute(text(
                "SELECT COUNT(*) FROM sqlite_master WHERE type='table' AND name='messages'"
            )).scalar()
            if result == 0:
                logger.error("Database schema not applied: 'messages' table not found")
                return False
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


# =============================================================================
# Message Repository Functions
# =============================================================================

def append_message(db: Session, idempotency_token: str, content: str) -> AppendResult:
    """
    Append a message to the log (idempotent).

    The UNIQUE constraint on idempotency_token is the only concurrency
    control: concurrent or retried inserts with the same token leave
    exactly one row, and every caller after the first gets the duplicate
    signal.

    Args:
        db: Database session
        idempotency_token: Client-generated token for this submission
        content: Encoded message content

    Returns:
        AppendResult (see class docstring)
    """
    from relay.models import Message

    try:
        message = Message(idempotency_token=idempotency_token, content=content)
        db.add(message)
        # Commit expires the instance; take the id while it is loaded
        db.flush()
        message_id = message.id
        db.commit()
        logger.info(f"Message appended: id={message_id}, token={idempotency_token}")
        return AppendResult(message_id, False)

    except IntegrityError:
        db.rollback()
        logger.info(f"Duplicate submission detected: token={idempotency_token}")
        return AppendResult(None, True)

    except Exception as e:
        db.rollback()
        logger.error(f"Failed to append message token={idempotency_token}: {e}")
        return AppendResult(None, False)


def get_messages_after(db: Session, after_id: int) -> List[Row]:
    """
    Retrieve every message with id strictly greater than after_id, ascending.

    Unbounded: used to replay what a client missed while briefly away.
    """
    from relay.models import Message

    rows = (
        db.query(Message.id, Message.content)
        .filter(Message.id > after_id)
        .order_by(Message.id.asc())
        .all()
    )
    logger.debug(f"Read {len(rows)} messages after id={after_id}")
    return [(row.id, row.content) for row in rows]


def get_messages_before(db: Session, before_id: Optional[int], limit: int) -> List[Row]:
    """
    Retrieve up to `limit` messages with id strictly less than before_id.

    Args:
        db: Database session
        before_id: Exclusive upper bound; None means "newest"
        limit: Maximum number of rows

    Returns:
        Rows in descending id order. Callers reverse before replay.
    """
    from relay.models import Message

    query = db.query(Message.id, Message.content)
    if before_id is not None:
        query = query.filter(Message.id < before_id)

    rows = query.order_by(Message.id.desc()).limit(limit).all()
    logger.debug(f"Read {len(rows)} messages before id={before_id} (limit={limit})")
    return [(row.id, row.content) for row in rows]


# =============================================================================
# Async Durable Log
# =============================================================================

class MessageLog:
    """
    Async facade over the repository functions.

    Each call opens its own session and runs in Starlette's threadpool, so a
    slow write suspends only the connection that issued it. Read errors
    propagate; append never raises (see AppendResult).
    """

    def __init__(self, session_factory: sessionmaker = SessionLocal) -> None:
        self._session_factory = session_factory

    def _append(self, content: str, idempotency_token: str) -> AppendResult:
        try:
            with self._session_factory() as db:
                return append_message(db, idempotency_token, content)
        except Exception as e:
            # Session could not even be opened
            logger.error(f"Failed to open session for append: {e}")
            return AppendResult(None, False)

    def _read_range(self, after_id: int) -> List[Row]:
        with self._session_factory() as db:
            return get_messages_after(db, after_id)

    def _read_page(self, before_id: Optional[int], limit: int) -> List[Row]:
        with self._session_factory() as db:
            return get_messages_before(db, before_id, limit)

    async def append(self, content: str, idempotency_token: str) -> AppendResult:
        return await run_in_threadpool(self._append, content, idempotency_token)

    async def read_range(self, after_id: int) -> List[Row]:
        return await run_in_threadpool(self._read_range, after_id)

    async def read_page(self, before_id: Optional[int], limit: int) -> List[Row]:
        return await run_in_threadpool(self._read_page, before_id, limit)
