import logging
from datetime import datetime, timezone
from typing import Generator, List

from sqlalchemy import create_engine, text, func
from sqlalchemy.orm import sessionmaker, Session, declarative_base
from sqlalchemy.exc import IntegrityError

from chatbot.config import settings
from chatbot.utils import clean_phone_number

logger = logging.getLogger(__name__)

SENDER_USER = "user"
SENDER_CHATBOT = "chatbot"

# Message history and word blocks live in separate SQLite files: the admin
# server only ever touches the word blocks database.
# check_same_thread=False is required for SQLite to work with FastAPI's threadpool
history_engine = create_engine(
    settings.HISTORY_DATABASE_URL,
    connect_args={"check_same_thread": False},
    echo=False,
)
blocks_engine = create_engine(
    settings.WORD_BLOCKS_DATABASE_URL,
    connect_args={"check_same_thread": False},
    echo=False,
)

HistorySessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=history_engine)
BlocksSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=blocks_engine)

# Declarative bases, one per database
HistoryBase = declarative_base()
BlocksBase = declarative_base()


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    """ISO-8601 UTC with microseconds, so rows written in the same second still sort."""
    return value.strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def init_history_db() -> None:
    """
    Create the phone_number and message tables.
    Called during chat server startup.
    """
    logger.debug(f"Initializing history database with URL: {settings.HISTORY_DATABASE_URL}")
    try:
        # Import models to register them with HistoryBase.metadata
        from chatbot.models import PhoneNumber, Message

        HistoryBase.metadata.create_all(bind=history_engine)
        logger.info("History database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize history database: {e}")
        raise


def init_blocks_db() -> None:
    """
    Create the word_blocks table and seed the two placeholder blocks.
    Called during startup of both servers.
    """
    logger.debug(f"Initializing word blocks database with URL: {settings.WORD_BLOCKS_DATABASE_URL}")
    try:
        from chatbot.models import WordBlock
        from chatbot.word_blocks import seed_default_blocks

        BlocksBase.metadata.create_all(bind=blocks_engine)
        with BlocksSessionLocal() as db:
            seed_default_blocks(db)
        logger.info("Word blocks database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize word blocks database: {e}")
        raise


def get_history_db() -> Generator[Session, None, None]:
    """
    Dependency to get a history database session.
    Yields a session and ensures it's closed after use.
    """
    db = HistorySessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_blocks_db() -> Generator[Session, None, None]:
    """Dependency to get a word blocks database session."""
    db = BlocksSessionLocal()
    try:
        yield db
    finally:
        db.close()


def _table_exists(db: Session, table_name: str) -> bool:
    count = db.execute(
        text("SELECT COUNT(*) FROM sqlite_master WHERE type='table' AND name=:name"),
        {"name": table_name},
    ).scalar()
    return bool(count)


def check_db_health(include_history: bool = True) -> bool:
    """
    Check that the databases are reachable and their schema is applied.

    Args:
        include_history: Also check the history database (the admin server
            only needs the word blocks database)

    Returns:
        True if every checked database is healthy, False otherwise.
    """
    checks = [(BlocksSessionLocal, ["word_blocks"])]
    if include_history:
        checks.append((HistorySessionLocal, ["phone_number", "message"]))

    try:
        for session_factory, tables in checks:
            with session_factory() as db:
                db.execute(text("SELECT 1"))
                for table_name in tables:
                    if not _table_exists(db, table_name):
                        logger.error(f"Database schema not applied: '{table_name}' table not found")
                        return False
        logger.debug("Database health check passed")
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


# =============================================================================
# Message History Repository Functions
# =============================================================================

def get_or_create_phone_number(db: Session, phone_number: str) -> int:
    """
    Return the id of the phone number record, creating it on first contact.

    Args:
        db: History database session
        phone_number: Phone number, with or without the 'whatsapp:' prefix

    Returns:
        The phone_number row id
    """
    from chatbot.models import PhoneNumber

    clean_number = clean_phone_number(phone_number)
    record = db.query(PhoneNumber).filter(PhoneNumber.phone_number == clean_number).first()
    if record:
        return record.id

    logger.info(f"Registering new phone number: {clean_number}")
    record = PhoneNumber(phone_number=clean_number, created_at=to_iso(utc_now()))
    db.add(record)
    try:
        db.commit()
    except IntegrityError:
        # Created concurrently by another request
        db.rollback()
        record = db.query(PhoneNumber).filter(PhoneNumber.phone_number == clean_number).one()
    return record.id


def store_message(db: Session, phone_number_id: int, sender_type: str, message: str) -> int:
    """
    Append a message to a phone number's history.

    Args:
        db: History database session
        phone_number_id: Owning phone number id
        sender_type: 'user' or 'chatbot'
        message: Message text

    Returns:
        The new message id
    """
    from chatbot.models import Message

    now = utc_now()
    record = Message(
        phone_number_id=phone_number_id,
        sender_type=sender_type,
        message=message,
        message_date=now.strftime("%Y-%m-%d"),
        message_time=now.strftime("%H:%M:%S"),
        created_at=to_iso(now),
    )
    db.add(record)
    try:
        db.commit()
    except Exception as e:
        db.rollback()
        logger.error(f"Failed to store {sender_type} message for phone_number_id={phone_number_id}: {e}")
        raise
    logger.debug(f"Stored {sender_type} message {record.id} for phone_number_id={phone_number_id}")
    return record.id


def get_chat_history(db: Session, phone_number: str) -> List:
    """
    Fetch the full conversation for a phone number in chronological order.

    Returns:
        List of Message objects ordered by created_at ASC, id ASC
    """
    from chatbot.models import Message, PhoneNumber

    clean_number = clean_phone_number(phone_number)
    messages = (
        db.query(Message)
        .join(PhoneNumber, Message.phone_number_id == PhoneNumber.id)
        .filter(PhoneNumber.phone_number == clean_number)
        .order_by(Message.created_at.asc(), Message.id.asc())
        .all()
    )
    logger.debug(f"Loaded {len(messages)} history messages for {clean_number}")
    return messages


def list_conversations(db: Session) -> List[dict]:
    """
    Summarise every known phone number.

    Returns:
        List of dicts with phone_number, message_count and last_message_time,
        most recently active first
    """
    from chatbot.models import Message, PhoneNumber

    last_message_time = func.max(Message.created_at).label("last_message_time")
    rows = (
        db.query(
            PhoneNumber.phone_number,
            func.count(Message.id).label("message_count"),
            last_message_time,
        )
        .outerjoin(Message, Message.phone_number_id == PhoneNumber.id)
        .group_by(PhoneNumber.id, PhoneNumber.phone_number)
        .order_by(last_message_time.desc())
        .all()
    )
    return [
        {
            "phone_number": row.phone_number,
            "message_count": row.message_count,
            "last_message_time": row.last_message_time,
        }
        for row in rows
    ]
