import logging
from datetime import datetime
from typing import Generator, Iterable, Optional

from sqlalchemy import create_engine, func, inspect, or_, text
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from seatline.config import settings
from seatline.utils import as_utc

logger = logging.getLogger(__name__)

REQUIRED_TABLES = ("shows", "profiles", "seats", "message_log")

# check_same_thread=False is required for SQLite to work with FastAPI's threadpool
_connect_args = {"check_same_thread": False} if settings.DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(
    settings.DATABASE_URL,
    connect_args=_connect_args,
    echo=False,
)

# Create SessionLocal class for creating database sessions
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for SQLAlchemy models
Base = declarative_base()


def _value(member) -> str:
    """Stored string for an enum member or plain string."""
    return getattr(member, "value", member)


def init_db() -> None:
    """
    Initialize the database by creating all tables.
    Called during application startup.
    """
    logger.debug(f"Initializing database with URL: {engine.url.render_as_string(hide_password=True)}")
    try:
        # Import models to register them with Base.metadata
        from seatline import models  # noqa: F401

        logger.debug("Creating database tables...")
        Base.metadata.create_all(bind=engine)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


def get_db() -> Generator[Session, None, None]:
    """
    Dependency to get database session.
    Yields a session and ensures it's closed after use.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def check_db_health() -> bool:
    """
    Check if the database is reachable and schema is applied.

    Returns:
        True if DB is healthy and every table exists, False otherwise.
    """
    logger.debug("Checking database health...")
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
            inspector = inspect(conn)
            missing = [name for name in REQUIRED_TABLES if not inspector.has_table(name)]
        if missing:
            logger.error(f"Database schema not applied, missing tables: {missing}")
            return False
        logger.debug("Database health check passed")
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


# =============================================================================
# Seat Repository Functions
# =============================================================================

def get_seat_by_code(db: Session, seat_code: str):
    """Look up a seat by its (case-insensitive) code."""
    from seatline.models import Seat

    seat = db.query(Seat).filter(Seat.seat_code == seat_code.upper()).first()
    logger.debug(f"Seat lookup by code {seat_code}: {'found' if seat else 'not found'}")
    return seat


def find_seat_by_phone(db: Session, phone: str, statuses: Iterable[str]):
    """
    Find the most recently bound seat for a canonical phone.

    Args:
        db: Database session
        phone: Canonical E.164 phone
        statuses: Stored statuses to accept

    Returns:
        Seat object if found, None otherwise
    """
    from seatline.models import Seat

    return (
        db.query(Seat)
        .filter(Seat.bound_phone == phone, Seat.status.in_([_value(s) for s in statuses]))
        .order_by(Seat.bound_at.desc(), Seat.id.desc())
        .first()
    )


def find_unbound_pending_seat(db: Session, now: datetime):
    """Oldest pending seat that has no phone yet and has not run past its expiry."""
    from seatline.models import Seat, SeatStatus

    return (
        db.query(Seat)
        .filter(
            Seat.status == SeatStatus.PENDING.value,
            Seat.bound_phone.is_(None),
            (Seat.expires_at.is_(None)) | (Seat.expires_at > now),
        )
        .order_by(Seat.id.asc())
        .first()
    )


def bind_seat(db: Session, seat, phone: str, now: datetime, wa_id: Optional[str] = None) -> bool:
    """
    Persist a successful binding: phone, active status and binding time.

    The write only lands while the seat is unbound (or already bound to this
    phone) and still pending or active, so a concurrent bind from another
    phone leaves it untouched. Returns False when no row matched. A rebind by
    the same phone keeps the original bound_at.
    """
    from seatline.models import Seat, SeatStatus

    values = {
        Seat.bound_phone: phone,
        Seat.status: SeatStatus.ACTIVE.value,
        Seat.bound_at: seat.bound_at or now,
        Seat.updated_at: now,
    }
    if wa_id:
        values[Seat.wa_id] = wa_id

    updated = (
        db.query(Seat)
        .filter(
            Seat.id == seat.id,
            or_(Seat.bound_phone.is_(None), Seat.bound_phone == phone),
            Seat.status.in_([SeatStatus.PENDING.value, SeatStatus.ACTIVE.value]),
        )
        .update(values, synchronize_session=False)
    )
    db.commit()
    db.refresh(seat)
    if updated != 1:
        logger.warning(f"Seat {seat.id} was claimed concurrently, bind skipped", extra={"seat_id": seat.id})
        return False
    logger.info(f"Seat {seat.id} bound", extra={"seat_id": seat.id})
    return True


def update_seat_status(db: Session, seat, status: str, now: Optional[datetime] = None):
    """Write a new status for a seat. Callers validate the transition first."""
    seat.status = _value(status)
    if now is not None:
        seat.updated_at = now
    db.commit()
    db.refresh(seat)
    logger.info(f"Seat {seat.id} status -> {seat.status}")
    return seat


def get_profile(db: Session, seat):
    from seatline.models import Profile

    if seat is None or seat.profile_id is None:
        return None
    return db.get(Profile, seat.profile_id)


def get_show_name(db: Session, seat, profile=None) -> Optional[str]:
    """Show name for templates: the profile's own value wins over the show row."""
    from seatline.models import Show

    if profile is not None and profile.show_name:
        return profile.show_name
    if seat is None or seat.show_id is None:
        return None
    show = db.get(Show, seat.show_id)
    return show.name if show else None


# =============================================================================
# Message Log Repository Functions
# =============================================================================

def create_message_log(
    db: Session,
    phone: str,
    direction: str,
    body: Optional[str],
    message_type: str,
    seat_id: Optional[int] = None,
    template_key: Optional[str] = None,
    provider_message_id: Optional[str] = None,
    status: Optional[str] = None,
    error_code: Optional[str] = None,
    created_at: Optional[datetime] = None,
):
    """
    Append one row to the message log.

    Returns:
        The created MessageLog row
    """
    from seatline.models import MessageLog

    row = MessageLog(
        seat_id=seat_id,
        phone=phone,
        direction=_value(direction),
        body=body,
        message_type=_value(message_type),
        template_key=template_key,
        provider_message_id=provider_message_id,
        status=status,
        error_code=error_code,
    )
    if created_at is not None:
        row.created_at = created_at
    db.add(row)
    db.commit()
    logger.debug(
        f"Logged {row.direction} {row.message_type} message",
        extra={"seat_id": seat_id, "provider_message_id": provider_message_id},
    )
    return row


def get_last_inbound_at(
    db: Session,
    seat_id: int,
    exclude_provider_message_id: Optional[str] = None,
) -> Optional[datetime]:
    """Timestamp (UTC) of the latest inbound row attributed to a seat."""
    from seatline.models import Direction, MessageLog

    query = db.query(func.max(MessageLog.created_at)).filter(
        MessageLog.seat_id == seat_id,
        MessageLog.direction == Direction.INBOUND.value,
    )
    if exclude_provider_message_id:
        query = query.filter(
            (MessageLog.provider_message_id.is_(None))
            | (MessageLog.provider_message_id != exclude_provider_message_id)
        )
    return as_utc(query.scalar())


def has_recent_outbound_containing(
    db: Session,
    seat_id: int,
    since: datetime,
    needle: str,
    message_type: str = "chat",
) -> bool:
    """True if an outbound row of message_type sent since `since` contains needle."""
    from seatline.models import Direction, MessageLog

    row = (
        db.query(MessageLog.id)
        .filter(
            MessageLog.seat_id == seat_id,
            MessageLog.direction == Direction.OUTBOUND.value,
            MessageLog.message_type == _value(message_type),
            MessageLog.created_at >= since,
            MessageLog.body.contains(needle, autoescape=True),
        )
        .first()
    )
    return row is not None


def has_sent_template(db: Session, seat_id: int, template_key: str) -> bool:
    """True if template_key was ever delivered (not failed) for this seat."""
    from seatline.models import Direction, MessageLog

    row = (
        db.query(MessageLog.id)
        .filter(
            MessageLog.seat_id == seat_id,
            MessageLog.direction == Direction.OUTBOUND.value,
            MessageLog.template_key == template_key,
            (MessageLog.status.is_(None)) | (MessageLog.status != "failed"),
        )
        .first()
    )
    return row is not None


def count_inbound_for_provider_id(db: Session, provider_message_id: str) -> int:
    from seatline.models import Direction, MessageLog

    return (
        db.query(func.count(MessageLog.id))
        .filter(
            MessageLog.provider_message_id == provider_message_id,
            MessageLog.direction == Direction.INBOUND.value,
        )
        .scalar()
        or 0
    )


def update_delivery_status(
    db: Session,
    provider_message_id: str,
    status: str,
    error_code: Optional[str] = None,
) -> int:
    """
    Record a provider delivery status on the outbound row(s) with this sid.

    Returns:
        Number of rows updated (0 when the sid is unknown)
    """
    from seatline.models import Direction, MessageLog

    updated = (
        db.query(MessageLog)
        .filter(
            MessageLog.provider_message_id == provider_message_id,
            MessageLog.direction == Direction.OUTBOUND.value,
        )
        .update(
            {MessageLog.status: status, MessageLog.error_code: error_code},
            synchronize_session=False,
        )
    )
    db.commit()
    logger.info(f"Delivery status {status} for {provider_message_id}: {updated} row(s)")
    return updated
