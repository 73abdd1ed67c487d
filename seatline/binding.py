"""
Seat binding state machine.

Seat status transitions are validated against VALID_TRANSITIONS before being
persisted. Expiry is lazy: a seat whose expires_at has passed is treated as
expired on the next inbound message and the stored status is brought in line
then.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Dict, FrozenSet, Optional

from sqlalchemy.orm import Session

from seatline import storage
from seatline.errors import SeatlineError
from seatline.models import Seat, SeatStatus
from seatline.phone import mask_phone
from seatline.utils import as_utc

logger = logging.getLogger(__name__)


VALID_TRANSITIONS: Dict[SeatStatus, FrozenSet[SeatStatus]] = {
    SeatStatus.PENDING: frozenset({SeatStatus.ACTIVE, SeatStatus.EXPIRED, SeatStatus.REVOKED}),
    # active -> active is an idempotent rebind by the same phone
    SeatStatus.ACTIVE: frozenset({SeatStatus.ACTIVE, SeatStatus.EXPIRED, SeatStatus.REVOKED}),
    SeatStatus.EXPIRED: frozenset(),
    SeatStatus.REVOKED: frozenset(),
}


class InvalidTransitionError(SeatlineError):
    """Raised when a seat status change is not in VALID_TRANSITIONS."""

    def __init__(self, from_status: SeatStatus, to_status: SeatStatus):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(f"Invalid seat transition: {from_status.value} -> {to_status.value}")


class BindingOutcome(str, Enum):
    BOUND = "bound"
    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    REVOKED = "revoked"
    MISMATCH = "mismatch"
    NO_SEATS = "no_seats"


class ChatOutcome(str, Enum):
    READY = "ready"
    NOT_ENABLED = "not_enabled"
    EXPIRED = "expired"
    REVOKED = "revoked"


@dataclass
class BindingResult:
    outcome: BindingOutcome
    seat: Optional[Seat] = None
    rebound: bool = False


@dataclass
class ChatResolution:
    outcome: ChatOutcome
    seat: Optional[Seat] = None


# =============================================================================
# Seat code extraction
# =============================================================================

_SEAT_KEYWORD_RE = re.compile(r"\bseat\s*[:#]\s*([A-Za-z0-9][A-Za-z0-9_-]*)", re.IGNORECASE)


def extract_seat_code(text: Optional[str], prefix: str = "SC-") -> Optional[str]:
    """
    Find a seat code in a message body.

    Accepts "seat:ABC123" and "seat#ABC123" with any code, and a bare token
    starting with the configured prefix ("SC-ABC123", "seat SC-ABC123",
    "sc-demo-abc12345-x").

    Returns:
        The code upper cased, or None
    """
    if not text:
        return None

    match = _SEAT_KEYWORD_RE.search(text)
    if match:
        return match.group(1).upper()

    if prefix:
        bare = re.search(
            r"(?<![A-Za-z0-9_-])" + re.escape(prefix) + r"[A-Za-z0-9][A-Za-z0-9_-]*",
            text,
            re.IGNORECASE,
        )
        if bare:
            return bare.group(0).upper()
    return None


# =============================================================================
# Status handling
# =============================================================================

def can_transition(from_status: SeatStatus, to_status: SeatStatus) -> bool:
    return to_status in VALID_TRANSITIONS.get(from_status, frozenset())


def effective_status(seat: Seat, now: datetime) -> SeatStatus:
    """Stored status with lazy expiry applied. Revoked always wins."""
    status = SeatStatus(seat.status)
    if status == SeatStatus.REVOKED:
        return status
    expires_at = as_utc(seat.expires_at)
    if expires_at is not None and expires_at <= now:
        return SeatStatus.EXPIRED
    return status


def transition(db: Session, seat: Seat, new_status: SeatStatus, now: datetime) -> Seat:
    """
    Validate and persist a status change.

    Raises:
        InvalidTransitionError: new_status is not reachable from the stored status
    """
    current = SeatStatus(seat.status)
    if not can_transition(current, new_status):
        raise InvalidTransitionError(current, new_status)
    return storage.update_seat_status(db, seat, new_status.value, now)


def refresh_expiry(db: Session, seat: Seat, now: datetime) -> SeatStatus:
    """Persist `expired` when the stored status lags behind expires_at."""
    status = effective_status(seat, now)
    if status == SeatStatus.EXPIRED and seat.status != SeatStatus.EXPIRED.value:
        logger.info(f"Seat {seat.id} passed its expiry, marking expired")
        transition(db, seat, SeatStatus.EXPIRED, now)
    return status


# =============================================================================
# Binding and chat resolution
# =============================================================================

def bind_seat_code(
    db: Session,
    seat_code: str,
    phone: str,
    now: datetime,
    wa_id: Optional[str] = None,
) -> BindingResult:
    """
    Attempt to bind seat_code to a canonical phone.

    Order: lookup, lazy expiry, revoked, bound to another phone, bind.
    Sending the code again from the already bound phone is a no-op rebind.
    """
    seat = storage.get_seat_by_code(db, seat_code)
    if seat is None:
        logger.info(f"Seat code not found: {seat_code}")
        return BindingResult(BindingOutcome.NOT_FOUND)

    status = refresh_expiry(db, seat, now)
    if status == SeatStatus.EXPIRED:
        return BindingResult(BindingOutcome.EXPIRED, seat)
    if status == SeatStatus.REVOKED:
        return BindingResult(BindingOutcome.REVOKED, seat)

    if seat.bound_phone and seat.bound_phone != phone:
        logger.warning(
            f"Seat {seat.id} is bound to another number",
            extra={"seat_id": seat.id, "phone": mask_phone(phone)},
        )
        return BindingResult(BindingOutcome.MISMATCH, seat)

    rebound = status == SeatStatus.ACTIVE
    if not can_transition(status, SeatStatus.ACTIVE):
        raise InvalidTransitionError(status, SeatStatus.ACTIVE)
    if not storage.bind_seat(db, seat, phone, now, wa_id=wa_id):
        # Another request changed the seat between lookup and write
        status = effective_status(seat, now)
        if status == SeatStatus.REVOKED:
            return BindingResult(BindingOutcome.REVOKED, seat)
        if status == SeatStatus.EXPIRED:
            return BindingResult(BindingOutcome.EXPIRED, seat)
        logger.warning(
            f"Seat {seat.id} was bound to another number first",
            extra={"seat_id": seat.id, "phone": mask_phone(phone)},
        )
        return BindingResult(BindingOutcome.MISMATCH, seat)
    logger.info(
        f"Seat {'rebound' if rebound else 'bound'}",
        extra={"seat_id": seat.id, "phone": mask_phone(phone)},
    )
    return BindingResult(BindingOutcome.BOUND, seat, rebound=rebound)


def auto_bind_phone(db: Session, phone: str, now: datetime, wa_id: Optional[str] = None) -> BindingResult:
    """
    Bind an unknown phone to the oldest free pending seat, if any.

    A seat taken by a concurrent request is skipped for the next free one.
    """
    while True:
        seat = storage.find_unbound_pending_seat(db, now)
        if seat is None:
            logger.warning(f"No free seat to auto-bind {mask_phone(phone)}")
            return BindingResult(BindingOutcome.NO_SEATS)
        if storage.bind_seat(db, seat, phone, now, wa_id=wa_id):
            break
    logger.info(f"Auto-bound seat {seat.id}", extra={"seat_id": seat.id, "phone": mask_phone(phone)})
    return BindingResult(BindingOutcome.BOUND, seat)


def resolve_chat_seat(db: Session, phone: str, now: datetime, accept_pending: bool = True) -> ChatResolution:
    """
    Find the seat a chat message from phone belongs to.

    Usable seats (active, and pending when accept_pending) come first; when
    there are none an expired or revoked seat for the phone decides which
    template the user gets.
    """
    usable = [SeatStatus.ACTIVE.value]
    if accept_pending:
        usable.append(SeatStatus.PENDING.value)

    seat = storage.find_seat_by_phone(db, phone, usable)
    if seat is not None:
        status = refresh_expiry(db, seat, now)
        if status == SeatStatus.EXPIRED:
            return ChatResolution(ChatOutcome.EXPIRED, seat)
        return ChatResolution(ChatOutcome.READY, seat)

    seat = storage.find_seat_by_phone(db, phone, [SeatStatus.REVOKED.value, SeatStatus.EXPIRED.value])
    if seat is None:
        return ChatResolution(ChatOutcome.NOT_ENABLED)
    if seat.status == SeatStatus.REVOKED.value:
        return ChatResolution(ChatOutcome.REVOKED, seat)
    return ChatResolution(ChatOutcome.EXPIRED, seat)
