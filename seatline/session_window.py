"""
24-hour conversation window.

The provider only allows free-form replies within 24 hours of the user's last
inbound message; outside it only pre-approved templates may be sent.
"""

from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from seatline import storage

DEFAULT_WINDOW = timedelta(hours=24)


def is_session_open(
    db: Session,
    seat_id: int,
    now: datetime,
    window: timedelta = DEFAULT_WINDOW,
    exclude_provider_message_id: Optional[str] = None,
) -> bool:
    """
    True when the seat has no earlier inbound message, or the latest one is
    younger than window.

    Must be evaluated before the current inbound message is logged, or with
    its provider id excluded.
    """
    last_inbound = storage.get_last_inbound_at(db, seat_id, exclude_provider_message_id)
    if last_inbound is None:
        return True
    return now - last_inbound < window
