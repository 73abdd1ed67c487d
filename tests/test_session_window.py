"""
Tests for the 24-hour conversation window.
"""

from datetime import timedelta

from seatline import storage
from seatline.models import Direction, MessageType, SeatStatus
from seatline.session_window import is_session_open

PHONE = "+447700900123"


def log_inbound(db, seat_id, created_at, sid=None):
    storage.create_message_log(
        db,
        phone=PHONE,
        direction=Direction.INBOUND,
        body="hello",
        message_type=MessageType.CHAT,
        seat_id=seat_id,
        provider_message_id=sid,
        created_at=created_at,
    )


class TestSessionWindow:
    def test_open_without_history(self, db, make_seat, now):
        seat = make_seat(status=SeatStatus.ACTIVE, bound_phone=PHONE)
        assert is_session_open(db, seat.id, now) is True

    def test_open_inside_window(self, db, make_seat, now):
        seat = make_seat(status=SeatStatus.ACTIVE, bound_phone=PHONE)
        log_inbound(db, seat.id, now - timedelta(hours=23, minutes=59))
        assert is_session_open(db, seat.id, now) is True

    def test_closed_at_exactly_24_hours(self, db, make_seat, now):
        seat = make_seat(status=SeatStatus.ACTIVE, bound_phone=PHONE)
        log_inbound(db, seat.id, now - timedelta(hours=24))
        assert is_session_open(db, seat.id, now) is False

    def test_latest_message_counts(self, db, make_seat, now):
        seat = make_seat(status=SeatStatus.ACTIVE, bound_phone=PHONE)
        log_inbound(db, seat.id, now - timedelta(days=3))
        log_inbound(db, seat.id, now - timedelta(hours=1))
        assert is_session_open(db, seat.id, now) is True

    def test_outbound_rows_do_not_open_window(self, db, make_seat, now):
        seat = make_seat(status=SeatStatus.ACTIVE, bound_phone=PHONE)
        log_inbound(db, seat.id, now - timedelta(days=2))
        storage.create_message_log(db, phone=PHONE, direction=Direction.OUTBOUND, body="hi",
                                   message_type=MessageType.CHAT, seat_id=seat.id,
                                   created_at=now - timedelta(minutes=5))
        assert is_session_open(db, seat.id, now) is False

    def test_current_message_excluded(self, db, make_seat, now):
        seat = make_seat(status=SeatStatus.ACTIVE, bound_phone=PHONE)
        log_inbound(db, seat.id, now - timedelta(days=2), sid="SMold")
        log_inbound(db, seat.id, now, sid="SMcurrent")
        assert is_session_open(db, seat.id, now, exclude_provider_message_id="SMcurrent") is False

    def test_custom_window(self, db, make_seat, now):
        seat = make_seat(status=SeatStatus.ACTIVE, bound_phone=PHONE)
        log_inbound(db, seat.id, now - timedelta(hours=2))
        assert is_session_open(db, seat.id, now, window=timedelta(hours=1)) is False
