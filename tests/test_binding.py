"""
Tests for seat code extraction and the seat binding state machine.
"""

from datetime import timedelta

import pytest

from seatline import binding, storage
from seatline.binding import (
    BindingOutcome,
    ChatOutcome,
    InvalidTransitionError,
    auto_bind_phone,
    bind_seat_code,
    can_transition,
    effective_status,
    extract_seat_code,
    resolve_chat_seat,
    transition,
)
from seatline.models import Seat, SeatStatus
from seatline.storage import SessionLocal

PHONE = "+447700900123"
OTHER_PHONE = "+16468014054"


class TestExtractSeatCode:
    """Seat codes can arrive with a keyword or as a bare prefixed token."""

    @pytest.mark.parametrize(
        "text,expected",
        [
            ("seat:ABC123", "ABC123"),
            ("Seat: abc123", "ABC123"),
            ("seat#SC-XYZ", "SC-XYZ"),
            ("SC-ABC123", "SC-ABC123"),
            ("hi, my code is sc-abc123 thanks", "SC-ABC123"),
            ("seat SC-ABC123", "SC-ABC123"),
            ("sc-demo-abc12345-x", "SC-DEMO-ABC12345-X"),
        ],
    )
    def test_finds_code(self, text, expected):
        assert extract_seat_code(text) == expected

    @pytest.mark.parametrize(
        "text",
        [None, "", "hello there", "my seat is in row C", "DISC-123", "how do I sleep after a show?"],
    )
    def test_no_code(self, text):
        assert extract_seat_code(text) is None

    def test_custom_prefix(self):
        assert extract_seat_code("BWAY-77", prefix="BWAY-") == "BWAY-77"
        assert extract_seat_code("SC-77", prefix="BWAY-") is None


class TestTransitions:
    def test_table(self):
        assert can_transition(SeatStatus.PENDING, SeatStatus.ACTIVE)
        assert can_transition(SeatStatus.ACTIVE, SeatStatus.ACTIVE)
        assert can_transition(SeatStatus.ACTIVE, SeatStatus.REVOKED)
        assert not can_transition(SeatStatus.EXPIRED, SeatStatus.ACTIVE)
        assert not can_transition(SeatStatus.REVOKED, SeatStatus.ACTIVE)
        assert not can_transition(SeatStatus.REVOKED, SeatStatus.EXPIRED)

    def test_terminal_state_rejects_change(self, db, make_seat, now):
        seat = make_seat(status=SeatStatus.REVOKED)
        with pytest.raises(InvalidTransitionError):
            transition(db, seat, SeatStatus.ACTIVE, now)
        db.refresh(seat)
        assert seat.status == SeatStatus.REVOKED.value

    def test_effective_status_applies_expiry(self, make_seat, now):
        seat = make_seat(status=SeatStatus.ACTIVE, bound_phone=PHONE, expires_in=timedelta(days=-1))
        assert effective_status(seat, now) == SeatStatus.EXPIRED

    def test_revoked_wins_over_expiry(self, make_seat, now):
        seat = make_seat(status=SeatStatus.REVOKED, expires_in=timedelta(days=-1))
        assert effective_status(seat, now) == SeatStatus.REVOKED


class TestBindSeatCode:
    """Binding order: not found, expired, revoked, mismatch, bind."""

    def test_binds_pending_seat(self, db, make_seat, now):
        make_seat()
        result = bind_seat_code(db, "sc-abc123", PHONE, now, wa_id="447700900123")
        assert result.outcome == BindingOutcome.BOUND
        assert result.rebound is False
        assert result.seat.status == SeatStatus.ACTIVE.value
        assert result.seat.bound_phone == PHONE
        assert result.seat.wa_id == "447700900123"
        assert result.seat.bound_at is not None

    def test_not_found(self, db, now):
        assert bind_seat_code(db, "SC-NOPE", PHONE, now).outcome == BindingOutcome.NOT_FOUND

    def test_expired_seat_is_persisted_as_expired(self, db, make_seat, now):
        seat = make_seat(expires_in=timedelta(seconds=-1))
        result = bind_seat_code(db, "SC-ABC123", PHONE, now)
        assert result.outcome == BindingOutcome.EXPIRED
        db.refresh(seat)
        assert seat.status == SeatStatus.EXPIRED.value
        assert seat.bound_phone is None

    def test_expiry_exactly_now_is_expired(self, db, make_seat, now):
        seat = make_seat()
        seat.expires_at = now
        db.commit()
        assert bind_seat_code(db, "SC-ABC123", PHONE, now).outcome == BindingOutcome.EXPIRED

    def test_revoked(self, db, make_seat, now):
        make_seat(status=SeatStatus.REVOKED)
        assert bind_seat_code(db, "SC-ABC123", PHONE, now).outcome == BindingOutcome.REVOKED

    def test_mismatch_leaves_seat_untouched(self, db, make_seat, now):
        seat = make_seat(status=SeatStatus.ACTIVE, bound_phone=OTHER_PHONE)
        result = bind_seat_code(db, "SC-ABC123", PHONE, now)
        assert result.outcome == BindingOutcome.MISMATCH
        db.refresh(seat)
        assert seat.bound_phone == OTHER_PHONE

    def test_rebind_by_same_phone_is_idempotent(self, db, make_seat, now):
        make_seat()
        first = bind_seat_code(db, "SC-ABC123", PHONE, now)
        bound_at = first.seat.bound_at
        second = bind_seat_code(db, "SC-ABC123", PHONE, now + timedelta(hours=1))
        assert second.outcome == BindingOutcome.BOUND
        assert second.rebound is True
        assert second.seat.bound_at == bound_at


class TestAutoBind:
    def test_binds_oldest_free_seat(self, db, make_seat, now):
        first = make_seat(code="SC-ONE")
        make_seat(code="SC-TWO")
        result = auto_bind_phone(db, PHONE, now)
        assert result.outcome == BindingOutcome.BOUND
        assert result.seat.id == first.id

    def test_skips_bound_and_expired_seats(self, db, make_seat, now):
        make_seat(code="SC-ONE", bound_phone=OTHER_PHONE)
        make_seat(code="SC-TWO", expires_in=timedelta(days=-1))
        assert auto_bind_phone(db, PHONE, now).outcome == BindingOutcome.NO_SEATS


class TestConcurrentBinding:
    """A second session binds the seat between lookup and write."""

    def test_stale_seat_is_not_rebound(self, db, make_seat, now):
        seat = make_seat()
        other_session = SessionLocal()
        try:
            assert storage.bind_seat(other_session, other_session.get(Seat, seat.id), OTHER_PHONE, now) is True
        finally:
            other_session.close()

        # seat still holds the unbound row this session loaded earlier
        assert storage.bind_seat(db, seat, PHONE, now) is False
        assert seat.bound_phone == OTHER_PHONE

    def test_losing_bind_gets_mismatch(self, db, make_seat, now, monkeypatch):
        seat = make_seat()
        other_session = SessionLocal()
        original = binding.refresh_expiry
        raced = {}

        def refresh_then_race(session, seat_row, at):
            status = original(session, seat_row, at)
            if not raced:
                raced["other"] = None
                raced["other"] = bind_seat_code(other_session, "SC-ABC123", OTHER_PHONE, at)
            return status

        monkeypatch.setattr(binding, "refresh_expiry", refresh_then_race)
        try:
            result = bind_seat_code(db, "SC-ABC123", PHONE, now)
        finally:
            other_session.close()

        assert raced["other"].outcome == BindingOutcome.BOUND
        assert result.outcome == BindingOutcome.MISMATCH
        db.refresh(seat)
        assert seat.bound_phone == OTHER_PHONE

    def test_auto_bind_takes_next_free_seat(self, db, make_seat, now, monkeypatch):
        first = make_seat(code="SC-ONE")
        second = make_seat(code="SC-TWO")
        other_session = SessionLocal()
        original = storage.find_unbound_pending_seat
        lookups = []

        def find_then_race(session, at):
            seat = original(session, at)
            lookups.append(seat.id if seat else None)
            if len(lookups) == 1:
                storage.bind_seat(other_session, other_session.get(Seat, seat.id), OTHER_PHONE, at)
            return seat

        monkeypatch.setattr(storage, "find_unbound_pending_seat", find_then_race)
        try:
            result = auto_bind_phone(db, PHONE, now)
        finally:
            other_session.close()

        assert lookups == [first.id, second.id]
        assert result.outcome == BindingOutcome.BOUND
        assert result.seat.id == second.id
        db.refresh(first)
        assert first.bound_phone == OTHER_PHONE


class TestResolveChatSeat:
    def test_active_seat_is_ready(self, db, make_seat, now):
        seat = make_seat(status=SeatStatus.ACTIVE, bound_phone=PHONE)
        resolution = resolve_chat_seat(db, PHONE, now)
        assert resolution.outcome == ChatOutcome.READY
        assert resolution.seat.id == seat.id

    def test_pending_seat_accepted_by_default(self, db, make_seat, now):
        make_seat(status=SeatStatus.PENDING, bound_phone=PHONE)
        assert resolve_chat_seat(db, PHONE, now).outcome == ChatOutcome.READY
        assert resolve_chat_seat(db, PHONE, now, accept_pending=False).outcome == ChatOutcome.NOT_ENABLED

    def test_unknown_phone(self, db, make_seat, now):
        make_seat(status=SeatStatus.ACTIVE, bound_phone=OTHER_PHONE)
        assert resolve_chat_seat(db, PHONE, now).outcome == ChatOutcome.NOT_ENABLED

    def test_lazily_expired_seat(self, db, make_seat, now):
        seat = make_seat(status=SeatStatus.ACTIVE, bound_phone=PHONE, expires_in=timedelta(minutes=-5))
        resolution = resolve_chat_seat(db, PHONE, now)
        assert resolution.outcome == ChatOutcome.EXPIRED
        db.refresh(seat)
        assert seat.status == SeatStatus.EXPIRED.value

    def test_revoked_seat(self, db, make_seat, now):
        make_seat(status=SeatStatus.REVOKED, bound_phone=PHONE)
        assert resolve_chat_seat(db, PHONE, now).outcome == ChatOutcome.REVOKED

    def test_usable_seat_preferred_over_revoked(self, db, make_seat, now):
        make_seat(code="SC-OLD", status=SeatStatus.REVOKED, bound_phone=PHONE)
        active = make_seat(code="SC-NEW", status=SeatStatus.ACTIVE, bound_phone=PHONE)
        resolution = resolve_chat_seat(db, PHONE, now)
        assert resolution.outcome == ChatOutcome.READY
        assert resolution.seat.id == active.id
