"""
Tests for the inbound message pipeline.

Each test feeds one or more accepted messages through InboundPipeline.handle
with fake provider and AI backend, then checks the reply and the audit log.
"""

from datetime import timedelta
from itertools import count

import pytest
from sqlalchemy.exc import OperationalError

from seatline import storage
from seatline.config import DEFAULT_DISCLAIMER
from seatline.models import Direction, MessageLog, MessageType, Seat, SeatStatus
from seatline.phone import normalize_phone
from seatline.pipeline import PipelineOutcome
from seatline.schemas import InboundMessage

PHONE = "+447700900123"
OTHER_PHONE = "+16468014054"

_sids = count(1)


def inbound(body="", sender="whatsapp:+447700900123", sid=None, **extra):
    params = {"MessageSid": sid or f"SMtest{next(_sids)}", "From": sender, "Body": body}
    params.update(extra)
    return InboundMessage.model_validate(params)


async def handle(services, db, message, now):
    return await services.pipeline.handle(db, message, normalize_phone(message.from_address), now)


def rows(db, direction):
    return db.query(MessageLog).filter(MessageLog.direction == direction.value).order_by(MessageLog.id).all()


class TestBinding:
    """Messages carrying a seat code go through the binding flow."""

    @pytest.mark.asyncio
    async def test_bind_pending_seat(self, db, services, provider, make_seat, now):
        seat = make_seat()

        outcome = await handle(services, db, inbound("SC-ABC123"), now)

        assert outcome == PipelineOutcome.BOUND
        assert provider.template_keys == ["seat_bound_v1"]
        assert "for Hamilton." in provider.bodies[0]
        db.refresh(seat)
        assert seat.status == SeatStatus.ACTIVE.value
        assert seat.bound_phone == PHONE

        logged = rows(db, Direction.INBOUND)[0]
        assert logged.message_type == MessageType.BINDING.value
        assert logged.seat_id == seat.id

    @pytest.mark.asyncio
    async def test_any_phone_format_binds_same_e164(self, db, services, make_seat, now):
        seat = make_seat()

        await handle(services, db, inbound("seat: sc-abc123", sender="whatsapp:+44 7700 900123"), now)

        db.refresh(seat)
        assert seat.bound_phone == PHONE

    @pytest.mark.asyncio
    async def test_unknown_code(self, db, services, provider, now):
        outcome = await handle(services, db, inbound("SC-NOPE99"), now)

        assert outcome == PipelineOutcome.SEAT_NOT_FOUND
        assert provider.template_keys == ["seat_not_found_v1"]
        assert "https://productionphysio.com/onboarding" in provider.bodies[0]
        assert rows(db, Direction.INBOUND)[0].seat_id is None

    @pytest.mark.asyncio
    async def test_seat_bound_to_other_phone(self, db, services, provider, make_seat, now):
        seat = make_seat(status=SeatStatus.ACTIVE, bound_phone=OTHER_PHONE)

        outcome = await handle(services, db, inbound("seat:SC-ABC123"), now)

        assert outcome == PipelineOutcome.SEAT_MISMATCH
        assert provider.template_keys == ["seat_mismatch_v1"]
        db.refresh(seat)
        assert seat.bound_phone == OTHER_PHONE
        # nothing about this sender is attributed to someone else's seat
        assert all(row.seat_id is None for row in db.query(MessageLog).all())

    @pytest.mark.asyncio
    async def test_expired_code(self, db, services, provider, make_seat, now):
        make_seat(expires_in=timedelta(days=-1))

        outcome = await handle(services, db, inbound("SC-ABC123"), now)

        assert outcome == PipelineOutcome.SEAT_EXPIRED
        assert provider.template_keys == ["seat_expired_v1"]

    @pytest.mark.asyncio
    async def test_revoked_code(self, db, services, provider, make_seat, now):
        make_seat(status=SeatStatus.REVOKED)

        outcome = await handle(services, db, inbound("SC-ABC123"), now)

        assert outcome == PipelineOutcome.SEAT_REVOKED
        assert provider.template_keys == ["seat_revoked_v1"]


class TestChat:
    """Messages without a seat code go through chat resolution."""

    @pytest.mark.asyncio
    async def test_unknown_phone_denied(self, db, services, provider, now):
        outcome = await handle(services, db, inbound("hello"), now)

        assert outcome == PipelineOutcome.ACCESS_DENIED
        assert provider.template_keys == ["access_denied_v1"]
        assert provider.sent[0]["variables"] == [
            "your production",
            "your company manager",
            "support@productionphysio.com",
        ]

    @pytest.mark.asyncio
    async def test_answer_with_disclaimer_once(self, db, services, provider, ai_client, make_seat, now):
        seat = make_seat(status=SeatStatus.ACTIVE, bound_phone=PHONE)

        first = await handle(services, db, inbound("how do I sleep after a late show?"), now)
        second = await handle(services, db, inbound("and before a matinee?"), now + timedelta(minutes=5))

        assert first == second == PipelineOutcome.ANSWERED
        assert provider.bodies[0].startswith(DEFAULT_DISCLAIMER)
        assert not provider.bodies[1].startswith(DEFAULT_DISCLAIMER)
        assert len(ai_client.calls) == 2
        assert ai_client.calls[0]["session_id"] == f"seat_{seat.id}"

        chat_rows = rows(db, Direction.OUTBOUND)
        assert [row.message_type for row in chat_rows] == [MessageType.CHAT.value] * 2
        assert all(row.seat_id == seat.id for row in chat_rows)

    @pytest.mark.asyncio
    async def test_pending_seat_can_chat(self, db, services, make_seat, now):
        make_seat(status=SeatStatus.PENDING, bound_phone=PHONE)

        assert await handle(services, db, inbound("hi"), now) == PipelineOutcome.ANSWERED

    @pytest.mark.asyncio
    async def test_closed_window_sends_resume_template(self, db, services, provider, ai_client, make_seat, now):
        seat = make_seat(status=SeatStatus.ACTIVE, bound_phone=PHONE)
        storage.create_message_log(db, phone=PHONE, direction=Direction.INBOUND, body="old",
                                   message_type=MessageType.CHAT, seat_id=seat.id,
                                   created_at=now - timedelta(hours=30))

        outcome = await handle(services, db, inbound("back again"), now)

        assert outcome == PipelineOutcome.RESUME_SESSION
        assert provider.template_keys == ["resume_session_v1"]
        assert ai_client.calls == []

        # the message that got the resume template reopened the window
        follow_up = await handle(services, db, inbound("ok"), now + timedelta(minutes=1))
        assert follow_up == PipelineOutcome.ANSWERED

    @pytest.mark.asyncio
    async def test_red_flag_escalates_without_backend(self, db, services, provider, ai_client, make_seat, now):
        make_seat(status=SeatStatus.ACTIVE, bound_phone=PHONE)

        outcome = await handle(services, db, inbound("I have chest pain"), now)

        assert outcome == PipelineOutcome.RED_FLAG
        assert provider.template_keys == ["red_flag_escalation_v1"]
        assert ai_client.calls == []

    @pytest.mark.asyncio
    async def test_red_flag_even_outside_window(self, db, services, provider, make_seat, now):
        seat = make_seat(status=SeatStatus.ACTIVE, bound_phone=PHONE)
        storage.create_message_log(db, phone=PHONE, direction=Direction.INBOUND, body="old",
                                   message_type=MessageType.CHAT, seat_id=seat.id,
                                   created_at=now - timedelta(days=3))

        outcome = await handle(services, db, inbound("possible concussion"), now)

        assert outcome == PipelineOutcome.RED_FLAG

    @pytest.mark.asyncio
    async def test_media_only_message(self, db, services, provider, make_seat, now):
        make_seat(status=SeatStatus.ACTIVE, bound_phone=PHONE)

        outcome = await handle(services, db, inbound("", NumMedia="1"), now)

        assert outcome == PipelineOutcome.UNSUPPORTED
        assert provider.template_keys == ["unsupported_message_v1"]

    @pytest.mark.asyncio
    async def test_button_text_used_as_message(self, db, services, ai_client, make_seat, now):
        make_seat(status=SeatStatus.ACTIVE, bound_phone=PHONE)

        await handle(services, db, inbound("", ButtonText="Sleep tips"), now)

        assert ai_client.calls[0]["statement"] == "Sleep tips"

    @pytest.mark.asyncio
    async def test_backend_failure_sends_fallback(self, db, services, provider, ai_client, make_seat, now):
        make_seat(status=SeatStatus.ACTIVE, bound_phone=PHONE)
        ai_client.fail = True

        outcome = await handle(services, db, inbound("how do I warm up?"), now)

        assert outcome == PipelineOutcome.FALLBACK
        assert "technical difficulties" in provider.bodies[0]

    @pytest.mark.asyncio
    async def test_expired_notice_sent_once(self, db, services, provider, make_seat, now):
        seat = make_seat(status=SeatStatus.ACTIVE, bound_phone=PHONE, expires_in=timedelta(hours=-1))

        first = await handle(services, db, inbound("hi"), now)
        second = await handle(services, db, inbound("hello?"), now + timedelta(minutes=1))

        assert first == second == PipelineOutcome.SEAT_EXPIRED
        assert provider.template_keys == ["seat_expired_v1"]
        db.refresh(seat)
        assert seat.status == SeatStatus.EXPIRED.value

    @pytest.mark.asyncio
    async def test_revoked_seat(self, db, services, provider, make_seat, now):
        make_seat(status=SeatStatus.REVOKED, bound_phone=PHONE)

        outcome = await handle(services, db, inbound("hi"), now)

        assert outcome == PipelineOutcome.SEAT_REVOKED
        assert provider.template_keys == ["seat_revoked_v1"]


class TestAutoBind:
    @pytest.mark.asyncio
    async def test_unknown_phone_gets_free_seat(self, db, services, make_seat, now):
        services.pipeline.auto_bind = True
        seat = make_seat()

        outcome = await handle(services, db, inbound("hello"), now)

        assert outcome == PipelineOutcome.ANSWERED
        db.refresh(seat)
        assert seat.bound_phone == PHONE
        assert seat.status == SeatStatus.ACTIVE.value

    @pytest.mark.asyncio
    async def test_no_free_seat(self, db, services, provider, now):
        services.pipeline.auto_bind = True

        outcome = await handle(services, db, inbound("hello"), now)

        assert outcome == PipelineOutcome.NO_SEATS
        assert provider.template_keys == ["no_seats_available_v1"]
        assert db.query(Seat).count() == 0


class TestFaults:
    @pytest.mark.asyncio
    async def test_redelivered_sid_is_ignored(self, db, services, provider, make_seat, now):
        make_seat(status=SeatStatus.ACTIVE, bound_phone=PHONE)
        message = inbound("hi", sid="SMsame")

        await handle(services, db, message, now)
        outcome = await handle(services, db, message, now)

        assert outcome == PipelineOutcome.DUPLICATE
        assert len(provider.sent) == 1
        assert len(rows(db, Direction.INBOUND)) == 1

    @pytest.mark.asyncio
    async def test_storage_failure_sends_service_unavailable(self, db, services, provider, monkeypatch, now):
        def broken(*args, **kwargs):
            raise OperationalError("SELECT 1", {}, Exception("database is locked"))

        monkeypatch.setattr(storage, "count_inbound_for_provider_id", broken)

        outcome = await handle(services, db, inbound("hi"), now)

        assert outcome == PipelineOutcome.STORAGE_ERROR
        assert provider.template_keys == ["service_unavailable_v1"]
