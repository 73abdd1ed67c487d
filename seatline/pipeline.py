"""
Inbound message pipeline.

Runs after the webhook accepted a request (signature, envelope, phone,
idempotency and rate limit already checked) and turns one inbound message
into its side effects: seat binding or chat resolution, the inbound audit
row, and exactly one reply (template or AI answer).

Policy rejections end in a template reply. Storage faults are answered with
the service_unavailable template. Neither is raised to the caller.
"""

import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from seatline import storage
from seatline.binding import (
    BindingOutcome,
    ChatOutcome,
    auto_bind_phone,
    bind_seat_code,
    extract_seat_code,
    resolve_chat_seat,
)
from seatline.dispatcher import OutboundDispatcher
from seatline.metrics import record_pipeline_outcome
from seatline.models import Direction, MessageType
from seatline.orchestrator import AIOrchestrator, ReplyKind, is_red_flag
from seatline.phone import NormalizedPhone, mask_phone
from seatline.schemas import InboundMessage
from seatline.session_window import is_session_open

logger = logging.getLogger(__name__)

DEFAULT_SHOW_NAME = "your production"


class PipelineOutcome(str, Enum):
    BOUND = "bound"
    SEAT_NOT_FOUND = "seat_not_found"
    SEAT_EXPIRED = "seat_expired"
    SEAT_REVOKED = "seat_revoked"
    SEAT_MISMATCH = "seat_mismatch"
    NO_SEATS = "no_seats"
    ACCESS_DENIED = "access_denied"
    UNSUPPORTED = "unsupported"
    RED_FLAG = "red_flag"
    RESUME_SESSION = "resume_session"
    ANSWERED = "answered"
    FALLBACK = "fallback"
    DUPLICATE = "duplicate"
    STORAGE_ERROR = "storage_error"


_BINDING_REPLIES = {
    BindingOutcome.NOT_FOUND: (PipelineOutcome.SEAT_NOT_FOUND, "seat_not_found_v1"),
    BindingOutcome.EXPIRED: (PipelineOutcome.SEAT_EXPIRED, "seat_expired_v1"),
    BindingOutcome.REVOKED: (PipelineOutcome.SEAT_REVOKED, "seat_revoked_v1"),
    BindingOutcome.MISMATCH: (PipelineOutcome.SEAT_MISMATCH, "seat_mismatch_v1"),
}


def _attributed_seat_id(seat, phone: str) -> Optional[int]:
    """Seat id for log rows, only when phone is that seat's bound phone."""
    if seat is not None and seat.bound_phone == phone:
        return seat.id
    return None


class InboundPipeline:
    def __init__(
        self,
        dispatcher: OutboundDispatcher,
        orchestrator: AIOrchestrator,
        seat_code_prefix: str = "SC-",
        accept_pending: bool = True,
        auto_bind: bool = False,
        session_window: timedelta = timedelta(hours=24),
        onboarding_url: str = "",
        support_contact: str = "",
        access_contact: str = "your company manager",
    ):
        self.dispatcher = dispatcher
        self.orchestrator = orchestrator
        self.seat_code_prefix = seat_code_prefix
        self.accept_pending = accept_pending
        self.auto_bind = auto_bind
        self.session_window = session_window
        self.onboarding_url = onboarding_url
        self.support_contact = support_contact
        self.access_contact = access_contact

    async def handle(self, db: Session, message: InboundMessage, phone: NormalizedPhone,
                     now: datetime) -> PipelineOutcome:
        """
        Process one accepted inbound message.

        Returns:
            PipelineOutcome describing which reply was sent
        """
        try:
            outcome = await self._handle(db, message, phone, now)
        except SQLAlchemyError:
            db.rollback()
            logger.exception(
                "Storage failure while processing inbound message",
                extra={"message_sid": message.message_sid, "phone": mask_phone(phone.e164)},
            )
            await self.dispatcher.send_template(db, phone.e164, "service_unavailable_v1")
            outcome = PipelineOutcome.STORAGE_ERROR

        record_pipeline_outcome(outcome.value)
        logger.info(
            f"Inbound message handled: {outcome.value}",
            extra={"message_sid": message.message_sid, "phone": mask_phone(phone.e164)},
        )
        return outcome

    async def _handle(self, db: Session, message: InboundMessage, phone: NormalizedPhone,
                      now: datetime) -> PipelineOutcome:
        # Backstop for a lost idempotency store (e.g. restart with the memory backend)
        if storage.count_inbound_for_provider_id(db, message.message_sid):
            logger.info(f"Inbound row already exists for {message.message_sid}")
            return PipelineOutcome.DUPLICATE

        text = message.text
        seat_code = extract_seat_code(text, self.seat_code_prefix)
        if seat_code:
            return await self._handle_binding(db, message, phone, seat_code, now)
        return await self._handle_chat(db, message, phone, text, now)

    def _log_inbound(self, db: Session, message: InboundMessage, phone: str, seat_id: Optional[int],
                     message_type: MessageType, now: datetime) -> None:
        storage.create_message_log(
            db,
            phone=phone,
            direction=Direction.INBOUND.value,
            body=message.text,
            message_type=message_type.value,
            seat_id=seat_id,
            provider_message_id=message.message_sid,
            created_at=now,
        )

    async def _reply(self, db: Session, phone: str, template_key: str, variables: Sequence[str] = (),
                     seat_id: Optional[int] = None) -> None:
        await self.dispatcher.send_template(db, phone, template_key, variables, seat_id=seat_id)

    def _template_variables(self, template_key: str) -> Sequence[str]:
        if template_key == "seat_not_found_v1":
            return [self.onboarding_url]
        if template_key == "seat_mismatch_v1":
            return [self.support_contact]
        return []

    # =========================================================================
    # Binding
    # =========================================================================

    async def _handle_binding(self, db: Session, message: InboundMessage, phone: NormalizedPhone,
                              seat_code: str, now: datetime) -> PipelineOutcome:
        e164 = phone.e164
        result = bind_seat_code(db, seat_code, e164, now, wa_id=message.wa_id)
        seat_id = _attributed_seat_id(result.seat, e164)
        self._log_inbound(db, message, e164, seat_id, MessageType.BINDING, now)

        if result.outcome == BindingOutcome.BOUND:
            await self._welcome(db, e164, result.seat)
            return PipelineOutcome.BOUND

        outcome, template_key = _BINDING_REPLIES[result.outcome]
        await self._reply(db, e164, template_key, self._template_variables(template_key), seat_id=seat_id)
        return outcome

    async def _welcome(self, db: Session, phone: str, seat) -> None:
        profile = storage.get_profile(db, seat)
        show_name = storage.get_show_name(db, seat, profile) or DEFAULT_SHOW_NAME
        await self._reply(db, phone, "seat_bound_v1", [show_name], seat_id=seat.id)

    # =========================================================================
    # Chat
    # =========================================================================

    async def _handle_chat(self, db: Session, message: InboundMessage, phone: NormalizedPhone,
                           text: str, now: datetime) -> PipelineOutcome:
        e164 = phone.e164
        resolution = resolve_chat_seat(db, e164, now, accept_pending=self.accept_pending)
        seat = resolution.seat

        if resolution.outcome == ChatOutcome.NOT_ENABLED and self.auto_bind:
            bound = auto_bind_phone(db, e164, now, wa_id=message.wa_id)
            if bound.outcome == BindingOutcome.NO_SEATS:
                self._log_inbound(db, message, e164, None, MessageType.CHAT, now)
                await self._reply(db, e164, "no_seats_available_v1")
                return PipelineOutcome.NO_SEATS
            seat = bound.seat
        elif resolution.outcome == ChatOutcome.NOT_ENABLED:
            self._log_inbound(db, message, e164, None, MessageType.CHAT, now)
            await self._reply(db, e164, "access_denied_v1",
                              [DEFAULT_SHOW_NAME, self.access_contact, self.support_contact])
            return PipelineOutcome.ACCESS_DENIED
        elif resolution.outcome in (ChatOutcome.EXPIRED, ChatOutcome.REVOKED):
            return await self._notify_inactive(db, message, e164, resolution, now)

        seat_id = seat.id
        profile = storage.get_profile(db, seat)
        show_name = storage.get_show_name(db, seat, profile) or DEFAULT_SHOW_NAME

        if not text:
            self._log_inbound(db, message, e164, seat_id, MessageType.CHAT, now)
            await self._reply(db, e164, "unsupported_message_v1", seat_id=seat_id)
            return PipelineOutcome.UNSUPPORTED

        if is_red_flag(text):
            self._log_inbound(db, message, e164, seat_id, MessageType.CHAT, now)
            logger.warning("Red flag in chat message, escalating", extra={"seat_id": seat_id})
            await self._reply(db, e164, "red_flag_escalation_v1", [
                self.orchestrator.escalation_contact_name,
                self.orchestrator.escalation_contact_details,
            ], seat_id=seat_id)
            return PipelineOutcome.RED_FLAG

        # Window is measured against earlier messages, before this one is logged
        session_open = is_session_open(db, seat_id, now, self.session_window,
                                       exclude_provider_message_id=message.message_sid)
        self._log_inbound(db, message, e164, seat_id, MessageType.CHAT, now)
        if not session_open:
            await self._reply(db, e164, "resume_session_v1", [show_name], seat_id=seat_id)
            return PipelineOutcome.RESUME_SESSION

        reply = await self.orchestrator.respond(db, seat, profile, show_name, text, now)
        if reply.kind == ReplyKind.ESCALATION:
            await self.dispatcher.send_text(db, e164, reply.text, seat_id=seat_id,
                                            message_type=MessageType.SYSTEM.value)
            return PipelineOutcome.RED_FLAG

        await self.dispatcher.send_text(db, e164, reply.text, seat_id=seat_id,
                                        message_type=MessageType.CHAT.value)
        return PipelineOutcome.ANSWERED if reply.kind == ReplyKind.ANSWER else PipelineOutcome.FALLBACK

    async def _notify_inactive(self, db: Session, message: InboundMessage, phone: str, resolution,
                               now: datetime) -> PipelineOutcome:
        """Expired or revoked seat: the notice goes out once per seat."""
        seat = resolution.seat
        if resolution.outcome == ChatOutcome.EXPIRED:
            outcome, template_key = PipelineOutcome.SEAT_EXPIRED, "seat_expired_v1"
        else:
            outcome, template_key = PipelineOutcome.SEAT_REVOKED, "seat_revoked_v1"

        seat_id = _attributed_seat_id(seat, phone)
        self._log_inbound(db, message, phone, seat_id, MessageType.CHAT, now)
        if seat_id is not None and storage.has_sent_template(db, seat_id, template_key):
            logger.info(f"{template_key} already sent for seat {seat_id}, not repeating")
            return outcome
        await self._reply(db, phone, template_key, seat_id=seat_id)
        return outcome
