"""
Turns one chat message into one reply text.

Order: red-flag screen, context and statement preparation, backend call with
retries, fallback on failure, disclaimer policy.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from sqlalchemy.orm import Session

from seatline import storage
from seatline.ai_client import AIBackendClient
from seatline.context import build_context, sanitize_statement
from seatline.errors import BackendUnavailable
from seatline.models import MessageType
from seatline.templates import TemplateRegistry

logger = logging.getLogger(__name__)

RED_FLAG_KEYWORDS = (
    "concussion",
    "head injury",
    "severe pain",
    "can't move",
    "chest pain",
    "difficulty breathing",
    "heart palpitations",
    "dizziness",
    "fainting",
    "vomiting",
    "fever",
    "emergency",
    "urgent",
    "hospital",
)


def is_red_flag(text: Optional[str]) -> bool:
    """Case-insensitive keyword screen for medical emergencies."""
    if not text:
        return False
    folded = text.lower().replace("’", "'").replace("‘", "'")
    return any(keyword in folded for keyword in RED_FLAG_KEYWORDS)


class ReplyKind(str, Enum):
    ANSWER = "answer"
    FALLBACK = "fallback"
    ESCALATION = "escalation"


@dataclass(frozen=True)
class AIReply:
    kind: ReplyKind
    text: str
    disclaimer_added: bool = False
    request_id: Optional[str] = None


class AIOrchestrator:
    def __init__(
        self,
        client: AIBackendClient,
        templates: TemplateRegistry,
        disclaimer_text: str,
        disclaimer_window: timedelta = timedelta(hours=24),
        context_max_length: int = 3000,
        statement_max_length: int = 1000,
        escalation_contact_name: str = "medical emergency services",
        escalation_contact_details: str = "999 (UK) or 911 (US)",
        support_contact: str = "support@productionphysio.com",
        channel: str = "whatsapp",
    ):
        self.client = client
        self.templates = templates
        self.disclaimer_text = disclaimer_text
        self.disclaimer_window = disclaimer_window
        self.context_max_length = context_max_length
        self.statement_max_length = statement_max_length
        self.escalation_contact_name = escalation_contact_name
        self.escalation_contact_details = escalation_contact_details
        self.support_contact = support_contact
        self.channel = channel

    def escalation_text(self) -> str:
        return self.templates.render(
            "red_flag_escalation_v1",
            [self.escalation_contact_name, self.escalation_contact_details],
        )

    def needs_disclaimer(self, db: Session, seat_id: int, now: datetime) -> bool:
        """True unless an outbound chat reply in the window already carried it."""
        return not storage.has_recent_outbound_containing(
            db,
            seat_id,
            since=now - self.disclaimer_window,
            needle=self.disclaimer_text,
            message_type=MessageType.CHAT.value,
        )

    def with_disclaimer(self, db: Session, seat_id: int, text: str, now: datetime):
        if self.needs_disclaimer(db, seat_id, now):
            return f"{self.disclaimer_text}\n\n{text}", True
        return text, False

    async def respond(
        self,
        db: Session,
        seat,
        profile,
        show_name: Optional[str],
        statement: str,
        now: datetime,
    ) -> AIReply:
        """
        Produce the reply for a chat message from a ready seat.

        Never raises for backend faults: exhaustion degrades to the fallback
        text. Red-flag messages never reach the backend.
        """
        if is_red_flag(statement):
            logger.warning("Red flag detected, escalating", extra={"seat_id": seat.id})
            return AIReply(ReplyKind.ESCALATION, self.escalation_text())

        context = build_context(profile, show_name, self.channel, self.context_max_length)
        clean_statement = sanitize_statement(statement, self.statement_max_length)

        try:
            result = await self.client.generate(
                clean_statement,
                context,
                session_id=f"seat_{seat.id}",
                channel=self.channel,
            )
        except BackendUnavailable as e:
            logger.error(
                f"AI backend unavailable, sending fallback: {e}",
                extra={"seat_id": seat.id, "attempts": e.attempts},
            )
            fallback = self.templates.render("ai_fallback_v1", [self.support_contact])
            text, added = self.with_disclaimer(db, seat.id, fallback, now)
            return AIReply(ReplyKind.FALLBACK, text, added)

        text, added = self.with_disclaimer(db, seat.id, result.text, now)
        return AIReply(ReplyKind.ANSWER, text, added, result.request_id)
