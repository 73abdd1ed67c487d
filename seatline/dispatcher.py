"""
Outbound dispatcher: split, send in order, write the audit log.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from seatline import storage
from seatline.errors import ProviderSendError
from seatline.metrics import record_outbound
from seatline.models import Direction, MessageType
from seatline.phone import mask_phone
from seatline.splitter import split_message
from seatline.templates import TemplateRegistry
from seatline.twilio_client import MessageProvider

logger = logging.getLogger(__name__)

FAILED_STATUS = "failed"


@dataclass
class DispatchResult:
    total: int
    sent: int = 0
    sids: List[str] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.sent == self.total


class OutboundDispatcher:
    def __init__(
        self,
        provider: MessageProvider,
        templates: TemplateRegistry,
        max_length: int = 4096,
        delay_seconds: float = 0.5,
        sleep_func: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.provider = provider
        self.templates = templates
        self.max_length = max_length
        self.delay_seconds = delay_seconds
        self._sleep = sleep_func

    def _log(self, db: Session, **fields) -> None:
        """Audit-log write that never fails the send."""
        try:
            storage.create_message_log(db, direction=Direction.OUTBOUND.value, **fields)
        except SQLAlchemyError:
            db.rollback()
            logger.exception("Failed to write outbound message log")

    async def send_text(
        self,
        db: Session,
        phone: str,
        text: str,
        seat_id: Optional[int] = None,
        message_type: str = MessageType.CHAT.value,
    ) -> DispatchResult:
        """
        Send free text, split into segments, one provider call per segment.

        Stops at the first failed segment so the recipient never sees later
        parts without the earlier ones.
        """
        segments = split_message(text, self.max_length)
        result = DispatchResult(total=len(segments))

        for index, segment in enumerate(segments):
            if index and self.delay_seconds > 0:
                await self._sleep(self.delay_seconds)
            try:
                sent = await self.provider.send(phone, body=segment)
            except ProviderSendError as e:
                record_outbound("text", "failed")
                logger.error(
                    f"Outbound segment {index + 1}/{len(segments)} failed: {e}",
                    extra={"phone": mask_phone(phone), "seat_id": seat_id},
                )
                self._log(db, phone=phone, body=segment, message_type=message_type, seat_id=seat_id,
                          status=FAILED_STATUS, error_code=e.error_code)
                result.error = str(e)
                return result

            record_outbound("text", "sent")
            result.sent += 1
            if sent.sid:
                result.sids.append(sent.sid)
            self._log(db, phone=phone, body=segment, message_type=message_type, seat_id=seat_id,
                      provider_message_id=sent.sid, status=sent.status)

        if len(segments) > 1:
            logger.info(f"Sent {result.sent} segments to {mask_phone(phone)}")
        return result

    async def send_template(
        self,
        db: Session,
        phone: str,
        template_key: str,
        variables: Sequence[str] = (),
        seat_id: Optional[int] = None,
        message_type: str = MessageType.SYSTEM.value,
    ) -> DispatchResult:
        """Send one template message and log its rendered body."""
        body = self.templates.render(template_key, variables)
        result = DispatchResult(total=1)
        try:
            sent = await self.provider.send(phone, template_key=template_key, variables=list(variables))
        except ProviderSendError as e:
            record_outbound("template", "failed")
            logger.error(
                f"Template {template_key} failed: {e}",
                extra={"phone": mask_phone(phone), "seat_id": seat_id},
            )
            self._log(db, phone=phone, body=body, message_type=message_type, seat_id=seat_id,
                      template_key=template_key, status=FAILED_STATUS, error_code=e.error_code)
            result.error = str(e)
            return result

        record_outbound("template", "sent")
        result.sent = 1
        if sent.sid:
            result.sids.append(sent.sid)
        self._log(db, phone=phone, body=body, message_type=message_type, seat_id=seat_id,
                  template_key=template_key, provider_message_id=sent.sid, status=sent.status)
        return result
