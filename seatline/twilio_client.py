"""
Outbound WhatsApp sends through the Twilio Messages REST API.

No splitting and no retries here; the dispatcher decides what to send and
in which order.
"""

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Optional, Sequence

import httpx

from seatline.errors import ProviderSendError
from seatline.phone import mask_phone
from seatline.templates import TemplateRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SendResult:
    sid: Optional[str]
    status: Optional[str]
    body: str


class MessageProvider(ABC):
    """Contract for anything that can deliver a message to a phone."""

    @abstractmethod
    async def send(
        self,
        to: str,
        body: Optional[str] = None,
        template_key: Optional[str] = None,
        variables: Sequence[str] = (),
    ) -> SendResult:
        """
        Send free text (body) or a template (template_key + variables).

        Raises:
            ProviderSendError: The provider rejected or failed the send
        """


def whatsapp_address(phone: str) -> str:
    return phone if phone.startswith("whatsapp:") else f"whatsapp:{phone}"


class TwilioClient(MessageProvider):
    """Twilio implementation over a shared httpx.AsyncClient."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        account_sid: str,
        auth_token: str,
        from_address: str,
        templates: TemplateRegistry,
        content_sids: Optional[Dict[str, str]] = None,
        status_callback_url: Optional[str] = None,
        api_base_url: str = "https://api.twilio.com",
        timeout_seconds: float = 10.0,
    ):
        self._client = http_client
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_address = whatsapp_address(from_address)
        self.templates = templates
        self.content_sids = dict(content_sids or {})
        self.status_callback_url = status_callback_url
        self.api_base_url = api_base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds

    @property
    def messages_url(self) -> str:
        return f"{self.api_base_url}/2010-04-01/Accounts/{self.account_sid}/Messages.json"

    def _form(self, to: str, body: Optional[str], template_key: Optional[str],
              variables: Sequence[str]) -> Dict[str, str]:
        form = {"From": self.from_address, "To": whatsapp_address(to)}
        if template_key and template_key in self.content_sids:
            form["ContentSid"] = self.content_sids[template_key]
            form["ContentVariables"] = json.dumps(
                {str(i): str(value) for i, value in enumerate(variables, start=1)}
            )
        else:
            form["Body"] = body or ""
        if self.status_callback_url:
            form["StatusCallback"] = self.status_callback_url
        return form

    async def send(
        self,
        to: str,
        body: Optional[str] = None,
        template_key: Optional[str] = None,
        variables: Sequence[str] = (),
    ) -> SendResult:
        if template_key:
            body = self.templates.render(template_key, variables)
        if not body:
            raise ProviderSendError("Refusing to send an empty message")
        if not self.account_sid or not self.auth_token:
            raise ProviderSendError("Twilio credentials are not configured")

        form = self._form(to, body, template_key, variables)
        try:
            response = await self._client.post(
                self.messages_url,
                data=form,
                auth=(self.account_sid, self.auth_token),
                timeout=self.timeout_seconds,
            )
        except httpx.HTTPError as e:
            logger.error(f"Twilio request failed: {e}", extra={"to": mask_phone(to)})
            raise ProviderSendError(f"Twilio request failed: {e}") from e

        try:
            data = response.json()
        except ValueError:
            data = {}

        if response.status_code >= 400:
            error_code = data.get("code")
            logger.error(
                f"Twilio API error: {response.status_code} - {data.get('message') or response.text}",
                extra={"status_code": response.status_code, "error_code": error_code, "to": mask_phone(to)},
            )
            raise ProviderSendError(
                f"Twilio returned {response.status_code}: {data.get('message', 'unknown error')}",
                status_code=response.status_code,
                error_code=str(error_code) if error_code is not None else None,
            )

        result = SendResult(sid=data.get("sid"), status=data.get("status"), body=body)
        logger.info(
            f"Message sent to {mask_phone(to)}",
            extra={"sid": result.sid, "status": result.status, "template_key": template_key},
        )
        return result
