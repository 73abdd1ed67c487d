"""
Construction of the long-lived collaborators shared by all requests.

Built once in the application lifespan and stored on app.state; route
handlers receive them through the get_services dependency, which tests
override with fakes.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

import httpx
from fastapi import Request

from seatline.ai_client import AIBackendClient
from seatline.config import Settings
from seatline.dispatcher import OutboundDispatcher
from seatline.idempotency import IdempotencyGuard
from seatline.kvstore import KeyValueStore, create_kv_store
from seatline.orchestrator import AIOrchestrator
from seatline.pipeline import InboundPipeline
from seatline.rate_limit import RateLimiter
from seatline.templates import TemplateRegistry
from seatline.twilio_client import MessageProvider, TwilioClient

logger = logging.getLogger(__name__)


@dataclass
class Services:
    http_client: Optional[httpx.AsyncClient]
    kv_store: KeyValueStore
    idempotency: IdempotencyGuard
    rate_limiter: RateLimiter
    templates: TemplateRegistry
    provider: MessageProvider
    ai_client: AIBackendClient
    orchestrator: AIOrchestrator
    dispatcher: OutboundDispatcher
    pipeline: InboundPipeline

    async def aclose(self) -> None:
        if self.http_client is not None:
            await self.http_client.aclose()


def build_services(
    settings: Settings,
    http_client: Optional[httpx.AsyncClient] = None,
    kv_store: Optional[KeyValueStore] = None,
    provider: Optional[MessageProvider] = None,
    ai_client: Optional[AIBackendClient] = None,
    templates: Optional[TemplateRegistry] = None,
) -> Services:
    """
    Wire every collaborator from settings. Any of them can be passed in
    pre-built (tests use fakes for the provider and the AI backend).
    """
    if http_client is None and (provider is None or ai_client is None):
        http_client = httpx.AsyncClient(timeout=httpx.Timeout(settings.AI_TIMEOUT_SECONDS))
    kv_store = kv_store or create_kv_store(settings.REDIS_URL)
    templates = templates or TemplateRegistry()

    if provider is None:
        provider = TwilioClient(
            http_client,
            account_sid=settings.TWILIO_ACCOUNT_SID,
            auth_token=settings.TWILIO_AUTH_TOKEN,
            from_address=settings.TWILIO_WHATSAPP_FROM,
            templates=templates,
            content_sids=settings.content_sids,
            status_callback_url=settings.TWILIO_STATUS_CALLBACK_URL,
            api_base_url=settings.TWILIO_API_BASE_URL,
            timeout_seconds=settings.TWILIO_TIMEOUT_SECONDS,
        )

    if ai_client is None:
        ai_client = AIBackendClient(
            http_client,
            url=settings.AI_BACKEND_URL,
            api_key=settings.AI_BACKEND_API_KEY,
            user_id=settings.AI_USER_ID,
            knowledgebase_id=settings.AI_KNOWLEDGEBASE_ID,
            locale=settings.AI_LOCALE,
            timezone_name=settings.AI_TIMEZONE,
            timeout_seconds=settings.AI_TIMEOUT_SECONDS,
            max_retries=settings.AI_MAX_RETRIES,
            backoff_base=settings.AI_BACKOFF_BASE_SECONDS,
            backoff_max=settings.AI_BACKOFF_MAX_SECONDS,
            stream=settings.AI_STREAM,
        )
    if not ai_client.configured:
        logger.warning("AI_BACKEND_URL not set, chat messages will get the fallback reply")

    orchestrator = AIOrchestrator(
        ai_client,
        templates,
        disclaimer_text=settings.DISCLAIMER_TEXT,
        disclaimer_window=timedelta(hours=settings.DISCLAIMER_WINDOW_HOURS),
        context_max_length=settings.CONTEXT_MAX_LENGTH,
        statement_max_length=settings.STATEMENT_MAX_LENGTH,
        escalation_contact_name=settings.ESCALATION_CONTACT_NAME,
        escalation_contact_details=settings.ESCALATION_CONTACT_DETAILS,
        support_contact=settings.SUPPORT_CONTACT,
    )
    dispatcher = OutboundDispatcher(
        provider,
        templates,
        max_length=settings.OUTBOUND_MAX_LENGTH,
        delay_seconds=settings.OUTBOUND_DELAY_SECONDS,
    )
    pipeline = InboundPipeline(
        dispatcher,
        orchestrator,
        seat_code_prefix=settings.SEAT_CODE_PREFIX,
        accept_pending=settings.CHAT_ACCEPT_PENDING_SEATS,
        auto_bind=settings.AUTO_BIND_UNKNOWN_PHONES,
        session_window=timedelta(hours=settings.SESSION_WINDOW_HOURS),
        onboarding_url=settings.ONBOARDING_URL,
        support_contact=settings.SUPPORT_CONTACT,
        access_contact=settings.ACCESS_CONTACT,
    )

    return Services(
        http_client=http_client,
        kv_store=kv_store,
        idempotency=IdempotencyGuard(
            kv_store,
            ttl_seconds=settings.IDEMPOTENCY_TTL_SECONDS,
            lease_seconds=settings.IDEMPOTENCY_LEASE_SECONDS,
        ),
        rate_limiter=RateLimiter(
            kv_store,
            limit=settings.RATE_LIMIT_MAX_REQUESTS,
            window_seconds=settings.RATE_LIMIT_WINDOW_SECONDS,
        ),
        templates=templates,
        provider=provider,
        ai_client=ai_client,
        orchestrator=orchestrator,
        dispatcher=dispatcher,
        pipeline=pipeline,
    )


def get_services(request: Request) -> Services:
    """FastAPI dependency returning the services built at startup."""
    return request.app.state.services
