"""
Pytest configuration and shared fixtures.

Test environment variables are set here before any seatline import, so the
module-level settings and database engine pick them up.
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite:///./seatline_test.db")
os.environ.setdefault("TWILIO_AUTH_TOKEN", "test-auth-token")
os.environ.setdefault("TWILIO_ACCOUNT_SID", "ACtest")
os.environ.setdefault("AI_BACKEND_URL", "https://ai.test/v1/generate")
os.environ.setdefault("OUTBOUND_DELAY_SECONDS", "0")
os.environ.setdefault("LOG_LEVEL", "WARNING")

from datetime import timedelta  # noqa: E402
from typing import List, Optional, Sequence  # noqa: E402

import pytest  # noqa: E402

# Clear settings cache before any app imports to ensure test env vars are used
from seatline.config import get_settings  # noqa: E402
get_settings.cache_clear()

from seatline import models  # noqa: E402,F401
from seatline.ai_client import AIResult  # noqa: E402
from seatline.errors import BackendUnavailable, ProviderSendError  # noqa: E402
from seatline.kvstore import MemoryKeyValueStore  # noqa: E402
from seatline.models import Profile, Seat, SeatStatus, Show  # noqa: E402
from seatline.response_parser import ResponseFormat  # noqa: E402
from seatline.services import build_services  # noqa: E402
from seatline.storage import Base, SessionLocal, engine  # noqa: E402
from seatline.templates import TemplateRegistry  # noqa: E402
from seatline.twilio_client import MessageProvider, SendResult  # noqa: E402
from seatline.utils import utcnow  # noqa: E402


# =============================================================================
# Fakes
# =============================================================================

class FakeProvider(MessageProvider):
    """Records every send; fails the calls whose 0-based index is in fail_on."""

    def __init__(self, templates: TemplateRegistry, fail_on: Sequence[int] = ()):
        self.templates = templates
        self.fail_on = set(fail_on)
        self.sent: List[dict] = []
        self.calls = 0

    async def send(self, to, body=None, template_key=None, variables=()):
        index = self.calls
        self.calls += 1
        if index in self.fail_on:
            raise ProviderSendError("provider down", status_code=503, error_code="30001")
        if template_key:
            body = self.templates.render(template_key, variables)
        self.sent.append({"to": to, "body": body, "template_key": template_key, "variables": list(variables)})
        return SendResult(sid=f"SMfake{index}", status="queued", body=body)

    @property
    def bodies(self) -> List[str]:
        return [item["body"] for item in self.sent]

    @property
    def template_keys(self) -> List[Optional[str]]:
        return [item["template_key"] for item in self.sent]


class FakeAIClient:
    """Stands in for AIBackendClient.generate."""

    configured = True

    def __init__(self, answer: str = "Try a 10 minute wind-down before bed.", fail: bool = False):
        self.answer = answer
        self.fail = fail
        self.calls: List[dict] = []

    async def generate(self, statement, context, session_id, channel="whatsapp"):
        self.calls.append({"statement": statement, "context": context, "session_id": session_id})
        if self.fail:
            raise BackendUnavailable("backend down", attempts=3)
        return AIResult(text=self.answer, request_id="req-test", attempts=1,
                        response_format=ResponseFormat.JSON)


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def db():
    """Fresh tables and a session per test."""
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def templates():
    return TemplateRegistry()


@pytest.fixture
def provider(templates):
    return FakeProvider(templates)


@pytest.fixture
def make_provider(templates):
    """Factory for providers that fail selected sends."""

    def _make_provider(fail_on=()):
        return FakeProvider(templates, fail_on=fail_on)

    return _make_provider


@pytest.fixture
def ai_client():
    return FakeAIClient()


@pytest.fixture
def services(provider, ai_client, templates):
    return build_services(
        get_settings(),
        kv_store=MemoryKeyValueStore(),
        provider=provider,
        ai_client=ai_client,
        templates=templates,
    )


@pytest.fixture
def now():
    return utcnow()


@pytest.fixture
def make_seat(db):
    """Factory creating a show, optional profile and a seat."""

    def _make_seat(code="SC-ABC123", status=SeatStatus.PENDING, bound_phone=None, expires_in=timedelta(days=30),
                   show_name="Hamilton", profile=True):
        show = Show(name=show_name)
        db.add(show)
        db.flush()
        profile_row = None
        if profile:
            profile_row = Profile(
                name="Alex",
                role="Swing",
                tour_or_resident="touring",
                goals=["better sleep", "ankle strength"],
                sleep_env={"environment": "hotel", "noise_level": "high"},
                food_constraints={"allergies": ["nuts"]},
                injuries_notes="Sprained ankle 2023",
            )
            db.add(profile_row)
            db.flush()
        seat = Seat(
            show_id=show.id,
            seat_code=code.upper(),
            status=status.value,
            bound_phone=bound_phone,
            bound_at=utcnow() if bound_phone else None,
            expires_at=(utcnow() + expires_in) if expires_in is not None else None,
            profile_id=profile_row.id if profile_row else None,
        )
        db.add(seat)
        db.commit()
        db.refresh(seat)
        return seat

    return _make_seat
