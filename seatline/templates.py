"""
Keyed table of user-facing message templates.

Templates use positional {{1}}, {{2}} ... placeholders. The table is built
once at startup and handed to the components that send messages.
"""

import re
from dataclasses import dataclass
from types import MappingProxyType
from typing import Iterator, Mapping, Optional, Sequence

from seatline.errors import TemplateNotFound, TemplateRenderError

_PLACEHOLDER_RE = re.compile(r"\{\{(\d+)\}\}")


@dataclass(frozen=True)
class MessageTemplate:
    key: str
    text: str
    description: str = ""
    category: str = "UTILITY"

    @property
    def variable_count(self) -> int:
        return len(set(_PLACEHOLDER_RE.findall(self.text)))


DEFAULT_TEMPLATES = (
    MessageTemplate(
        "seat_bound_v1",
        "Welcome! You're now connected with the AI Performance Assistant for {{1}}. "
        "I can help with sleep, nutrition on the road, warm-ups, recovery and the quirks of show life. "
        "What would you like to discuss?",
        "Sent when a seat code binds successfully",
    ),
    MessageTemplate(
        "seat_not_found_v1",
        "Access code not recognized. Please check with your company manager or complete onboarding at {{1}}.",
        "Sent when a seat code doesn't exist",
    ),
    MessageTemplate(
        "seat_mismatch_v1",
        "This access code is linked to another number. "
        "Please contact {{1}} if you believe this is an error.",
        "Sent when the seat is bound to a different phone",
    ),
    MessageTemplate(
        "seat_expired_v1",
        "Your AI Performance Assistant access has expired. "
        "Please contact your production if you need continued access.",
        "Sent when the seat is past its expiry",
    ),
    MessageTemplate(
        "seat_revoked_v1",
        "Your access has been revoked. Please contact your company manager if you have questions.",
        "Sent when the seat is revoked",
    ),
    MessageTemplate(
        "access_denied_v1",
        "This number isn't enabled for {{1}}. Please contact {{2}} to request access or email {{3}}.",
        "Sent when the phone has no usable seat",
    ),
    MessageTemplate(
        "no_seats_available_v1",
        "Sorry, no seats are currently available. Please contact your company manager for assistance.",
        "Sent when auto-binding finds no free seat",
    ),
    MessageTemplate(
        "resume_session_v1",
        "Ready to continue your coaching for {{1}}? Just reply to get started.",
        "Sent when the user writes after the 24-hour window",
    ),
    MessageTemplate(
        "rate_limited_v1",
        "Too many messages. Please wait a moment and try again.",
        "Sent once per window when the sender is rate limited",
    ),
    MessageTemplate(
        "red_flag_escalation_v1",
        "Based on your message, please contact {{1}} immediately at {{2}}. This is important for your safety.",
        "Sent instead of an AI answer when a medical red flag is detected",
    ),
    MessageTemplate(
        "service_unavailable_v1",
        "Service temporarily unavailable. Please try again in a few minutes.",
        "Sent on storage or system faults",
    ),
    MessageTemplate(
        "ai_fallback_v1",
        "I'm having technical difficulties right now. Please contact {{1}} for immediate assistance.",
        "Sent when the AI backend fails after retries",
    ),
    MessageTemplate(
        "unsupported_message_v1",
        "I can only read text messages at the moment. Please type your question and I'll help.",
        "Sent for empty or media-only chat messages",
    ),
)


class TemplateRegistry(Mapping[str, MessageTemplate]):
    """Read-only mapping of template key -> MessageTemplate."""

    def __init__(self, templates: Sequence[MessageTemplate] = DEFAULT_TEMPLATES):
        self._templates = MappingProxyType({template.key: template for template in templates})

    def __getitem__(self, key: str) -> MessageTemplate:
        try:
            return self._templates[key]
        except KeyError:
            raise TemplateNotFound(key) from None

    def __iter__(self) -> Iterator[str]:
        return iter(self._templates)

    def __len__(self) -> int:
        return len(self._templates)

    def render(self, key: str, variables: Optional[Sequence[str]] = None) -> str:
        """
        Substitute positional variables into a template.

        Raises:
            TemplateNotFound: Unknown key
            TemplateRenderError: A placeholder has no matching variable
        """
        template = self[key]
        values = [str(v) for v in (variables or ())]

        def replace(match: "re.Match[str]") -> str:
            index = int(match.group(1)) - 1
            if index < 0 or index >= len(values):
                raise TemplateRenderError(f"Template {key} needs variable {{{{{index + 1}}}}}")
            return values[index]

        return _PLACEHOLDER_RE.sub(replace, template.text)
