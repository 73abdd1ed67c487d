"""
Parsing of AI backend response bodies.

The backend answers in one of several shapes depending on deployment and
streaming mode:

- JSON object: {"answer": ...} / {"response": ...} / {"text": ...} /
  {"content": ...} / OpenAI-style {"choices": [{"message": {"content": ...}}]}
- Server-sent events: "data: {...}" lines carrying deltas, ended by
  "data: [DONE]" or a finish_reason
- URL-encoded chunks: "text=Hello+there;finish_reason=stop" lines
- anything else is taken as plain text

classify_response picks the shape, one parser per shape accumulates the
text, and clean_artifacts removes protocol tokens that leaked into it.
"""

import json
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Tuple
from urllib.parse import unquote_plus

logger = logging.getLogger(__name__)


class ResponseFormat(str, Enum):
    JSON = "json"
    SSE = "sse"
    URL_ENCODED = "url_encoded"
    PLAIN = "plain"


@dataclass(frozen=True)
class ParsedResponse:
    text: str
    format: ResponseFormat
    finished: bool


_SSE_LINE_RE = re.compile(r"^data:", re.MULTILINE)
_URL_CHUNK_RE = re.compile(r"(?:^|[\n&])text=([^\n&]*)")
_FINISH_RE = re.compile(r";finish_reason=[A-Za-z_]*", re.IGNORECASE)

JSON_TEXT_KEYS = ("answer", "response", "text", "content")


def _load_json(body: str) -> Optional[Any]:
    try:
        return json.loads(body)
    except ValueError:
        return None


def classify_response(body: str) -> ResponseFormat:
    """Decide which shape a response body has. Pure function of the body."""
    stripped = body.strip()
    if stripped.startswith("{") and isinstance(_load_json(stripped), dict):
        return ResponseFormat.JSON
    if _SSE_LINE_RE.search(stripped):
        return ResponseFormat.SSE
    if _URL_CHUNK_RE.search(stripped):
        return ResponseFormat.URL_ENCODED
    return ResponseFormat.PLAIN


def _text_from_object(data: Any) -> str:
    if not isinstance(data, dict):
        return ""
    for key in JSON_TEXT_KEYS:
        value = data.get(key)
        if isinstance(value, str) and value:
            return value
    choices = data.get("choices")
    if isinstance(choices, list) and choices and isinstance(choices[0], dict):
        message = choices[0].get("message") or {}
        if isinstance(message, dict) and message.get("content"):
            return str(message["content"])
        if choices[0].get("text"):
            return str(choices[0]["text"])
    # Some gateways wrap the backend answer in a JSON string body
    body = data.get("body")
    if isinstance(body, str) and body:
        nested = _load_json(body)
        return _text_from_object(nested) if isinstance(nested, dict) else body
    return ""


def parse_json(body: str) -> Tuple[str, bool]:
    return _text_from_object(_load_json(body.strip())), True


def _delta_text(data: dict) -> str:
    choices = data.get("choices")
    if isinstance(choices, list):
        parts = []
        for choice in choices:
            if not isinstance(choice, dict):
                continue
            delta = choice.get("delta") or {}
            if isinstance(delta, dict) and delta.get("content"):
                parts.append(str(delta["content"]))
            elif choice.get("text"):
                parts.append(str(choice["text"]))
        return "".join(parts)
    for key in ("text", "content", "answer"):
        if isinstance(data.get(key), str):
            return data[key]
    return ""


def _finish_reason(data: dict) -> Optional[str]:
    if data.get("finish_reason"):
        return data["finish_reason"]
    choices = data.get("choices")
    if isinstance(choices, list):
        for choice in choices:
            if isinstance(choice, dict) and choice.get("finish_reason"):
                return choice["finish_reason"]
    return None


def parse_sse(body: str) -> Tuple[str, bool]:
    """Accumulate SSE deltas until [DONE] or a finish_reason."""
    parts = []
    for line in body.splitlines():
        line = line.strip()
        if not line.startswith("data:"):
            continue
        payload = line[len("data:"):].strip()
        if payload == "[DONE]":
            return "".join(parts), True
        data = _load_json(payload)
        if isinstance(data, dict):
            parts.append(_delta_text(data))
            if _finish_reason(data):
                return "".join(parts), True
        elif payload and "{" not in payload:
            parts.append(payload)
    return "".join(parts), False


def parse_url_encoded(body: str) -> Tuple[str, bool]:
    """Accumulate text= chunks until one carries a finish_reason."""
    parts = []
    for match in _URL_CHUNK_RE.finditer(body):
        chunk = match.group(1).strip()
        reason = None
        if ";finish_reason=" in chunk:
            chunk, reason = chunk.split(";finish_reason=", 1)
        if chunk != "stop":
            parts.append(unquote_plus(chunk))
        if reason and reason.lower() not in ("null", "none"):
            return "".join(parts), True
    return "".join(parts), False


def parse_plain(body: str) -> Tuple[str, bool]:
    return body, True


_PARSERS = {
    ResponseFormat.JSON: parse_json,
    ResponseFormat.SSE: parse_sse,
    ResponseFormat.URL_ENCODED: parse_url_encoded,
    ResponseFormat.PLAIN: parse_plain,
}


def clean_artifacts(text: str) -> str:
    """Strip stray protocol tokens left in the assembled text."""
    text = _FINISH_RE.sub("", text)
    text = text.replace("[DONE]", "")
    text = re.sub(r"^\s*data:\s*", "", text, flags=re.MULTILINE)
    text = re.sub(r"^text=", "", text, flags=re.MULTILINE)
    return text.strip()


def parse_response(body: str) -> ParsedResponse:
    """
    Extract the answer text from a backend response body.

    Returns:
        ParsedResponse; text is empty when nothing usable was found
    """
    response_format = classify_response(body or "")
    text, finished = _PARSERS[response_format](body or "")
    text = clean_artifacts(text)
    logger.debug(
        f"Parsed {response_format.value} response: {len(text)} chars",
        extra={"finished": finished},
    )
    return ParsedResponse(text=text, format=response_format, finished=finished)
