"""
HTTP client for the AI answering backend.

One generate() call makes up to 1 + max_retries attempts. Timeouts, transport
errors, HTTP 429/5xx and empty or unparseable bodies are retried with
exponential backoff and jitter; a Retry-After header replaces the computed
delay. Any other 4xx fails at once.
"""

import asyncio
import logging
import random
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Awaitable, Callable, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import httpx

from seatline.errors import BackendError, BackendUnavailable
from seatline.metrics import record_ai_attempt
from seatline.response_parser import ResponseFormat, parse_response

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AIResult:
    text: str
    request_id: str
    attempts: int
    response_format: ResponseFormat


def parse_retry_after(value: Optional[str], now: Optional[datetime] = None) -> Optional[float]:
    """Retry-After as seconds; accepts delta-seconds or an HTTP date."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(float(value), 0.0)
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max((when - now).total_seconds(), 0.0)


def gmt_offset(timezone_name: str, now: Optional[datetime] = None) -> str:
    """Current UTC offset of a zone formatted as GMT+HH:MM."""
    try:
        zone = ZoneInfo(timezone_name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Unknown timezone {timezone_name!r}, using UTC")
        zone = timezone.utc
    offset = (now or datetime.now(timezone.utc)).astimezone(zone).utcoffset()
    minutes = int(offset.total_seconds() // 60) if offset else 0
    sign = "+" if minutes >= 0 else "-"
    hours, mins = divmod(abs(minutes), 60)
    return f"GMT{sign}{hours:02d}:{mins:02d}"


class AIBackendClient:
    """Calls the answering backend over a shared httpx.AsyncClient."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        url: Optional[str],
        api_key: Optional[str] = None,
        user_id: str = "production-physiotherapy",
        knowledgebase_id: Optional[str] = None,
        locale: str = "en-GB",
        timezone_name: str = "Europe/London",
        timeout_seconds: float = 15.0,
        max_retries: int = 2,
        backoff_base: float = 0.5,
        backoff_max: float = 8.0,
        stream: bool = False,
        sleep_func: Callable[[float], Awaitable[None]] = asyncio.sleep,
        jitter_func: Callable[[float, float], float] = random.uniform,
    ):
        self._client = http_client
        self.url = url
        self.api_key = api_key
        self.user_id = user_id
        self.knowledgebase_id = knowledgebase_id
        self.locale = locale
        self.timezone_name = timezone_name
        self.timeout_seconds = timeout_seconds
        self.max_retries = max(max_retries, 0)
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.stream = stream
        self._sleep = sleep_func
        self._jitter = jitter_func

    @property
    def configured(self) -> bool:
        return bool(self.url)

    def backoff_delay(self, attempt: int, retry_after: Optional[float] = None) -> float:
        """Delay before retry number attempt + 1 (attempt counts from 0)."""
        if retry_after is not None:
            return min(retry_after, self.backoff_max)
        delay = self.backoff_base * (2 ** attempt) + self._jitter(0, self.backoff_base)
        return min(delay, self.backoff_max)

    def _build_payload(self, statement: str, context: str, session_id: str, request_id: str,
                       channel: str) -> dict:
        return {
            "statement": statement,
            "context": context,
            "userId": self.user_id,
            "knowledgebaseId": self.knowledgebase_id,
            "sessionId": session_id,
            "requestId": request_id,
            "stream": self.stream,
            "metadata": {
                "channel": channel,
                "locale": self.locale,
                "timezone": self.timezone_name,
                "gmtOffset": gmt_offset(self.timezone_name),
            },
        }

    def _headers(self, request_id: str) -> dict:
        headers = {"Content-Type": "application/json", "X-Request-ID": request_id}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    @staticmethod
    def _check_status(response: httpx.Response) -> None:
        status_code = response.status_code
        if status_code < 400:
            return
        retry_after = parse_retry_after(response.headers.get("Retry-After"))
        if status_code == 429 or status_code >= 500:
            raise BackendError(f"Backend returned {status_code}", status_code=status_code,
                               retryable=True, retry_after=retry_after)
        raise BackendError(f"Backend rejected request with {status_code}", status_code=status_code,
                           retryable=False)

    async def _attempt(self, payload: dict, headers: dict) -> Tuple[str, ResponseFormat]:
        try:
            if self.stream:
                async with self._client.stream("POST", self.url, json=payload, headers=headers,
                                               timeout=self.timeout_seconds) as response:
                    self._check_status(response)
                    chunks = [chunk async for chunk in response.aiter_text()]
                body = "".join(chunks)
            else:
                response = await self._client.post(self.url, json=payload, headers=headers,
                                                   timeout=self.timeout_seconds)
                self._check_status(response)
                body = response.text
        except httpx.TimeoutException as e:
            raise BackendError(f"Backend timed out: {e}", retryable=True) from e
        except httpx.HTTPError as e:
            raise BackendError(f"Backend transport error: {e}", retryable=True) from e

        parsed = parse_response(body)
        if not parsed.text:
            raise BackendError(f"Backend returned no usable text ({parsed.format.value})", retryable=True)
        return parsed.text, parsed.format

    async def generate(self, statement: str, context: str, session_id: str,
                       channel: str = "whatsapp") -> AIResult:
        """
        Ask the backend for an answer.

        Raises:
            BackendUnavailable: Not configured, non-retryable failure, or
                retries exhausted
        """
        request_id = str(uuid.uuid4())
        if not self.configured:
            raise BackendUnavailable("AI backend URL is not configured", attempts=0)

        payload = self._build_payload(statement, context, session_id, request_id, channel)
        headers = self._headers(request_id)
        last_error: Optional[BackendError] = None
        attempts = 0

        for attempt in range(self.max_retries + 1):
            attempts = attempt + 1
            started = time.monotonic()
            try:
                text, response_format = await self._attempt(payload, headers)
            except BackendError as e:
                last_error = e
                will_retry = e.retryable and attempt < self.max_retries
                record_ai_attempt("retry" if will_retry else "failure", time.monotonic() - started)
                logger.warning(
                    f"AI backend attempt {attempts} failed: {e}",
                    extra={"ai_request_id": request_id, "status_code": e.status_code, "retryable": e.retryable},
                )
                if not will_retry:
                    break
                delay = self.backoff_delay(attempt, e.retry_after)
                logger.info(f"Retrying AI backend in {delay:.2f}s", extra={"ai_request_id": request_id})
                await self._sleep(delay)
                continue

            record_ai_attempt("success", time.monotonic() - started)
            logger.info(
                f"AI backend answered after {attempts} attempt(s)",
                extra={"ai_request_id": request_id, "format": response_format.value, "chars": len(text)},
            )
            return AIResult(text=text, request_id=request_id, attempts=attempts,
                            response_format=response_format)

        raise BackendUnavailable(
            f"AI backend unavailable after {attempts} attempt(s)",
            attempts=attempts,
            last_error=last_error,
        )
