import logging
import re
import sys
import time
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Callable, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from pythonjsonlogger import jsonlogger

from seatline.metrics import record_http_request
from seatline.phone import mask_phone


# Context variable to store request_id for the current request
request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

# Loggers that would otherwise print request bodies or duplicate access lines
QUIET_LOGGERS = ("httpx", "httpcore")

# International numbers as they appear in provider addresses and error strings
PHONE_PATTERN = re.compile(r"\+\d{10,15}\b")


def get_request_id() -> Optional[str]:
    """Get the current request ID from context."""
    return request_id_ctx.get()


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter adding an ISO-8601 `ts`, `level` and the current request_id."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        if not log_record.get("ts"):
            log_record["ts"] = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"
        log_record["level"] = record.levelname

        if "request_id" not in log_record:
            req_id = request_id_ctx.get()
            if req_id:
                log_record["request_id"] = req_id


class PhoneRedactionFilter(logging.Filter):
    """Masks phone numbers that reach a log line unmasked."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = PHONE_PATTERN.sub(lambda match: mask_phone(match.group(0)), message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


def setup_logging(log_level: str = "INFO"):
    """
    Setup structured JSON logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logger = logging.getLogger()
    logger.setLevel(log_level.upper())
    logger.handlers = []

    json_handler = logging.StreamHandler(sys.stdout)
    json_handler.setFormatter(CustomJsonFormatter("%(ts)s %(level)s %(name)s %(message)s"))
    json_handler.addFilter(PhoneRedactionFilter())
    logger.addHandler(json_handler)

    # Route uvicorn through the same JSON handler
    for logger_name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uvicorn_logger = logging.getLogger(logger_name)
        uvicorn_logger.handlers = []
        uvicorn_logger.addHandler(json_handler)
        uvicorn_logger.propagate = False

    # Disable uvicorn.access logger since we have our own middleware
    logging.getLogger("uvicorn.access").disabled = True

    for logger_name in QUIET_LOGGERS:
        logging.getLogger(logger_name).setLevel(logging.WARNING)

    return logger


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Middleware to log all HTTP requests in structured JSON format.

    Log keys:
    - ts, level, request_id
    - method, path, status, latency_ms

    For /webhook requests, also includes:
    - message_sid: provider message id (when present)
    - dup: boolean indicating a duplicate delivery
    - result: gate or pipeline result (see log_webhook_data)
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        # Reuse a caller supplied id so traces line up across services
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        token = request_id_ctx.set(request_id)
        start_time = time.perf_counter()

        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id

            latency_seconds = time.perf_counter() - start_time

            # /metrics is excluded to avoid self-instrumentation noise
            if request.url.path != "/metrics":
                record_http_request(
                    method=request.method,
                    path=request.url.path,
                    status=response.status_code,
                    latency_seconds=latency_seconds
                )

            log_data = {
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "status": response.status_code,
                "latency_ms": round(latency_seconds * 1000, 2),
            }
            if hasattr(request.state, "webhook_log_data"):
                log_data.update(request.state.webhook_log_data)

            logger = logging.getLogger("seatline.requests")
            if response.status_code >= 500:
                logger.error("Request completed", extra=log_data)
            elif response.status_code >= 400:
                logger.warning("Request completed", extra=log_data)
            else:
                logger.info("Request completed", extra=log_data)

            return response
        finally:
            request_id_ctx.reset(token)


def log_webhook_data(request: Request, message_sid: Optional[str] = None, dup: bool = False,
                     result: Optional[str] = None):
    """
    Attach webhook-specific logging data to the request state.
    This data will be included in the request log by the middleware.

    Args:
        request: FastAPI request object
        message_sid: Provider message id from the envelope
        dup: Whether this delivery was a duplicate
        result: invalid_signature, validation_error, invalid_phone, duplicate,
            in_progress, rate_limited, error, or the pipeline outcome
    """
    webhook_data = {"dup": dup}
    if message_sid is not None:
        webhook_data["message_sid"] = message_sid
    if result is not None:
        webhook_data["result"] = result

    request.state.webhook_log_data = webhook_data
