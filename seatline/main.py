import logging
import time
from contextlib import asynccontextmanager
from typing import Dict, NoReturn, Optional

from fastapi import Depends, FastAPI, HTTPException, Request, Response, status
from pydantic import ValidationError
from sqlalchemy.orm import Session

from seatline.config import settings
from seatline.errors import InvalidPhoneNumber
from seatline.idempotency import IdempotencyState
from seatline.logging_utils import RequestLoggingMiddleware, log_webhook_data, setup_logging
from seatline.metrics import (
    get_metrics,
    get_metrics_content_type,
    record_delivery_status,
    record_webhook_outcome,
)
from seatline.phone import mask_phone, normalize_phone
from seatline.schemas import ErrorResponse, HealthResponse, InboundMessage, StatusCallback
from seatline.services import Services, build_services, get_services
from seatline.storage import check_db_health, get_db, init_db, update_delivery_status
from seatline.utils import utcnow, verify_twilio_signature


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

EMPTY_TWIML = '<?xml version="1.0" encoding="UTF-8"?><Response></Response>'
FAILED_DELIVERY_STATUSES = ("failed", "undelivered")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: create tables, build shared clients and stores
    - Shutdown: close the shared HTTP client
    """
    init_db()
    app.state.services = build_services(settings)
    yield
    await app.state.services.aclose()


app = FastAPI(
    title="Seatline",
    description="WhatsApp inbound message pipeline for production seat holders",
    version="1.0.0",
    lifespan=lifespan,
)

# Add request logging middleware
app.add_middleware(RequestLoggingMiddleware)


def _twiml() -> Response:
    return Response(content=EMPTY_TWIML, media_type="application/xml")


def _reject(request: Request, status_code: int, detail: str, result: str,
            message_sid: Optional[str] = None, headers: Optional[Dict[str, str]] = None) -> NoReturn:
    record_webhook_outcome(result)
    log_webhook_data(request=request, message_sid=message_sid, dup=False, result=result)
    raise HTTPException(status_code=status_code, detail=detail, headers=headers)


def _signed_url(request: Request) -> str:
    """URL the provider signed: the public base URL when behind a proxy."""
    if not settings.PUBLIC_WEBHOOK_BASE_URL:
        return str(request.url)
    url = settings.PUBLIC_WEBHOOK_BASE_URL.rstrip("/") + request.url.path
    if request.url.query:
        url += f"?{request.url.query}"
    return url


async def _verified_form(request: Request) -> Dict[str, str]:
    """
    Read the form body and check X-Twilio-Signature.

    Raises:
        HTTPException: 401 when the signature does not match
    """
    form = await request.form()
    params = {key: value for key, value in form.items() if isinstance(value, str)}

    account_sid = params.get("AccountSid")
    if account_sid and account_sid in settings.signature_bypass_accounts:
        logger.warning(f"Signature check bypassed for sandbox account {account_sid}")
        return params

    signature = request.headers.get("X-Twilio-Signature")
    if not verify_twilio_signature(signature, _signed_url(request), params, settings.TWILIO_AUTH_TOKEN):
        logger.error("Invalid Twilio signature")
        _reject(request, status.HTTP_401_UNAUTHORIZED, "invalid signature", "invalid_signature",
                message_sid=params.get("MessageSid"))
    return params


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """
    Liveness probe - always returns 200 once the app is running.
    """
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
async def health_ready(response: Response) -> HealthResponse:
    """
    Readiness probe - returns 200 only if:
    1. TWILIO_AUTH_TOKEN is set (needed to verify webhooks)
    2. AI_BACKEND_URL is set
    3. DB is reachable and schema is applied

    Otherwise returns 503 (Service Unavailable).
    """
    reason = None
    if not settings.TWILIO_AUTH_TOKEN:
        reason = "TWILIO_AUTH_TOKEN not configured"
    elif not settings.AI_BACKEND_URL:
        reason = "AI_BACKEND_URL not configured"
    elif not check_db_health():
        reason = "Database not reachable or schema not applied"

    if reason:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", reason=reason)
    return HealthResponse(status="ready")


# =============================================================================
# Webhook Routes
# =============================================================================

@app.post(
    "/webhook",
    response_class=Response,
    responses={
        200: {"content": {"application/xml": {}}, "description": "Handled (empty TwiML)"},
        400: {"model": ErrorResponse, "description": "Invalid sender phone"},
        401: {"model": ErrorResponse, "description": "Invalid signature"},
        422: {"description": "Validation error"},
        429: {"model": ErrorResponse, "description": "Rate limited"},
    }
)
async def webhook(
    request: Request,
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
) -> Response:
    """
    Ingest an inbound WhatsApp message exactly once.

    - Verifies X-Twilio-Signature over the public URL and form parameters
    - Validates the envelope and normalizes the sender
    - Duplicate MessageSid returns 200 without side effects
    - Throttles per sender; the first rejection in a window gets a notice
    - Runs the binding / chat pipeline and always answers 200 once accepted
    """
    params = await _verified_form(request)

    try:
        message = InboundMessage.model_validate(params)
    except ValidationError as e:
        logger.error(f"Validation error: {e}")
        record_webhook_outcome("validation_error")
        log_webhook_data(request=request, message_sid=params.get("MessageSid"), result="validation_error")
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=e.errors(include_url=False, include_context=False),
        )

    try:
        phone = normalize_phone(
            message.from_address,
            default_country_code=settings.DEFAULT_COUNTRY_CODE,
            national_country_code=settings.NATIONAL_COUNTRY_CODE,
        )
    except InvalidPhoneNumber as e:
        logger.error(f"Invalid sender phone: {e.reason}")
        _reject(request, status.HTTP_400_BAD_REQUEST, "invalid phone number", "invalid_phone",
                message_sid=message.message_sid)

    sid = message.message_sid
    check = services.idempotency.begin(sid)
    if not check.should_process:
        result = "duplicate" if check.state == IdempotencyState.PROCESSED else "in_progress"
        record_webhook_outcome(result)
        log_webhook_data(request=request, message_sid=sid, dup=True, result=result)
        return _twiml()

    decision = services.rate_limiter.hit(phone.e164)
    if not decision.allowed:
        services.idempotency.release(sid)
        if decision.first_rejection:
            await services.dispatcher.send_template(db, phone.e164, "rate_limited_v1")
        retry_after = max(int(decision.reset_at - time.time()), 1)
        _reject(request, status.HTTP_429_TOO_MANY_REQUESTS, "rate limited", "rate_limited",
                message_sid=sid, headers={"Retry-After": str(retry_after)})

    logger.info(f"Processing message {sid} from {mask_phone(phone.e164)}")
    try:
        outcome = await services.pipeline.handle(db, message, phone, utcnow())
    except Exception:
        # Let the provider's redelivery retry from scratch
        services.idempotency.release(sid)
        record_webhook_outcome("error")
        log_webhook_data(request=request, message_sid=sid, result="error")
        raise

    services.idempotency.mark_processed(sid)
    record_webhook_outcome("processed")
    log_webhook_data(request=request, message_sid=sid, dup=False, result=outcome.value)
    return _twiml()


@app.post(
    "/webhook/status",
    response_class=Response,
    responses={401: {"model": ErrorResponse, "description": "Invalid signature"}},
)
async def webhook_status(request: Request, db: Session = Depends(get_db)) -> Response:
    """
    Record a delivery status callback on the matching outbound log row.

    Unknown message ids are acknowledged with 200 as well.
    """
    params = await _verified_form(request)
    try:
        callback = StatusCallback.model_validate(params)
    except ValidationError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=e.errors(include_url=False, include_context=False),
        )

    record_delivery_status(callback.message_status)
    if callback.message_status in FAILED_DELIVERY_STATUSES:
        logger.warning(
            f"Delivery {callback.message_status} for {callback.message_sid}",
            extra={"error_code": callback.error_code, "error_message": callback.error_message},
        )

    updated = update_delivery_status(db, callback.message_sid, callback.message_status, callback.error_code)
    if not updated:
        logger.info(f"Status callback for unknown message {callback.message_sid}")
    return _twiml()


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """
    Expose Prometheus-style metrics.
    """
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
