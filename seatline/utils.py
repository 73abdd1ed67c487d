"""
Utility functions for the webhook service.
"""

import base64
import hashlib
import hmac
import logging
from datetime import datetime, timezone
from typing import Mapping, Optional

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Attach UTC to naive datetimes.

    SQLite drops tzinfo on DateTime(timezone=True) columns, so values read back
    from the store are naive even though they were written in UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def compute_twilio_signature(url: str, params: Mapping[str, str], secret: str) -> str:
    """
    Compute the provider request signature.

    The signed string is the full URL followed by every POST parameter name
    and value, parameters sorted by name. The digest is HMAC-SHA1 keyed with
    the account auth token, base64 encoded.

    Args:
        url: Full request URL as the provider called it
        params: Form parameters of the request
        secret: Account auth token

    Returns:
        Base64 encoded signature
    """
    payload = url + "".join(f"{key}{params[key]}" for key in sorted(params))
    digest = hmac.new(secret.encode("utf-8"), payload.encode("utf-8"), hashlib.sha1).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_twilio_signature(
    signature: Optional[str],
    url: str,
    params: Mapping[str, str],
    secret: str,
) -> bool:
    """
    Verify the X-Twilio-Signature header of an inbound request.

    Args:
        signature: Value of the signature header (may be missing)
        url: Full request URL
        params: Form parameters of the request
        secret: Account auth token

    Returns:
        True if signature is valid, False otherwise. Never raises.
    """
    if not isinstance(signature, str) or not signature or not secret:
        logger.info("Signature verification: missing signature or secret")
        return False

    try:
        expected = compute_twilio_signature(url, params, secret)
        # Compare bytes so non-ASCII header values fail cleanly instead of raising
        is_valid = hmac.compare_digest(expected.encode("ascii"), signature.encode("utf-8"))
    except (TypeError, ValueError, KeyError) as e:
        logger.warning(f"Signature verification error: {e}")
        return False

    logger.info(f"Signature verification: {'valid' if is_valid else 'invalid'}")
    return is_valid
