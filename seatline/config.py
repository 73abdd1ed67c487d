import json
from functools import lru_cache
from typing import Dict, List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_DISCLAIMER = (
    "I don't diagnose or prescribe. I share general guidance and when to "
    "escalate to your physio/medical lead."
)


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Follows 12-factor app configuration principles.
    """

    # Pydantic v2 settings config
    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Database Configuration - required from .env
    DATABASE_URL: str

    LOG_LEVEL: str = "INFO"

    # Twilio (messaging provider) - auth token doubles as the webhook signing secret
    TWILIO_AUTH_TOKEN: str
    TWILIO_ACCOUNT_SID: str = ""
    TWILIO_WHATSAPP_FROM: str = "whatsapp:+14155238886"
    TWILIO_API_BASE_URL: str = "https://api.twilio.com"
    TWILIO_STATUS_CALLBACK_URL: Optional[str] = None
    # JSON object mapping template key -> approved Content SID
    TWILIO_CONTENT_SIDS: str = ""
    TWILIO_TIMEOUT_SECONDS: float = 10.0

    # Signature verification
    PUBLIC_WEBHOOK_BASE_URL: Optional[str] = None
    # Comma-separated sandbox/test AccountSids that skip signature checks
    SIGNATURE_BYPASS_ACCOUNT_SIDS: str = ""

    # Phone normalization
    DEFAULT_COUNTRY_CODE: str = "1"
    NATIONAL_COUNTRY_CODE: str = "44"

    # Seat binding
    SEAT_CODE_PREFIX: str = "SC-"
    CHAT_ACCEPT_PENDING_SEATS: bool = True
    AUTO_BIND_UNKNOWN_PHONES: bool = False

    # Abuse protection
    RATE_LIMIT_MAX_REQUESTS: int = 10
    RATE_LIMIT_WINDOW_SECONDS: int = 60
    IDEMPOTENCY_TTL_SECONDS: int = 24 * 60 * 60
    IDEMPOTENCY_LEASE_SECONDS: int = 120
    REDIS_URL: Optional[str] = None

    # Conversation policy
    SESSION_WINDOW_HOURS: int = 24
    DISCLAIMER_TEXT: str = DEFAULT_DISCLAIMER
    DISCLAIMER_WINDOW_HOURS: int = 24

    # AI answering backend
    AI_BACKEND_URL: Optional[str] = None
    AI_BACKEND_API_KEY: Optional[str] = None
    AI_USER_ID: str = "production-physiotherapy"
    AI_KNOWLEDGEBASE_ID: Optional[str] = None
    AI_LOCALE: str = "en-GB"
    AI_TIMEZONE: str = "Europe/London"
    AI_TIMEOUT_SECONDS: float = 15.0
    AI_MAX_RETRIES: int = 2
    AI_BACKOFF_BASE_SECONDS: float = 0.5
    AI_BACKOFF_MAX_SECONDS: float = 8.0
    AI_STREAM: bool = False
    CONTEXT_MAX_LENGTH: int = 3000
    STATEMENT_MAX_LENGTH: int = 1000

    # Outbound delivery
    OUTBOUND_MAX_LENGTH: int = 4096
    OUTBOUND_DELAY_SECONDS: float = 0.5

    # Template substitution values
    ONBOARDING_URL: str = "https://productionphysio.com/onboarding"
    SUPPORT_CONTACT: str = "support@productionphysio.com"
    ACCESS_CONTACT: str = "your company manager"
    ESCALATION_CONTACT_NAME: str = "medical emergency services"
    ESCALATION_CONTACT_DETAILS: str = "999 (UK) or 911 (US)"

    @property
    def signature_bypass_accounts(self) -> List[str]:
        return [sid.strip() for sid in self.SIGNATURE_BYPASS_ACCOUNT_SIDS.split(",") if sid.strip()]

    @property
    def content_sids(self) -> Dict[str, str]:
        if not self.TWILIO_CONTENT_SIDS:
            return {}
        return {str(k): str(v) for k, v in json.loads(self.TWILIO_CONTENT_SIDS).items()}


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


# Global settings instance
settings = get_settings()
