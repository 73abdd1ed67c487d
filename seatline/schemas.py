"""
Pydantic schemas for request/response validation.

This module contains:
- Request models for the provider's form-encoded webhooks
- Response models for API responses
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# =============================================================================
# Pydantic Request Models
# =============================================================================

class InboundMessage(BaseModel):
    """
    Inbound WhatsApp message envelope as posted by Twilio.

    Validates:
    - MessageSid: non-empty string (idempotency key)
    - From: non-empty raw sender address ("whatsapp:+447700900123")
    Everything else is optional provider metadata.
    """
    message_sid: str = Field(..., alias="MessageSid", min_length=1, description="Provider message id")
    from_address: str = Field(..., alias="From", min_length=1, description="Raw sender address")
    account_sid: Optional[str] = Field(None, alias="AccountSid")
    to_address: Optional[str] = Field(None, alias="To")
    body: Optional[str] = Field(None, alias="Body", max_length=4096)
    button_text: Optional[str] = Field(None, alias="ButtonText")
    wa_id: Optional[str] = Field(None, alias="WaId")
    num_media: int = Field(0, alias="NumMedia", ge=0)
    profile_name: Optional[str] = Field(None, alias="ProfileName")

    model_config = ConfigDict(
        populate_by_name=True,
        extra="ignore",
        json_schema_extra={
            "examples": [
                {
                    "MessageSid": "SM1234567890abcdef1234567890abcdef",
                    "AccountSid": "AC1234567890abcdef1234567890abcdef",
                    "From": "whatsapp:+447700900123",
                    "To": "whatsapp:+14155238886",
                    "Body": "seat:SC-ABC123",
                    "WaId": "447700900123",
                    "NumMedia": "0",
                }
            ]
        },
    )

    @field_validator("message_sid", "from_address")
    @classmethod
    def strip_required(cls, v: str, info) -> str:
        v = v.strip()
        if not v:
            raise ValueError(f"{info.field_name} must not be blank")
        return v

    @property
    def text(self) -> str:
        """Quick-reply button text wins over the free-form body."""
        return (self.button_text or self.body or "").strip()


class StatusCallback(BaseModel):
    """Delivery status callback for an outbound message."""
    message_sid: str = Field(..., alias="MessageSid", min_length=1)
    message_status: str = Field(..., alias="MessageStatus", min_length=1)
    error_code: Optional[str] = Field(None, alias="ErrorCode")
    error_message: Optional[str] = Field(None, alias="ErrorMessage")

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


# =============================================================================
# Pydantic Response Models
# =============================================================================

class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Error description")


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
