"""
Pydantic schemas for results and request/response validation.

This module contains:
- Result types returned across the component boundary (SendOutcome, IngestionResult)
- Request models for incoming data validation
- Response models for API responses
"""

from datetime import datetime
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, Field, field_validator


# =============================================================================
# Component Result Types
# =============================================================================

SendStatus = Literal["already_sent", "skipped", "sent", "failed"]
IngestionAction = Literal["processed", "ignored", "stored_orphan", "rejected"]


class SendOutcome(BaseModel):
    """
    Structured result of SendOrchestrator.send.

    Batch senders use it to tell "do not retry" (already_sent, max retries,
    permanent failure) from "retry later" (failed and retryable) from
    "another worker has it" (skipped: processing / claim_failed).
    """
    status: SendStatus
    reason: Optional[str] = None
    message_record_id: Optional[int] = None
    provider_message_id: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    is_retryable: bool = False
    retry_count: int = 0
    retry_after: Optional[datetime] = None
    quota_consumed: bool = False

    @property
    def should_retry_later(self) -> bool:
        if self.status == "failed":
            return self.is_retryable
        return self.status == "skipped" and self.reason in ("processing", "claim_failed")

    @property
    def is_final(self) -> bool:
        if self.status in ("already_sent", "sent"):
            return True
        if self.status == "failed":
            return not self.is_retryable
        return self.reason in ("max_retries_reached", "permanently_failed", "quota_exceeded", "expired")


class IngestionResult(BaseModel):
    """
    Result of EventIngestionPipeline.ingest.

    ``accepted`` is what the provider sees: True for processed, ignored and
    orphaned events so it stops redelivering; False only for rejected ones.
    """
    accepted: bool
    action: IngestionAction
    reason: Optional[str] = None
    provider: Optional[str] = None
    event_key: Optional[str] = None
    event_record_id: Optional[int] = None
    message_record_id: Optional[int] = None
    status_before: Optional[str] = None
    status_after: Optional[str] = None
    status_changed: bool = False


class ReconciliationReport(BaseModel):
    scanned: int = 0
    linked: int = 0
    applied: int = 0
    still_orphaned: int = 0


# =============================================================================
# Pydantic Request Models
# =============================================================================

class SendMessageRequest(BaseModel):
    """
    API send request. ``request_id`` is the caller's idempotency handle:
    repeating a request with the same tenant and request_id never sends twice.
    """
    tenant_id: str = Field(..., min_length=1, max_length=64)
    to: str = Field(..., description="Recipient phone number in E.164 format")
    text: str = Field(..., min_length=1, max_length=4096)
    request_id: str = Field(..., min_length=1, max_length=64)
    provider: Optional[str] = Field(None, description="Provider name; defaults to DEFAULT_PROVIDER")

    @field_validator("to")
    @classmethod
    def validate_e164_format(cls, v: str, info) -> str:
        """Validate E.164-like phone number format: starts with +, then digits only."""
        if not v.startswith("+"):
            raise ValueError(f"{info.field_name} must start with '+'")
        if len(v) < 2:
            raise ValueError(f"{info.field_name} must have at least one digit after '+'")
        if not v[1:].isdigit():
            raise ValueError(f"{info.field_name} must contain only digits after '+'")
        return v

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "tenant_id": "t1",
                    "to": "+6281234567890",
                    "text": "Your order has shipped",
                    "request_id": "req-001",
                }
            ]
        }
    }


# =============================================================================
# Pydantic Response Models
# =============================================================================

class WebhookResponse(BaseModel):
    """Acknowledgement returned to providers."""
    status: str = Field(default="ok", description="Operation status")
    action: Optional[str] = Field(None, description="processed, ignored or stored_orphan")
    reason: Optional[str] = Field(None, description="Why the event was ignored, if it was")


class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Error description")


class MessageRecordResponse(BaseModel):
    id: int
    idempotency_key: str
    tenant_id: str
    recipient: str
    message_type: str
    status: str
    status_detail: Optional[str] = None
    provider_name: Optional[str] = None
    provider_message_id: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    is_retryable: bool
    retry_count: int
    max_retries: int
    retry_after: Optional[datetime] = None
    quota_consumed: bool
    sent_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    read_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class DeliveryEventResponse(BaseModel):
    id: int
    provider_name: str
    event_key: str
    event_type: str
    event_timestamp: datetime
    received_at: datetime
    status_before: Optional[str] = None
    status_after: Optional[str] = None
    status_changed: bool
    is_out_of_order: bool
    process_result: str
    process_note: Optional[str] = None
    reconciled_from_id: Optional[int] = None

    model_config = {"from_attributes": True}


class MessageEventsResponse(BaseModel):
    data: list[DeliveryEventResponse] = Field(default_factory=list)
    total: int = Field(..., ge=0)


class TenantStatsResponse(BaseModel):
    total: int = Field(..., ge=0)
    sent: int = Field(..., ge=0)
    pending: int = Field(..., ge=0)
    sending: int = Field(..., ge=0)
    failed: int = Field(..., ge=0)
    expired: int = Field(..., ge=0)
    success_rate: float


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
    details: Optional[Dict[str, Any]] = None
