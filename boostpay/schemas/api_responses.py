"""
API request/response schemas for the admin and cron endpoints.
"""
from typing import Any, Optional
from pydantic import BaseModel, Field


class WebhookEventSummary(BaseModel):
    id: str
    provider: str
    event_type: str
    event_id: str
    status: str
    outcome: Optional[str] = None
    attempts: int
    last_attempt_at: Optional[str] = None
    next_retry_at: Optional[str] = None
    processed_at: Optional[str] = None
    error_message: Optional[str] = None
    error_kind: Optional[str] = None
    correlation_id: Optional[str] = None
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class WebhookStats(BaseModel):
    total: int = 0
    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0


class WebhookEventListResponse(BaseModel):
    webhooks: list[WebhookEventSummary]
    total: int
    stats: WebhookStats


class WebhookRetryRequest(BaseModel):
    provider: str = Field(min_length=1, max_length=20)
    event_id: str = Field(min_length=1, max_length=255)


class WebhookRetryResponse(BaseModel):
    success: bool
    message: str
    webhook: WebhookEventSummary
