"""
Webhook DTOs (Pydantic v2).
"""
from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field, HttpUrl


class RegisterWebhookEndpoint(BaseModel):
    url: HttpUrl
    events: list[str] = Field(min_length=1)
    description: Optional[str] = None


class DeliveryAttempt(BaseModel):
    """单个端点的一次投递结果（尚未落库）"""

    endpoint_id: str
    success: bool
    status_code: Optional[int] = None
    duration_ms: int = 0
    error: Optional[str] = None


class RetryRunSummary(BaseModel):
    processed: int = 0
    sent: int = 0
    retrying: int = 0
    failed: int = 0
    errors: int = 0
    skipped: int = 0
