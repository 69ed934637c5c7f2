"""
Subscription / billing DTOs (Pydantic v2).
"""
from __future__ import annotations

from typing import Any, Literal, Optional

from pydantic import BaseModel, Field, field_validator

from application.dtos.payments import _normalize_currency


class CreateSubscription(BaseModel):
    customer_id: str
    price_id: str
    unit_amount: int = Field(gt=0)
    currency: str = "usd"
    interval: Literal["day", "week", "month", "year"] = "month"
    interval_count: int = Field(default=1, ge=1)
    quantity: int = Field(default=1, ge=1)
    trial_days: int = Field(default=0, ge=0)
    card_token: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None

    @field_validator("currency")
    @classmethod
    def _validate_currency(cls, v: str) -> str:
        return _normalize_currency(v)


class BillingRunSummary(BaseModel):
    due: int = 0
    billed: int = 0
    failed: int = 0
    past_due: int = 0
    cancelled: int = 0
    skipped: int = 0
