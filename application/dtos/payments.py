"""
Payment DTOs (Pydantic v2) used at application boundaries.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator


# Common ISO-4217 currencies (extend as needed)
ISO_4217 = {
    "USD", "EUR", "GBP", "CNY", "JPY", "KRW", "HKD", "AUD", "CAD", "SGD",
}


def _normalize_currency(v: str) -> str:
    u = (v or "").upper()
    if len(u) != 3 or not u.isalpha():
        raise ValueError("currency must be ISO-4217 alpha-3")
    if u not in ISO_4217:
        raise ValueError("unsupported currency")
    return u.lower()


class CardDetails(BaseModel):
    """原始卡数据；只在令牌化时短暂存在"""

    model_config = ConfigDict(hide_input_in_errors=True)

    number: str = Field(repr=False)
    exp_month: int
    exp_year: int
    cvc: str = Field(repr=False)


class TokenView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    brand: str
    last4: str
    exp_month: int
    exp_year: int
    created_at: datetime


class CreatePaymentIntent(BaseModel):
    amount: int = Field(gt=0, description="最小货币单位")
    currency: str = "usd"
    receipt_email: Optional[EmailStr] = None
    description: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None

    @field_validator("currency")
    @classmethod
    def _validate_currency(cls, v: str) -> str:
        return _normalize_currency(v)


class ConfirmPaymentIntent(BaseModel):
    card_token: str
    client_secret: Optional[str] = None
    email: Optional[EmailStr] = None


class VerifyStepUp(BaseModel):
    client_secret: Optional[str] = None
    code: str


class RefundRequest(BaseModel):
    amount: Optional[int] = Field(default=None, gt=0)
    reason: Optional[Literal["requested_by_customer", "duplicate", "fraudulent"]] = None


class PaymentOutcome(BaseModel):
    """确认支付的结果"""

    status: Literal["succeeded", "requires_action", "failed", "blocked"]
    payment_intent_id: str
    intent_status: str
    charge_id: Optional[str] = None
    fraud_score: Optional[int] = None
    fraud_flags: list[str] = Field(default_factory=list)
    failure_code: Optional[str] = None
    failure_message: Optional[str] = None
