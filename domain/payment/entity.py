"""
支付领域实体 - PaymentIntent / Charge / Refund

金额一律为最小货币单位的整数（分），币种为小写 ISO-4217 代码。
"""
from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

from domain.common.clock import ensure_utc, utc_now
from domain.common.exceptions import (
    ChargeNotRefundableException,
    DomainValidationException,
    InvalidStateException,
    RefundExceedsChargeException,
)
from domain.common.identifiers import generate_id
from shared.codes.payment_codes import PaymentCode


class PaymentIntentStatus(str, Enum):
    """支付意图状态"""
    REQUIRES_PAYMENT_METHOD = "requires_payment_method"  # 等待确认
    REQUIRES_ACTION = "requires_action"                  # 等待 3DS 验证
    SUCCEEDED = "succeeded"
    CANCELED = "canceled"


class StepUpStatus(str, Enum):
    REQUIRED = "required"
    AUTHENTICATED = "authenticated"
    FAILED = "failed"


class ChargeStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REFUNDED = "refunded"


class RefundReason(str, Enum):
    REQUESTED_BY_CUSTOMER = "requested_by_customer"
    DUPLICATE = "duplicate"
    FRAUDULENT = "fraudulent"


def _validate_amount(amount: int, field_name: str = "amount") -> None:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise DomainValidationException(f"金额必须为正整数: {amount}", field=field_name)


def _normalize_currency(currency: str) -> str:
    if not currency or len(currency) != 3 or not currency.isalpha():
        raise DomainValidationException(f"无效的货币代码: {currency}", field="currency")
    return currency.lower()


# 允许的状态迁移
_INTENT_TRANSITIONS = {
    PaymentIntentStatus.REQUIRES_PAYMENT_METHOD: {
        PaymentIntentStatus.REQUIRES_ACTION,
        PaymentIntentStatus.SUCCEEDED,
        PaymentIntentStatus.CANCELED,
    },
    PaymentIntentStatus.REQUIRES_ACTION: {
        PaymentIntentStatus.SUCCEEDED,
        PaymentIntentStatus.CANCELED,
    },
    PaymentIntentStatus.SUCCEEDED: set(),
    PaymentIntentStatus.CANCELED: set(),
}


@dataclass
class PaymentIntent:
    """
    支付意图聚合根

    业务规则：
    1. 金额必须大于0，金额创建后不可修改
    2. 状态只能沿 requires_payment_method -> requires_action -> succeeded/canceled 前进
    3. succeeded / canceled 为终态
    """

    id: str
    merchant_id: str
    amount: int
    currency: str
    status: PaymentIntentStatus
    client_secret: str
    receipt_email: Optional[str] = None
    description: Optional[str] = None

    # 确认时写入
    card_token: Optional[str] = None
    card_last4: Optional[str] = None
    card_brand: Optional[str] = None
    fraud_score: Optional[int] = None
    fraud_flags: list[str] = field(default_factory=list)
    step_up_status: Optional[StepUpStatus] = None
    authorization_code: Optional[str] = None  # 等待 3DS 时暂存的授权码
    cancellation_reason: Optional[str] = None

    metadata: dict = field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    canceled_at: Optional[datetime] = None

    def __post_init__(self):
        _validate_amount(self.amount)
        self.currency = _normalize_currency(self.currency)
        self.status = PaymentIntentStatus(self.status)
        if self.step_up_status is not None:
            self.step_up_status = StepUpStatus(self.step_up_status)
        self.created_at = ensure_utc(self.created_at) or utc_now()
        self.updated_at = ensure_utc(self.updated_at) or self.created_at
        self.canceled_at = ensure_utc(self.canceled_at)
        if self.metadata is None:
            self.metadata = {}
        if self.fraud_flags is None:
            self.fraud_flags = []

    @classmethod
    def create(
        cls,
        merchant_id: str,
        amount: int,
        currency: str,
        *,
        receipt_email: Optional[str] = None,
        description: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> "PaymentIntent":
        intent_id = generate_id("pi_")
        return cls(
            id=intent_id,
            merchant_id=merchant_id,
            amount=amount,
            currency=currency,
            status=PaymentIntentStatus.REQUIRES_PAYMENT_METHOD,
            client_secret=f"{intent_id}_secret_{secrets.token_urlsafe(18)}",
            receipt_email=receipt_email,
            description=description,
            metadata=metadata or {},
        )

    def _transition(self, target: PaymentIntentStatus) -> None:
        if target not in _INTENT_TRANSITIONS[self.status]:
            raise InvalidStateException(
                f"PaymentIntent cannot move from {self.status.value} to {target.value}",
                code=PaymentCode.PAYMENT_INTENT_STATE,
                details={"status": self.status.value, "target": target.value},
            )
        self.status = target
        self.updated_at = utc_now()

    def ensure_confirmable(self) -> None:
        if self.status != PaymentIntentStatus.REQUIRES_PAYMENT_METHOD:
            raise InvalidStateException(
                f"PaymentIntent is {self.status.value} and cannot be confirmed",
                code=PaymentCode.PAYMENT_INTENT_STATE,
                details={"status": self.status.value},
            )

    def attach_card(self, token_id: str, last4: str, brand: str) -> None:
        self.card_token = token_id
        self.card_last4 = last4
        self.card_brand = brand
        self.updated_at = utc_now()

    def record_fraud_check(self, score: int, flags: list[str]) -> None:
        self.fraud_score = score
        self.fraud_flags = list(flags)

    def require_action(self) -> None:
        """进入 3DS 验证等待状态"""
        self._transition(PaymentIntentStatus.REQUIRES_ACTION)
        self.step_up_status = StepUpStatus.REQUIRED

    def mark_succeeded(self) -> None:
        if self.status == PaymentIntentStatus.REQUIRES_ACTION:
            self.step_up_status = StepUpStatus.AUTHENTICATED
        self._transition(PaymentIntentStatus.SUCCEEDED)

    def cancel(self, reason: Optional[str] = None) -> None:
        if self.status == PaymentIntentStatus.REQUIRES_ACTION:
            self.step_up_status = StepUpStatus.FAILED
        self._transition(PaymentIntentStatus.CANCELED)
        self.cancellation_reason = reason
        self.canceled_at = self.updated_at

    def is_final_status(self) -> bool:
        return self.status in (PaymentIntentStatus.SUCCEEDED, PaymentIntentStatus.CANCELED)


@dataclass
class Charge:
    """
    扣款记录

    业务规则：
    1. amount 创建后不可变
    2. 0 <= amount_refunded <= amount
    3. 只有 succeeded 的扣款可以退款；全额退款后状态变为 refunded
    """

    id: str
    merchant_id: str
    amount: int
    currency: str
    status: ChargeStatus
    card_last4: Optional[str] = None
    card_brand: Optional[str] = None
    card_token: Optional[str] = None
    payment_intent_id: Optional[str] = None
    subscription_id: Optional[str] = None

    fraud_score: Optional[int] = None
    fraud_status: Optional[str] = None
    fraud_flags: list[str] = field(default_factory=list)
    authorization_status: Optional[str] = None
    authorization_code: Optional[str] = None
    failure_code: Optional[str] = None
    failure_message: Optional[str] = None

    amount_refunded: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        _validate_amount(self.amount)
        self.currency = _normalize_currency(self.currency)
        self.status = ChargeStatus(self.status)
        if self.amount_refunded < 0 or self.amount_refunded > self.amount:
            raise DomainValidationException(
                f"已退款金额 {self.amount_refunded} 超出范围 [0, {self.amount}]",
                field="amount_refunded",
            )
        self.created_at = ensure_utc(self.created_at) or utc_now()
        self.updated_at = ensure_utc(self.updated_at) or self.created_at
        if self.fraud_flags is None:
            self.fraud_flags = []

    @property
    def refundable_amount(self) -> int:
        return self.amount - self.amount_refunded

    def apply_refund(self, amount: Optional[int] = None) -> int:
        """扣减可退余额，返回本次实际退款金额（默认退剩余全部）"""
        if self.status != ChargeStatus.SUCCEEDED:
            raise ChargeNotRefundableException(self.status.value)
        remaining = self.refundable_amount
        if amount is None:
            amount = remaining
        _validate_amount(amount)
        if amount > remaining:
            raise RefundExceedsChargeException(amount, remaining)

        self.amount_refunded += amount
        if self.amount_refunded == self.amount:
            self.status = ChargeStatus.REFUNDED
        self.updated_at = utc_now()
        return amount


@dataclass
class Refund:
    """退款记录，创建即成功（模拟环境）"""

    id: str
    charge_id: str
    merchant_id: str
    amount: int
    currency: str
    reason: Optional[RefundReason] = None
    status: str = "succeeded"
    created_at: Optional[datetime] = None

    def __post_init__(self):
        _validate_amount(self.amount)
        self.currency = _normalize_currency(self.currency)
        if self.reason is not None:
            self.reason = RefundReason(self.reason)
        self.created_at = ensure_utc(self.created_at) or utc_now()
