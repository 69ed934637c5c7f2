"""
订阅领域实体 - 订阅生命周期与计费周期计算
"""
from __future__ import annotations

import calendar
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Optional, TypeVar

from domain.common.clock import ensure_utc, utc_now
from domain.common.exceptions import DomainValidationException, InvalidStateException
from domain.common.identifiers import generate_id
from shared.codes.payment_codes import PaymentCode


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"  # 终态


class BillingInterval(str, Enum):
    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    YEAR = "year"


# 同一客户对同一价格只能有一个未取消的订阅
LIVE_STATUSES = (SubscriptionStatus.ACTIVE, SubscriptionStatus.PAUSED, SubscriptionStatus.PAST_DUE)

_D = TypeVar("_D", date, datetime)


def _add_months(moment: _D, months: int) -> _D:
    total = moment.month - 1 + months
    year = moment.year + total // 12
    month = total % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def add_interval(moment: _D, interval: BillingInterval | str, count: int = 1) -> _D:
    """按自然日历推进计费周期

    day/week 直接加天数；month/year 按月推进，日期超出目标月天数时取月末
    (Jan 31 + 1 month = Feb 28/29)。
    """
    if count < 1:
        raise DomainValidationException(f"interval_count 必须 >= 1: {count}", field="interval_count")
    interval = BillingInterval(interval)
    if interval == BillingInterval.DAY:
        return moment + timedelta(days=count)
    if interval == BillingInterval.WEEK:
        return moment + timedelta(days=7 * count)
    if interval == BillingInterval.MONTH:
        return _add_months(moment, count)
    return _add_months(moment, 12 * count)


@dataclass
class Subscription:
    """
    订阅聚合根

    业务规则：
    1. cancelled 为终态
    2. 任意一次成功扣款都会把 failure_count 清零
    3. 连续失败达到上限后进入 past_due
    """

    id: str
    merchant_id: str
    customer_id: str
    price_id: str
    unit_amount: int
    currency: str
    interval: BillingInterval
    current_period_start: datetime
    current_period_end: datetime
    next_billing_date: datetime
    interval_count: int = 1
    quantity: int = 1
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE

    trial_start: Optional[datetime] = None
    trial_end: Optional[datetime] = None

    failure_count: int = 0
    last_failure_at: Optional[datetime] = None

    # 存储的支付方式
    card_token: Optional[str] = None
    card_last4: Optional[str] = None
    card_brand: Optional[str] = None

    cancel_at_period_end: bool = False
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None

    metadata: dict = field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        if self.unit_amount <= 0:
            raise DomainValidationException(f"单价必须大于0: {self.unit_amount}", field="unit_amount")
        if self.quantity < 1:
            raise DomainValidationException(f"数量必须 >= 1: {self.quantity}", field="quantity")
        if self.interval_count < 1:
            raise DomainValidationException(
                f"interval_count 必须 >= 1: {self.interval_count}", field="interval_count"
            )
        self.currency = self.currency.lower()
        self.interval = BillingInterval(self.interval)
        self.status = SubscriptionStatus(self.status)
        for name in (
            "current_period_start",
            "current_period_end",
            "next_billing_date",
            "trial_start",
            "trial_end",
            "last_failure_at",
            "cancelled_at",
        ):
            setattr(self, name, ensure_utc(getattr(self, name)))
        self.created_at = ensure_utc(self.created_at) or utc_now()
        self.updated_at = ensure_utc(self.updated_at) or self.created_at
        if self.metadata is None:
            self.metadata = {}

    @classmethod
    def create(
        cls,
        *,
        merchant_id: str,
        customer_id: str,
        price_id: str,
        unit_amount: int,
        currency: str,
        interval: BillingInterval | str,
        interval_count: int = 1,
        quantity: int = 1,
        trial_days: int = 0,
        card_token: Optional[str] = None,
        card_last4: Optional[str] = None,
        card_brand: Optional[str] = None,
        metadata: Optional[dict] = None,
        now: Optional[datetime] = None,
    ) -> "Subscription":
        """有试用期时首次扣款在试用结束时，否则在一个计费周期之后"""
        now = now or utc_now()
        trial_start = trial_end = None
        if trial_days > 0:
            trial_start = now
            trial_end = now + timedelta(days=trial_days)
            period_end = trial_end
        else:
            period_end = add_interval(now, interval, interval_count)
        return cls(
            id=generate_id("sub_"),
            merchant_id=merchant_id,
            customer_id=customer_id,
            price_id=price_id,
            unit_amount=unit_amount,
            currency=currency,
            interval=BillingInterval(interval),
            interval_count=interval_count,
            quantity=quantity,
            current_period_start=now,
            current_period_end=period_end,
            next_billing_date=period_end,
            trial_start=trial_start,
            trial_end=trial_end,
            card_token=card_token,
            card_last4=card_last4,
            card_brand=card_brand,
            metadata=metadata or {},
            created_at=now,
        )

    @property
    def amount(self) -> int:
        return self.unit_amount * self.quantity

    @property
    def has_payment_method(self) -> bool:
        return bool(self.card_token or self.card_last4)

    def is_due(self, now: datetime) -> bool:
        return self.status == SubscriptionStatus.ACTIVE and self.next_billing_date <= now

    def _require_status(self, allowed: tuple[SubscriptionStatus, ...], action: str) -> None:
        if self.status not in allowed:
            raise InvalidStateException(
                f"Cannot {action} a subscription that is {self.status.value}",
                code=PaymentCode.SUBSCRIPTION_STATE,
                details={"status": self.status.value, "action": action},
            )

    def record_billing_success(self, now: datetime) -> None:
        """推进计费周期

        新周期从上一次的 next_billing_date 开始；若这样得到的周期在 now 之前
        就已结束（调度长时间停摆），则从 now 开始，避免连续补扣。
        """
        start = self.next_billing_date
        end = add_interval(start, self.interval, self.interval_count)
        if end <= now:
            start = now
            end = add_interval(now, self.interval, self.interval_count)
        self.current_period_start = start
        self.current_period_end = end
        self.next_billing_date = end
        self.failure_count = 0
        self.last_failure_at = None
        self.updated_at = now

    def record_billing_failure(self, now: datetime, max_failures: int) -> bool:
        """记录一次扣款失败，返回本次是否转入 past_due"""
        self.failure_count += 1
        self.last_failure_at = now
        self.updated_at = now
        if self.status == SubscriptionStatus.ACTIVE and self.failure_count >= max_failures:
            self.status = SubscriptionStatus.PAST_DUE
            return True
        return False

    def pause(self) -> None:
        self._require_status((SubscriptionStatus.ACTIVE,), "pause")
        self.status = SubscriptionStatus.PAUSED
        self.updated_at = utc_now()

    def resume(self) -> None:
        self._require_status((SubscriptionStatus.PAUSED,), "resume")
        self.status = SubscriptionStatus.ACTIVE
        self.updated_at = utc_now()

    def cancel(self, reason: Optional[str] = None, now: Optional[datetime] = None) -> None:
        self._require_status(LIVE_STATUSES, "cancel")
        now = now or utc_now()
        self.status = SubscriptionStatus.CANCELLED
        self.cancelled_at = now
        self.cancellation_reason = reason
        self.cancel_at_period_end = False
        self.updated_at = now

    def schedule_cancellation(self) -> None:
        self._require_status(LIVE_STATUSES, "schedule cancellation of")
        self.cancel_at_period_end = True
        self.updated_at = utc_now()
