"""
Webhook 领域实体 - 端点 / 事件 / 投递记录
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional
from urllib.parse import urlparse

from domain.common.clock import ensure_utc, utc_now
from domain.common.exceptions import DomainValidationException, InvalidStateException
from domain.common.identifiers import generate_id


# 事件类型
PAYMENT_SUCCEEDED = "payment.succeeded"
PAYMENT_FAILED = "payment.failed"
CHARGE_REFUNDED = "charge.refunded"
SUBSCRIPTION_CREATED = "subscription.created"
SUBSCRIPTION_RENEWED = "subscription.renewed"
SUBSCRIPTION_PAST_DUE = "subscription.past_due"
SUBSCRIPTION_PAUSED = "subscription.paused"
SUBSCRIPTION_RESUMED = "subscription.resumed"
SUBSCRIPTION_CANCELLED = "subscription.cancelled"
WEBHOOK_TEST = "webhook.test"

EVENT_TYPES = frozenset({
    PAYMENT_SUCCEEDED,
    PAYMENT_FAILED,
    CHARGE_REFUNDED,
    SUBSCRIPTION_CREATED,
    SUBSCRIPTION_RENEWED,
    SUBSCRIPTION_PAST_DUE,
    SUBSCRIPTION_PAUSED,
    SUBSCRIPTION_RESUMED,
    SUBSCRIPTION_CANCELLED,
    WEBHOOK_TEST,
})

WILDCARD = "*"


class WebhookEventStatus(str, Enum):
    PENDING = "pending"
    RETRYING = "retrying"
    SENT = "sent"        # 终态
    FAILED = "failed"    # 终态


@dataclass
class WebhookEndpoint:
    """
    商户的 webhook 接收端点

    业务规则：
    1. URL 必须是 http(s)
    2. 至少订阅一个事件类型（``*`` 表示全部）
    3. 连续失败达到阈值后自动停用，只能显式重新启用
    """

    id: str
    merchant_id: str
    url: str
    secret: str
    events: list[str]
    is_active: bool = True
    failure_count: int = 0
    last_failure_at: Optional[datetime] = None
    description: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        parsed = urlparse(self.url or "")
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise DomainValidationException(f"无效的 webhook URL: {self.url}", field="url")
        if not self.events:
            raise DomainValidationException("至少需要订阅一个事件类型", field="events")
        unknown = [e for e in self.events if e != WILDCARD and e not in EVENT_TYPES]
        if unknown:
            raise DomainValidationException(
                f"未知的事件类型: {', '.join(unknown)}",
                field="events",
                details={"unknown": unknown},
            )
        self.last_failure_at = ensure_utc(self.last_failure_at)
        self.created_at = ensure_utc(self.created_at) or utc_now()
        self.updated_at = ensure_utc(self.updated_at) or self.created_at

    def subscribes_to(self, event_type: str) -> bool:
        return WILDCARD in self.events or event_type in self.events

    def record_success(self) -> None:
        self.failure_count = 0
        self.updated_at = utc_now()

    def record_failure(self, now: datetime, threshold: int) -> bool:
        """记录一次投递失败，返回本次是否触发自动停用"""
        self.failure_count += 1
        self.last_failure_at = now
        self.updated_at = now
        if self.is_active and self.failure_count >= threshold:
            self.is_active = False
            return True
        return False

    def reactivate(self) -> None:
        self.is_active = True
        self.failure_count = 0
        self.last_failure_at = None
        self.updated_at = utc_now()

    def disable(self) -> None:
        self.is_active = False
        self.updated_at = utc_now()


@dataclass
class WebhookEvent:
    """
    待投递事件

    attempt_count 只增不减；sent / failed 之后不再变化。
    """

    id: str
    merchant_id: str
    type: str
    data: dict
    created: int  # unix 秒
    status: WebhookEventStatus = WebhookEventStatus.PENDING
    attempt_count: int = 0
    next_retry_at: Optional[datetime] = None
    last_attempt_at: Optional[datetime] = None

    def __post_init__(self):
        self.status = WebhookEventStatus(self.status)
        self.next_retry_at = ensure_utc(self.next_retry_at)
        self.last_attempt_at = ensure_utc(self.last_attempt_at)

    @classmethod
    def create(cls, merchant_id: str, event_type: str, data: dict, now: Optional[datetime] = None) -> "WebhookEvent":
        now = now or utc_now()
        return cls(
            id=generate_id("evt_"),
            merchant_id=merchant_id,
            type=event_type,
            data=data,
            created=int(now.timestamp()),
        )

    def to_wire(self) -> dict:
        return {
            "id": self.id,
            "type": self.type,
            "created": self.created,
            "data": {"object": self.data},
        }

    @property
    def is_terminal(self) -> bool:
        return self.status in (WebhookEventStatus.SENT, WebhookEventStatus.FAILED)

    def register_attempt(self, succeeded: bool, now: datetime, retry_delay: Optional[timedelta]) -> None:
        """记录一次投递尝试的结果

        Args:
            succeeded: 所有目标端点均投递成功
            retry_delay: 失败时距离下次重试的间隔；None 表示重试已用尽
        """
        if self.is_terminal:
            raise InvalidStateException(
                f"WebhookEvent {self.id} is already {self.status.value}",
                details={"status": self.status.value},
            )
        self.attempt_count += 1
        self.last_attempt_at = now
        if succeeded:
            self.status = WebhookEventStatus.SENT
            self.next_retry_at = None
        elif retry_delay is None:
            self.status = WebhookEventStatus.FAILED
            self.next_retry_at = None
        else:
            self.status = WebhookEventStatus.RETRYING
            self.next_retry_at = now + retry_delay


@dataclass
class WebhookDelivery:
    """单次 (事件, 端点) 投递记录，只追加不修改"""

    id: str
    event_id: str
    endpoint_id: str
    attempt: int
    success: bool
    status_code: Optional[int] = None  # 超时/网络错误时为空
    duration_ms: int = 0
    error: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)

    def __post_init__(self):
        self.created_at = ensure_utc(self.created_at)
