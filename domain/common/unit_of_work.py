"""Unit of Work 抽象定义（即核心组件使用的 Store 契约）"""
from __future__ import annotations

from abc import ABC, abstractmethod

from domain.payment.repository import (
    CardTokenRepository,
    ChargeRepository,
    PaymentIntentRepository,
    RefundRepository,
)
from domain.subscription.repository import SubscriptionRepository
from domain.webhook.repository import (
    WebhookDeliveryRepository,
    WebhookEndpointRepository,
    WebhookEventRepository,
)


class AbstractUnitOfWork(ABC):
    """应用层事务边界控制抽象"""

    payment_intents: PaymentIntentRepository
    charges: ChargeRepository
    refunds: RefundRepository
    tokens: CardTokenRepository
    subscriptions: SubscriptionRepository
    webhook_endpoints: WebhookEndpointRepository
    webhook_events: WebhookEventRepository
    webhook_deliveries: WebhookDeliveryRepository

    def __init__(self, *, readonly: bool = False) -> None:
        self._committed = False
        self._readonly = readonly

    async def __aenter__(self) -> "AbstractUnitOfWork":
        self._committed = False
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if exc:
            await self.rollback()
        else:
            # 只在非只读且未显式提交时自动提交
            if not self._readonly and not self._committed:
                await self.commit()

    @abstractmethod
    async def commit(self) -> None:
        """提交事务"""
        ...

    @abstractmethod
    async def rollback(self) -> None:
        """回滚事务"""
        ...
