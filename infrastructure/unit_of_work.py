"""SQLAlchemy Unit of Work 实现"""
from __future__ import annotations

from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from domain.common.unit_of_work import AbstractUnitOfWork
from infrastructure.database import AsyncSessionLocal
from infrastructure.repositories.payment_repository import (
    SQLAlchemyCardTokenRepository,
    SQLAlchemyChargeRepository,
    SQLAlchemyPaymentIntentRepository,
    SQLAlchemyRefundRepository,
)
from infrastructure.repositories.subscription_repository import SQLAlchemySubscriptionRepository
from infrastructure.repositories.webhook_repository import (
    SQLAlchemyWebhookDeliveryRepository,
    SQLAlchemyWebhookEndpointRepository,
    SQLAlchemyWebhookEventRepository,
)


class SQLAlchemyUnitOfWork(AbstractUnitOfWork):
    """基于SQLAlchemy的Unit of Work"""

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession] = AsyncSessionLocal,
        session: Optional[AsyncSession] = None,
        *,
        readonly: bool = False,
    ) -> None:
        super().__init__(readonly=readonly)
        self._session_factory = session_factory
        self._external_session = session
        self.session: Optional[AsyncSession] = session

    async def __aenter__(self) -> "SQLAlchemyUnitOfWork":
        await super().__aenter__()
        if self.session is None:
            self.session = self._session_factory()
        self.payment_intents = SQLAlchemyPaymentIntentRepository(self.session)
        self.charges = SQLAlchemyChargeRepository(self.session)
        self.refunds = SQLAlchemyRefundRepository(self.session)
        self.tokens = SQLAlchemyCardTokenRepository(self.session)
        self.subscriptions = SQLAlchemySubscriptionRepository(self.session)
        self.webhook_endpoints = SQLAlchemyWebhookEndpointRepository(self.session)
        self.webhook_events = SQLAlchemyWebhookEventRepository(self.session)
        self.webhook_deliveries = SQLAlchemyWebhookDeliveryRepository(self.session)
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        try:
            await super().__aexit__(exc_type, exc, tb)
        finally:
            if self._external_session is None and self.session is not None:
                await self.session.close()
                self.session = None

    async def commit(self) -> None:
        if self._readonly:
            # 只读情况下不提交
            self._committed = True
            return
        if self.session is not None:
            await self.session.commit()
        self._committed = True

    async def rollback(self) -> None:
        if self.session is not None and self.session.in_transaction():
            await self.session.rollback()
        self._committed = False
