"""
组装应用服务（composition root）

Celery 任务和脚本通过 ``build_container`` 取得一组共享同一个
WebhookDispatcher 的服务实例，使用完毕后调用 ``aclose`` 释放
HTTP 连接池、Redis 连接和数据库引擎。
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional

from application.ports.locks import LockManager
from application.ports.webhook_transport import WebhookTransport
from application.services.billing_scheduler import BillingScheduler
from application.services.payment_service import PaymentService
from application.services.subscription_service import SubscriptionService
from application.services.webhook_dispatcher import WebhookDispatcher
from application.services.webhook_endpoint_service import WebhookEndpointService
from core.config import settings
from core.logging_config import get_logger
from core.settings import PaymentSettings, payment_settings
from domain.authorization.simulator import AuthorizationSimulator
from domain.card.tokenization import CardTokenizer
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.fraud.engine import FraudEngine
from infrastructure.database import engine
from infrastructure.external.cache.locks import LocalLockManager, RedisLockManager
from infrastructure.external.webhooks.http_transport import HttpxWebhookTransport
from infrastructure.unit_of_work import SQLAlchemyUnitOfWork


logger = get_logger(__name__)


@dataclass
class Container:
    dispatcher: WebhookDispatcher
    payments: PaymentService
    endpoints: WebhookEndpointService
    subscriptions: SubscriptionService
    billing: BillingScheduler
    transport: WebhookTransport
    locks: LockManager
    dispose_engine: bool = True

    async def aclose(self) -> None:
        await self.transport.aclose()
        aclose_locks = getattr(self.locks, "aclose", None)
        if aclose_locks is not None:
            await aclose_locks()
        if self.dispose_engine:
            # asyncio.run 每次创建新的事件循环，连接池不能跨循环复用
            await engine.dispose()


def build_lock_manager(config: Optional[PaymentSettings] = None) -> LockManager:
    billing = (config or payment_settings).billing
    if settings.redis.url:
        return RedisLockManager.from_url(
            settings.redis.url,
            namespace=settings.redis.namespace,
            timeout=billing.lock_timeout_seconds,
            blocking_timeout=billing.lock_blocking_timeout_seconds,
        )
    logger.warning("redis_not_configured_using_local_locks")
    return LocalLockManager(blocking_timeout=billing.lock_blocking_timeout_seconds)


def build_container(
    *,
    uow_factory: Callable[[], AbstractUnitOfWork] = SQLAlchemyUnitOfWork,
    transport: Optional[WebhookTransport] = None,
    locks: Optional[LockManager] = None,
    config: Optional[PaymentSettings] = None,
    dispose_engine: bool = True,
) -> Container:
    config = config or payment_settings
    transport = transport or HttpxWebhookTransport(config.webhook)
    locks = locks or build_lock_manager(config)
    authorizer = AuthorizationSimulator(config.authorization)

    dispatcher = WebhookDispatcher(uow_factory, transport, config.webhook)
    return Container(
        dispatcher=dispatcher,
        payments=PaymentService(
            uow_factory,
            dispatcher,
            tokenizer=CardTokenizer(config.card),
            fraud_engine=FraudEngine(config.fraud),
            authorizer=authorizer,
        ),
        endpoints=WebhookEndpointService(uow_factory),
        subscriptions=SubscriptionService(uow_factory, dispatcher),
        billing=BillingScheduler(
            uow_factory,
            dispatcher,
            locks,
            authorizer=authorizer,
            settings=config.billing,
        ),
        transport=transport,
        locks=locks,
        dispose_engine=dispose_engine,
    )
