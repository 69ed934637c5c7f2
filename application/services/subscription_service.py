"""
Subscription lifecycle use-cases (create / pause / resume / cancel).

Recurring charges themselves are driven by BillingScheduler.
"""
from __future__ import annotations

from typing import Callable, Optional

from application.dtos.subscriptions import CreateSubscription
from application.services.event_payloads import subscription_payload
from application.services.webhook_dispatcher import WebhookDispatcher
from core.logging_config import get_logger
from domain.common.clock import Clock, utc_now
from domain.common.exceptions import (
    ForbiddenException,
    InvalidTokenException,
    SubscriptionAlreadyExistsException,
    SubscriptionNotFoundException,
)
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.subscription.entity import Subscription
from domain.webhook.entity import (
    SUBSCRIPTION_CANCELLED,
    SUBSCRIPTION_CREATED,
    SUBSCRIPTION_PAUSED,
    SUBSCRIPTION_RESUMED,
)


logger = get_logger(__name__)


class SubscriptionService:
    def __init__(
        self,
        uow_factory: Callable[[], AbstractUnitOfWork],
        dispatcher: WebhookDispatcher,
        *,
        now: Clock = utc_now,
    ) -> None:
        self._uow_factory = uow_factory
        self._dispatcher = dispatcher
        self._now = now

    async def create_subscription(self, merchant_id: str, req: CreateSubscription) -> Subscription:
        async with self._uow_factory() as uow:
            existing = await uow.subscriptions.find_live(merchant_id, req.customer_id, req.price_id)
            if existing is not None:
                raise SubscriptionAlreadyExistsException(req.customer_id, req.price_id)

            last4 = brand = None
            if req.card_token:
                # 订阅保存支付方式，令牌在此被消费
                token = await uow.tokens.consume(req.card_token)
                if token is None:
                    raise InvalidTokenException(req.card_token)
                last4, brand = token.last4, token.brand

            subscription = Subscription.create(
                merchant_id=merchant_id,
                customer_id=req.customer_id,
                price_id=req.price_id,
                unit_amount=req.unit_amount,
                currency=req.currency,
                interval=req.interval,
                interval_count=req.interval_count,
                quantity=req.quantity,
                trial_days=req.trial_days,
                card_token=req.card_token,
                card_last4=last4,
                card_brand=brand,
                metadata=req.metadata,
                now=self._now(),
            )
            subscription = await uow.subscriptions.create(subscription)

        logger.info(
            "subscription_created",
            subscription_id=subscription.id,
            merchant_id=merchant_id,
            customer_id=req.customer_id,
            next_billing_date=subscription.next_billing_date,
        )
        await self._dispatcher.enqueue(merchant_id, SUBSCRIPTION_CREATED, subscription_payload(subscription))
        return subscription

    async def get_subscription(self, subscription_id: str, merchant_id: str) -> Subscription:
        async with self._uow_factory() as uow:
            return await self._get_owned(uow, subscription_id, merchant_id)

    async def pause(self, subscription_id: str, merchant_id: str) -> Subscription:
        async with self._uow_factory() as uow:
            subscription = await self._get_owned(uow, subscription_id, merchant_id)
            subscription.pause()
            subscription = await uow.subscriptions.update(subscription)
        await self._emit(SUBSCRIPTION_PAUSED, subscription)
        return subscription

    async def resume(self, subscription_id: str, merchant_id: str) -> Subscription:
        async with self._uow_factory() as uow:
            subscription = await self._get_owned(uow, subscription_id, merchant_id)
            subscription.resume()
            subscription = await uow.subscriptions.update(subscription)
        await self._emit(SUBSCRIPTION_RESUMED, subscription)
        return subscription

    async def cancel(self, subscription_id: str, merchant_id: str, reason: Optional[str] = None) -> Subscription:
        async with self._uow_factory() as uow:
            subscription = await self._get_owned(uow, subscription_id, merchant_id)
            subscription.cancel(reason, now=self._now())
            subscription = await uow.subscriptions.update(subscription)
        await self._emit(SUBSCRIPTION_CANCELLED, subscription)
        return subscription

    async def schedule_cancellation(self, subscription_id: str, merchant_id: str) -> Subscription:
        """在当前周期结束时取消（由计费调度在到期时执行）"""
        async with self._uow_factory() as uow:
            subscription = await self._get_owned(uow, subscription_id, merchant_id)
            subscription.schedule_cancellation()
            subscription = await uow.subscriptions.update(subscription)
        logger.info(
            "subscription_cancellation_scheduled",
            subscription_id=subscription.id,
            current_period_end=subscription.current_period_end,
        )
        return subscription

    async def _emit(self, event_type: str, subscription: Subscription) -> None:
        logger.info("subscription_status_changed", subscription_id=subscription.id, status=subscription.status.value)
        await self._dispatcher.enqueue(subscription.merchant_id, event_type, subscription_payload(subscription))

    @staticmethod
    async def _get_owned(uow: AbstractUnitOfWork, subscription_id: str, merchant_id: str) -> Subscription:
        subscription = await uow.subscriptions.get_by_id(subscription_id)
        if subscription is None:
            raise SubscriptionNotFoundException(subscription_id)
        if subscription.merchant_id != merchant_id:
            raise ForbiddenException()
        return subscription
