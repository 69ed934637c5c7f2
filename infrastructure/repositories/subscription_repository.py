"""
订阅仓储实现 - 使用SQLAlchemy实现数据访问
"""
from datetime import datetime
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from core.logging_config import get_logger
from domain.subscription.entity import LIVE_STATUSES, Subscription, SubscriptionStatus
from domain.subscription.repository import SubscriptionRepository
from infrastructure.models.subscription import SubscriptionModel


logger = get_logger(__name__)


class SQLAlchemySubscriptionRepository(SubscriptionRepository):
    """订阅仓储的SQLAlchemy实现"""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: SubscriptionModel) -> Subscription:
        return Subscription(
            id=model.id,
            merchant_id=model.merchant_id,
            customer_id=model.customer_id,
            price_id=model.price_id,
            unit_amount=model.unit_amount,
            currency=model.currency,
            interval=model.interval,
            interval_count=model.interval_count,
            quantity=model.quantity,
            status=model.status,
            current_period_start=model.current_period_start,
            current_period_end=model.current_period_end,
            next_billing_date=model.next_billing_date,
            trial_start=model.trial_start,
            trial_end=model.trial_end,
            failure_count=model.failure_count or 0,
            last_failure_at=model.last_failure_at,
            card_token=model.card_token,
            card_last4=model.card_last4,
            card_brand=model.card_brand,
            cancel_at_period_end=bool(model.cancel_at_period_end),
            cancelled_at=model.cancelled_at,
            cancellation_reason=model.cancellation_reason,
            metadata=model.extra_metadata or {},
            created_at=model.created_at,
            updated_at=model.updated_at,
        )

    @staticmethod
    def _apply(model: SubscriptionModel, entity: Subscription) -> SubscriptionModel:
        model.quantity = entity.quantity
        model.status = entity.status.value
        model.current_period_start = entity.current_period_start
        model.current_period_end = entity.current_period_end
        model.next_billing_date = entity.next_billing_date
        model.trial_start = entity.trial_start
        model.trial_end = entity.trial_end
        model.failure_count = entity.failure_count
        model.last_failure_at = entity.last_failure_at
        model.card_token = entity.card_token
        model.card_last4 = entity.card_last4
        model.card_brand = entity.card_brand
        model.cancel_at_period_end = entity.cancel_at_period_end
        model.cancelled_at = entity.cancelled_at
        model.cancellation_reason = entity.cancellation_reason
        model.extra_metadata = entity.metadata
        model.updated_at = entity.updated_at
        return model

    def _to_model(self, entity: Subscription) -> SubscriptionModel:
        model = SubscriptionModel(
            id=entity.id,
            merchant_id=entity.merchant_id,
            customer_id=entity.customer_id,
            price_id=entity.price_id,
            unit_amount=entity.unit_amount,
            currency=entity.currency,
            interval=entity.interval.value,
            interval_count=entity.interval_count,
            created_at=entity.created_at,
        )
        return self._apply(model, entity)

    async def create(self, subscription: Subscription) -> Subscription:
        self.session.add(self._to_model(subscription))
        await self.session.flush()
        return subscription

    async def get_by_id(self, subscription_id: str) -> Optional[Subscription]:
        db_sub = await self.session.get(SubscriptionModel, subscription_id)
        return self._to_entity(db_sub) if db_sub else None

    async def update(self, subscription: Subscription) -> Subscription:
        db_sub = await self.session.get(SubscriptionModel, subscription.id)
        if not db_sub:
            raise ValueError(f"Subscription with id {subscription.id} not found")
        self._apply(db_sub, subscription)
        await self.session.flush()
        logger.debug("subscription_updated", subscription_id=subscription.id, status=db_sub.status)
        return subscription

    async def list_due(self, now: datetime, limit: int = 500) -> List[Subscription]:
        result = await self.session.execute(
            select(SubscriptionModel)
            .where(
                SubscriptionModel.status == SubscriptionStatus.ACTIVE.value,
                SubscriptionModel.next_billing_date <= now,
            )
            .order_by(SubscriptionModel.next_billing_date)
            .limit(limit)
        )
        return [self._to_entity(s) for s in result.scalars().all()]

    async def find_live(self, merchant_id: str, customer_id: str, price_id: str) -> Optional[Subscription]:
        result = await self.session.execute(
            select(SubscriptionModel)
            .where(
                SubscriptionModel.merchant_id == merchant_id,
                SubscriptionModel.customer_id == customer_id,
                SubscriptionModel.price_id == price_id,
                SubscriptionModel.status.in_([s.value for s in LIVE_STATUSES]),
            )
            .limit(1)
        )
        db_sub = result.scalar_one_or_none()
        return self._to_entity(db_sub) if db_sub else None
