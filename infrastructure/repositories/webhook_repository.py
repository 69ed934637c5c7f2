"""
Webhook 仓储实现 - 使用SQLAlchemy实现数据访问
"""
from datetime import datetime
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from domain.webhook.entity import (
    WebhookDelivery,
    WebhookEndpoint,
    WebhookEvent,
    WebhookEventStatus,
)
from domain.webhook.repository import (
    WebhookDeliveryRepository,
    WebhookEndpointRepository,
    WebhookEventRepository,
)
from infrastructure.models.webhook import (
    WebhookDeliveryModel,
    WebhookEndpointModel,
    WebhookEventModel,
)


class SQLAlchemyWebhookEndpointRepository(WebhookEndpointRepository):

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: WebhookEndpointModel) -> WebhookEndpoint:
        return WebhookEndpoint(
            id=model.id,
            merchant_id=model.merchant_id,
            url=model.url,
            secret=model.secret,
            events=list(model.events or []),
            is_active=bool(model.is_active),
            failure_count=model.failure_count or 0,
            last_failure_at=model.last_failure_at,
            description=model.description,
            created_at=model.created_at,
            updated_at=model.updated_at,
        )

    async def create(self, endpoint: WebhookEndpoint) -> WebhookEndpoint:
        self.session.add(
            WebhookEndpointModel(
                id=endpoint.id,
                merchant_id=endpoint.merchant_id,
                url=endpoint.url,
                secret=endpoint.secret,
                events=list(endpoint.events),
                description=endpoint.description,
                is_active=endpoint.is_active,
                failure_count=endpoint.failure_count,
                last_failure_at=endpoint.last_failure_at,
                created_at=endpoint.created_at,
                updated_at=endpoint.updated_at,
            )
        )
        await self.session.flush()
        return endpoint

    async def get_by_id(self, endpoint_id: str) -> Optional[WebhookEndpoint]:
        db_endpoint = await self.session.get(WebhookEndpointModel, endpoint_id)
        return self._to_entity(db_endpoint) if db_endpoint else None

    async def update(self, endpoint: WebhookEndpoint) -> WebhookEndpoint:
        db_endpoint = await self.session.get(WebhookEndpointModel, endpoint.id)
        if not db_endpoint:
            raise ValueError(f"WebhookEndpoint with id {endpoint.id} not found")
        db_endpoint.url = endpoint.url
        db_endpoint.events = list(endpoint.events)
        db_endpoint.description = endpoint.description
        db_endpoint.is_active = endpoint.is_active
        db_endpoint.failure_count = endpoint.failure_count
        db_endpoint.last_failure_at = endpoint.last_failure_at
        db_endpoint.updated_at = endpoint.updated_at
        await self.session.flush()
        return endpoint

    async def list_by_merchant(self, merchant_id: str, *, active_only: bool = False) -> List[WebhookEndpoint]:
        query = select(WebhookEndpointModel).where(WebhookEndpointModel.merchant_id == merchant_id)
        if active_only:
            query = query.where(WebhookEndpointModel.is_active.is_(True))
        result = await self.session.execute(query.order_by(WebhookEndpointModel.created_at))
        return [self._to_entity(e) for e in result.scalars().all()]


class SQLAlchemyWebhookEventRepository(WebhookEventRepository):

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: WebhookEventModel) -> WebhookEvent:
        return WebhookEvent(
            id=model.id,
            merchant_id=model.merchant_id,
            type=model.type,
            data=model.data or {},
            created=model.created,
            status=model.status,
            attempt_count=model.attempt_count or 0,
            next_retry_at=model.next_retry_at,
            last_attempt_at=model.last_attempt_at,
        )

    async def create(self, event: WebhookEvent) -> WebhookEvent:
        self.session.add(
            WebhookEventModel(
                id=event.id,
                merchant_id=event.merchant_id,
                type=event.type,
                data=event.data,
                created=event.created,
                status=event.status.value,
                attempt_count=event.attempt_count,
                next_retry_at=event.next_retry_at,
                last_attempt_at=event.last_attempt_at,
            )
        )
        await self.session.flush()
        return event

    async def get_by_id(self, event_id: str) -> Optional[WebhookEvent]:
        db_event = await self.session.get(WebhookEventModel, event_id)
        return self._to_entity(db_event) if db_event else None

    async def update(self, event: WebhookEvent) -> WebhookEvent:
        db_event = await self.session.get(WebhookEventModel, event.id)
        if not db_event:
            raise ValueError(f"WebhookEvent with id {event.id} not found")
        # data 与 created 创建后不变，保证重发的字节一致
        db_event.status = event.status.value
        db_event.attempt_count = event.attempt_count
        db_event.next_retry_at = event.next_retry_at
        db_event.last_attempt_at = event.last_attempt_at
        await self.session.flush()
        return event

    async def list_due(self, now: datetime, limit: int = 100) -> List[WebhookEvent]:
        result = await self.session.execute(
            select(WebhookEventModel)
            .where(
                WebhookEventModel.status.in_(
                    [WebhookEventStatus.PENDING.value, WebhookEventStatus.RETRYING.value]
                ),
                WebhookEventModel.next_retry_at.is_not(None),
                WebhookEventModel.next_retry_at <= now,
            )
            .order_by(WebhookEventModel.next_retry_at)
            .limit(limit)
        )
        return [self._to_entity(e) for e in result.scalars().all()]

    async def claim(self, event_id: str, now: datetime, lease_until: datetime) -> Optional[WebhookEvent]:
        result = await self.session.execute(
            update(WebhookEventModel)
            .where(
                WebhookEventModel.id == event_id,
                WebhookEventModel.status.in_(
                    [WebhookEventStatus.PENDING.value, WebhookEventStatus.RETRYING.value]
                ),
                WebhookEventModel.next_retry_at.is_not(None),
                WebhookEventModel.next_retry_at <= now,
            )
            .values(next_retry_at=lease_until)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return None
        db_event = await self.session.get(WebhookEventModel, event_id, populate_existing=True)
        return self._to_entity(db_event) if db_event else None


class SQLAlchemyWebhookDeliveryRepository(WebhookDeliveryRepository):

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: WebhookDeliveryModel) -> WebhookDelivery:
        return WebhookDelivery(
            id=model.id,
            event_id=model.event_id,
            endpoint_id=model.endpoint_id,
            attempt=model.attempt,
            success=bool(model.success),
            status_code=model.status_code,
            duration_ms=model.duration_ms or 0,
            error=model.error,
            created_at=model.created_at,
        )

    async def create(self, delivery: WebhookDelivery) -> WebhookDelivery:
        self.session.add(
            WebhookDeliveryModel(
                id=delivery.id,
                event_id=delivery.event_id,
                endpoint_id=delivery.endpoint_id,
                attempt=delivery.attempt,
                success=delivery.success,
                status_code=delivery.status_code,
                duration_ms=delivery.duration_ms,
                error=delivery.error,
                created_at=delivery.created_at,
            )
        )
        await self.session.flush()
        return delivery

    async def list_by_event(self, event_id: str) -> List[WebhookDelivery]:
        result = await self.session.execute(
            select(WebhookDeliveryModel)
            .where(WebhookDeliveryModel.event_id == event_id)
            .order_by(WebhookDeliveryModel.attempt, WebhookDeliveryModel.created_at)
        )
        return [self._to_entity(d) for d in result.scalars().all()]

    async def list_by_endpoint(self, endpoint_id: str, limit: int = 50) -> List[WebhookDelivery]:
        result = await self.session.execute(
            select(WebhookDeliveryModel)
            .where(WebhookDeliveryModel.endpoint_id == endpoint_id)
            .order_by(WebhookDeliveryModel.created_at.desc())
            .limit(limit)
        )
        return [self._to_entity(d) for d in result.scalars().all()]

    async def successful_endpoint_ids(self, event_id: str) -> set[str]:
        result = await self.session.execute(
            select(WebhookDeliveryModel.endpoint_id)
            .where(
                WebhookDeliveryModel.event_id == event_id,
                WebhookDeliveryModel.success.is_(True),
            )
            .distinct()
        )
        return set(result.scalars().all())
