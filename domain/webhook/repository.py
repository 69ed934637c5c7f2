"""
Webhook 仓储接口
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional

from .entity import WebhookDelivery, WebhookEndpoint, WebhookEvent


class WebhookEndpointRepository(ABC):

    @abstractmethod
    async def create(self, endpoint: WebhookEndpoint) -> WebhookEndpoint:
        pass

    @abstractmethod
    async def get_by_id(self, endpoint_id: str) -> Optional[WebhookEndpoint]:
        pass

    @abstractmethod
    async def update(self, endpoint: WebhookEndpoint) -> WebhookEndpoint:
        pass

    @abstractmethod
    async def list_by_merchant(self, merchant_id: str, *, active_only: bool = False) -> List[WebhookEndpoint]:
        pass


class WebhookEventRepository(ABC):

    @abstractmethod
    async def create(self, event: WebhookEvent) -> WebhookEvent:
        pass

    @abstractmethod
    async def get_by_id(self, event_id: str) -> Optional[WebhookEvent]:
        pass

    @abstractmethod
    async def update(self, event: WebhookEvent) -> WebhookEvent:
        pass

    @abstractmethod
    async def list_due(self, now: datetime, limit: int = 100) -> List[WebhookEvent]:
        """status 为 retrying（或未记录结果的 pending）且 next_retry_at <= now，按 next_retry_at 升序"""
        pass

    @abstractmethod
    async def claim(self, event_id: str, now: datetime, lease_until: datetime) -> Optional[WebhookEvent]:
        """条件更新：仍然到期时把 next_retry_at 推到 lease_until 并返回最新事件，否则返回 None"""
        pass


class WebhookDeliveryRepository(ABC):

    @abstractmethod
    async def create(self, delivery: WebhookDelivery) -> WebhookDelivery:
        pass

    @abstractmethod
    async def list_by_event(self, event_id: str) -> List[WebhookDelivery]:
        pass

    @abstractmethod
    async def list_by_endpoint(self, endpoint_id: str, limit: int = 50) -> List[WebhookDelivery]:
        """最近的投递记录，按时间倒序"""
        pass

    @abstractmethod
    async def successful_endpoint_ids(self, event_id: str) -> set[str]:
        pass
