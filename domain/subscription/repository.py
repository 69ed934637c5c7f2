"""
订阅仓储接口
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional

from .entity import Subscription


class SubscriptionRepository(ABC):

    @abstractmethod
    async def create(self, subscription: Subscription) -> Subscription:
        pass

    @abstractmethod
    async def get_by_id(self, subscription_id: str) -> Optional[Subscription]:
        pass

    @abstractmethod
    async def update(self, subscription: Subscription) -> Subscription:
        pass

    @abstractmethod
    async def list_due(self, now: datetime, limit: int = 500) -> List[Subscription]:
        """status=active 且 next_billing_date <= now"""
        pass

    @abstractmethod
    async def find_live(self, merchant_id: str, customer_id: str, price_id: str) -> Optional[Subscription]:
        """同一客户、同一价格下未取消的订阅"""
        pass
