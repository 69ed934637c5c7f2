"""
支付仓储接口 - 定义支付数据访问的抽象接口
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional

from domain.card.tokenization import Token
from .entity import Charge, PaymentIntent, Refund


class PaymentIntentRepository(ABC):
    """支付意图仓储抽象接口"""

    @abstractmethod
    async def create(self, intent: PaymentIntent) -> PaymentIntent:
        pass

    @abstractmethod
    async def get_by_id(self, intent_id: str) -> Optional[PaymentIntent]:
        pass

    @abstractmethod
    async def update(self, intent: PaymentIntent) -> PaymentIntent:
        pass


class ChargeRepository(ABC):
    """扣款仓储抽象接口，同时为风控提供历史统计"""

    @abstractmethod
    async def create(self, charge: Charge) -> Charge:
        pass

    @abstractmethod
    async def get_by_id(self, charge_id: str) -> Optional[Charge]:
        pass

    @abstractmethod
    async def update(self, charge: Charge) -> Charge:
        pass

    @abstractmethod
    async def list_by_subscription(self, subscription_id: str, limit: int = 100) -> List[Charge]:
        pass

    @abstractmethod
    async def count_charges(
        self,
        *,
        merchant_id: str,
        card_last4: str,
        since: Optional[datetime] = None,
        amount_below: Optional[int] = None,
        status: Optional[str] = None,
    ) -> int:
        """统计同一商户下同一卡指纹的扣款数量

        Args:
            since: 仅统计 created_at >= since 的记录
            amount_below: 仅统计 amount < amount_below 的记录
            status: 仅统计指定状态
        """
        pass


class RefundRepository(ABC):
    """退款仓储抽象接口"""

    @abstractmethod
    async def create(self, refund: Refund) -> Refund:
        pass

    @abstractmethod
    async def list_by_charge(self, charge_id: str) -> List[Refund]:
        pass


class CardTokenRepository(ABC):
    """卡令牌仓储：令牌只能被消费一次"""

    @abstractmethod
    async def save(self, token: Token) -> Token:
        pass

    @abstractmethod
    async def get(self, token_id: str) -> Optional[Token]:
        pass

    @abstractmethod
    async def consume(self, token_id: str) -> Optional[Token]:
        """取出并标记为已使用；未知或已使用的令牌返回 None"""
        pass
