"""
支付仓储实现 - 使用SQLAlchemy实现数据访问
"""
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from core.logging_config import get_logger
from domain.card.tokenization import Token
from domain.common.clock import ensure_utc
from domain.payment.entity import (
    Charge,
    ChargeStatus,
    PaymentIntent,
    PaymentIntentStatus,
    Refund,
    StepUpStatus,
)
from domain.payment.repository import (
    CardTokenRepository,
    ChargeRepository,
    PaymentIntentRepository,
    RefundRepository,
)
from infrastructure.models.payment import (
    CardTokenModel,
    ChargeModel,
    PaymentIntentModel,
    RefundModel,
)


logger = get_logger(__name__)


class SQLAlchemyPaymentIntentRepository(PaymentIntentRepository):
    """支付意图仓储的SQLAlchemy实现"""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: PaymentIntentModel) -> PaymentIntent:
        """将数据库模型转换为领域实体"""
        return PaymentIntent(
            id=model.id,
            merchant_id=model.merchant_id,
            amount=model.amount,
            currency=model.currency,
            status=PaymentIntentStatus(model.status),
            client_secret=model.client_secret,
            receipt_email=model.receipt_email,
            description=model.description,
            card_token=model.card_token,
            card_last4=model.card_last4,
            card_brand=model.card_brand,
            fraud_score=model.fraud_score,
            fraud_flags=list(model.fraud_flags or []),
            step_up_status=StepUpStatus(model.step_up_status) if model.step_up_status else None,
            authorization_code=model.authorization_code,
            cancellation_reason=model.cancellation_reason,
            metadata=model.extra_metadata or {},
            created_at=model.created_at,
            updated_at=model.updated_at,
            canceled_at=model.canceled_at,
        )

    @staticmethod
    def _apply(model: PaymentIntentModel, entity: PaymentIntent) -> PaymentIntentModel:
        """把实体上可变的字段写回模型"""
        model.status = entity.status.value
        model.card_token = entity.card_token
        model.card_last4 = entity.card_last4
        model.card_brand = entity.card_brand
        model.fraud_score = entity.fraud_score
        model.fraud_flags = list(entity.fraud_flags)
        model.step_up_status = entity.step_up_status.value if entity.step_up_status else None
        model.authorization_code = entity.authorization_code
        model.cancellation_reason = entity.cancellation_reason
        model.extra_metadata = entity.metadata
        model.updated_at = entity.updated_at
        model.canceled_at = entity.canceled_at
        return model

    def _to_model(self, entity: PaymentIntent) -> PaymentIntentModel:
        """将领域实体转换为数据库模型"""
        model = PaymentIntentModel(
            id=entity.id,
            merchant_id=entity.merchant_id,
            amount=entity.amount,
            currency=entity.currency,
            client_secret=entity.client_secret,
            receipt_email=entity.receipt_email,
            description=entity.description,
            created_at=entity.created_at,
        )
        return self._apply(model, entity)

    async def create(self, intent: PaymentIntent) -> PaymentIntent:
        db_intent = self._to_model(intent)
        self.session.add(db_intent)
        await self.session.flush()
        return intent

    async def get_by_id(self, intent_id: str) -> Optional[PaymentIntent]:
        db_intent = await self.session.get(PaymentIntentModel, intent_id)
        return self._to_entity(db_intent) if db_intent else None

    async def update(self, intent: PaymentIntent) -> PaymentIntent:
        db_intent = await self.session.get(PaymentIntentModel, intent.id)
        if not db_intent:
            raise ValueError(f"PaymentIntent with id {intent.id} not found")
        self._apply(db_intent, intent)
        await self.session.flush()
        logger.debug("payment_intent_updated", payment_intent_id=intent.id, status=db_intent.status)
        return intent


class SQLAlchemyChargeRepository(ChargeRepository):
    """扣款仓储的SQLAlchemy实现"""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: ChargeModel) -> Charge:
        return Charge(
            id=model.id,
            merchant_id=model.merchant_id,
            amount=model.amount,
            currency=model.currency,
            status=ChargeStatus(model.status),
            card_last4=model.card_last4,
            card_brand=model.card_brand,
            card_token=model.card_token,
            payment_intent_id=model.payment_intent_id,
            subscription_id=model.subscription_id,
            fraud_score=model.fraud_score,
            fraud_status=model.fraud_status,
            fraud_flags=list(model.fraud_flags or []),
            authorization_status=model.authorization_status,
            authorization_code=model.authorization_code,
            failure_code=model.failure_code,
            failure_message=model.failure_message,
            amount_refunded=model.amount_refunded or 0,
            created_at=model.created_at,
            updated_at=model.updated_at,
        )

    def _to_model(self, entity: Charge) -> ChargeModel:
        return ChargeModel(
            id=entity.id,
            merchant_id=entity.merchant_id,
            amount=entity.amount,
            currency=entity.currency,
            status=entity.status.value,
            card_last4=entity.card_last4,
            card_brand=entity.card_brand,
            card_token=entity.card_token,
            payment_intent_id=entity.payment_intent_id,
            subscription_id=entity.subscription_id,
            fraud_score=entity.fraud_score,
            fraud_status=entity.fraud_status,
            fraud_flags=list(entity.fraud_flags),
            authorization_status=entity.authorization_status,
            authorization_code=entity.authorization_code,
            failure_code=entity.failure_code,
            failure_message=entity.failure_message,
            amount_refunded=entity.amount_refunded,
            created_at=entity.created_at,
            updated_at=entity.updated_at,
        )

    async def create(self, charge: Charge) -> Charge:
        self.session.add(self._to_model(charge))
        await self.session.flush()
        logger.debug("charge_created", charge_id=charge.id, status=charge.status.value)
        return charge

    async def get_by_id(self, charge_id: str) -> Optional[Charge]:
        db_charge = await self.session.get(ChargeModel, charge_id)
        return self._to_entity(db_charge) if db_charge else None

    async def update(self, charge: Charge) -> Charge:
        db_charge = await self.session.get(ChargeModel, charge.id)
        if not db_charge:
            raise ValueError(f"Charge with id {charge.id} not found")
        # amount 不可变，只更新状态与退款累计
        db_charge.status = charge.status.value
        db_charge.amount_refunded = charge.amount_refunded
        db_charge.updated_at = charge.updated_at
        await self.session.flush()
        return charge

    async def list_by_subscription(self, subscription_id: str, limit: int = 100) -> List[Charge]:
        result = await self.session.execute(
            select(ChargeModel)
            .where(ChargeModel.subscription_id == subscription_id)
            .order_by(ChargeModel.created_at.desc())
            .limit(limit)
        )
        return [self._to_entity(c) for c in result.scalars().all()]

    async def count_charges(
        self,
        *,
        merchant_id: str,
        card_last4: str,
        since: Optional[datetime] = None,
        amount_below: Optional[int] = None,
        status: Optional[str] = None,
    ) -> int:
        query = select(func.count(ChargeModel.id)).where(
            ChargeModel.merchant_id == merchant_id,
            ChargeModel.card_last4 == card_last4,
        )
        if since is not None:
            query = query.where(ChargeModel.created_at >= since)
        if amount_below is not None:
            query = query.where(ChargeModel.amount < amount_below)
        if status is not None:
            query = query.where(ChargeModel.status == status)
        result = await self.session.execute(query)
        return result.scalar_one()


class SQLAlchemyRefundRepository(RefundRepository):
    """退款仓储的SQLAlchemy实现"""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: RefundModel) -> Refund:
        return Refund(
            id=model.id,
            charge_id=model.charge_id,
            merchant_id=model.merchant_id,
            amount=model.amount,
            currency=model.currency,
            reason=model.reason,
            status=model.status,
            created_at=model.created_at,
        )

    async def create(self, refund: Refund) -> Refund:
        self.session.add(
            RefundModel(
                id=refund.id,
                charge_id=refund.charge_id,
                merchant_id=refund.merchant_id,
                amount=refund.amount,
                currency=refund.currency,
                reason=refund.reason.value if refund.reason else None,
                status=refund.status,
                created_at=refund.created_at,
            )
        )
        await self.session.flush()
        return refund

    async def list_by_charge(self, charge_id: str) -> List[Refund]:
        result = await self.session.execute(
            select(RefundModel).where(RefundModel.charge_id == charge_id).order_by(RefundModel.created_at)
        )
        return [self._to_entity(r) for r in result.scalars().all()]


class SQLAlchemyCardTokenRepository(CardTokenRepository):
    """卡令牌仓储：consume 使用条件更新保证只能成功一次"""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: CardTokenModel) -> Token:
        return Token(
            id=model.id,
            brand=model.brand,
            last4=model.last4,
            exp_month=model.exp_month,
            exp_year=model.exp_year,
            bin=model.bin or "",
            created_at=ensure_utc(model.created_at),
        )

    async def save(self, token: Token) -> Token:
        self.session.add(
            CardTokenModel(
                id=token.id,
                brand=token.brand,
                bin=token.bin,
                last4=token.last4,
                exp_month=token.exp_month,
                exp_year=token.exp_year,
                created_at=token.created_at,
            )
        )
        await self.session.flush()
        return token

    async def get(self, token_id: str) -> Optional[Token]:
        db_token = await self.session.get(CardTokenModel, token_id)
        return self._to_entity(db_token) if db_token else None

    async def consume(self, token_id: str) -> Optional[Token]:
        result = await self.session.execute(
            update(CardTokenModel)
            .where(CardTokenModel.id == token_id, CardTokenModel.consumed_at.is_(None))
            .values(consumed_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.info("card_token_rejected", token_id=token_id)
            return None
        return await self.get(token_id)
