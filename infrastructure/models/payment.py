"""
支付数据库模型 - SQLAlchemy ORM模型
注意：这是基础设施层的实现细节，不是领域模型
"""
from sqlalchemy import (
    Column, Integer, BigInteger, String, DateTime, Text, JSON,
    Index, ForeignKey
)
from datetime import datetime, timezone

from .base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CardTokenModel(Base):
    """
    卡令牌表

    只保存展示安全的元数据（品牌、BIN、后四位、有效期），从不保存完整卡号与 CVC
    """
    __tablename__ = "card_tokens"

    id = Column(String(64), primary_key=True)
    brand = Column(String(20), nullable=False)
    bin = Column(String(6), nullable=False, default="", comment="卡号前六位")
    last4 = Column(String(4), nullable=False)
    exp_month = Column(Integer, nullable=False)
    exp_year = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    consumed_at = Column(DateTime(timezone=True), nullable=True, comment="令牌被使用的时间，非空即失效")

    def __repr__(self):
        return f"<CardTokenModel(id='{self.id}', brand='{self.brand}', last4='{self.last4}')>"


class PaymentIntentModel(Base):
    """
    支付意图数据库模型

    所有业务规则都在 domain.payment.entity.PaymentIntent 中
    """
    __tablename__ = "payment_intents"

    id = Column(String(64), primary_key=True)
    merchant_id = Column(String(64), nullable=False, index=True, comment="商户ID")
    amount = Column(BigInteger, nullable=False, comment="金额（最小货币单位）")
    currency = Column(String(3), nullable=False, comment="货币代码 ISO-4217 小写")
    status = Column(
        String(32),
        nullable=False,
        index=True,
        comment="requires_payment_method/requires_action/succeeded/canceled"
    )
    client_secret = Column(String(128), nullable=False)
    receipt_email = Column(String(255), nullable=True)
    description = Column(Text, nullable=True)

    card_token = Column(String(64), nullable=True)
    card_last4 = Column(String(4), nullable=True)
    card_brand = Column(String(20), nullable=True)
    fraud_score = Column(Integer, nullable=True)
    fraud_flags = Column(JSON, nullable=True)
    step_up_status = Column(String(20), nullable=True)
    authorization_code = Column(String(64), nullable=True)
    cancellation_reason = Column(String(64), nullable=True)

    # 元数据（使用 extra_metadata 避免与 SQLAlchemy 的 metadata 冲突）
    extra_metadata = Column("metadata", JSON, nullable=True, comment="扩展元数据")

    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False, index=True)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)
    canceled_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_payment_intents_merchant_status", "merchant_id", "status"),
    )

    def __repr__(self):
        return (
            f"<PaymentIntentModel(id='{self.id}', merchant_id='{self.merchant_id}', "
            f"amount={self.amount}, status='{self.status}')>"
        )


class ChargeModel(Base):
    """
    扣款数据库模型

    (merchant_id, card_last4, created_at) 索引服务于风控的时间窗口统计
    """
    __tablename__ = "charges"

    id = Column(String(64), primary_key=True)
    merchant_id = Column(String(64), nullable=False, index=True)
    amount = Column(BigInteger, nullable=False)
    currency = Column(String(3), nullable=False)
    status = Column(String(20), nullable=False, index=True, comment="succeeded/failed/refunded")

    card_last4 = Column(String(4), nullable=True)
    card_brand = Column(String(20), nullable=True)
    card_token = Column(String(64), nullable=True)
    payment_intent_id = Column(
        String(64),
        ForeignKey("payment_intents.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    subscription_id = Column(
        String(64),
        ForeignKey("subscriptions.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    fraud_score = Column(Integer, nullable=True)
    fraud_status = Column(String(20), nullable=True)
    fraud_flags = Column(JSON, nullable=True)
    authorization_status = Column(String(20), nullable=True)
    authorization_code = Column(String(64), nullable=True)
    failure_code = Column(String(64), nullable=True)
    failure_message = Column(Text, nullable=True)

    amount_refunded = Column(BigInteger, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False, index=True)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        Index("ix_charges_fraud_window", "merchant_id", "card_last4", "created_at"),
    )

    def __repr__(self):
        return f"<ChargeModel(id='{self.id}', amount={self.amount}, status='{self.status}')>"


class RefundModel(Base):
    """退款数据库模型"""
    __tablename__ = "refunds"

    id = Column(String(64), primary_key=True)
    charge_id = Column(
        String(64),
        ForeignKey("charges.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    merchant_id = Column(String(64), nullable=False, index=True)
    amount = Column(BigInteger, nullable=False)
    currency = Column(String(3), nullable=False)
    reason = Column(String(32), nullable=True, comment="requested_by_customer/duplicate/fraudulent")
    status = Column(String(20), nullable=False, default="succeeded")
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    def __repr__(self):
        return f"<RefundModel(id='{self.id}', charge_id='{self.charge_id}', amount={self.amount})>"
