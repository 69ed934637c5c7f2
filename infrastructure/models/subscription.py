"""
订阅数据库模型
"""
from sqlalchemy import Column, Integer, BigInteger, String, DateTime, Text, JSON, Boolean, Index
from datetime import datetime, timezone

from .base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SubscriptionModel(Base):
    __tablename__ = "subscriptions"

    id = Column(String(64), primary_key=True)
    merchant_id = Column(String(64), nullable=False, index=True)
    customer_id = Column(String(64), nullable=False, index=True)

    # 价格
    price_id = Column(String(64), nullable=False)
    unit_amount = Column(BigInteger, nullable=False)
    currency = Column(String(3), nullable=False)
    interval = Column(String(10), nullable=False, comment="day/week/month/year")
    interval_count = Column(Integer, nullable=False, default=1)
    quantity = Column(Integer, nullable=False, default=1)

    status = Column(String(20), nullable=False, index=True, comment="active/paused/past_due/cancelled")
    current_period_start = Column(DateTime(timezone=True), nullable=False)
    current_period_end = Column(DateTime(timezone=True), nullable=False)
    next_billing_date = Column(DateTime(timezone=True), nullable=False, index=True)
    trial_start = Column(DateTime(timezone=True), nullable=True)
    trial_end = Column(DateTime(timezone=True), nullable=True)

    failure_count = Column(Integer, nullable=False, default=0)
    last_failure_at = Column(DateTime(timezone=True), nullable=True)

    # 支付方式
    card_token = Column(String(64), nullable=True)
    card_last4 = Column(String(4), nullable=True)
    card_brand = Column(String(20), nullable=True)

    cancel_at_period_end = Column(Boolean, nullable=False, default=False)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    cancellation_reason = Column(Text, nullable=True)

    extra_metadata = Column("metadata", JSON, nullable=True, comment="扩展元数据")
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        # 计费调度按 status + next_billing_date 扫描
        Index("ix_subscriptions_due", "status", "next_billing_date"),
        Index("ix_subscriptions_customer_price", "merchant_id", "customer_id", "price_id"),
    )

    def __repr__(self):
        return f"<SubscriptionModel(id='{self.id}', status='{self.status}', next_billing_date={self.next_billing_date})>"
