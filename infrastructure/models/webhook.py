"""
Webhook 数据库模型
"""
from sqlalchemy import Column, Integer, BigInteger, String, DateTime, Text, JSON, Boolean, Index, ForeignKey
from datetime import datetime, timezone

from .base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WebhookEndpointModel(Base):
    __tablename__ = "webhook_endpoints"

    id = Column(String(64), primary_key=True)
    merchant_id = Column(String(64), nullable=False, index=True)
    url = Column(String(2048), nullable=False)
    secret = Column(String(128), nullable=False, comment="签名密钥 whsec_...")
    events = Column(JSON, nullable=False, comment="订阅的事件类型列表")
    description = Column(Text, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True, index=True)
    failure_count = Column(Integer, nullable=False, default=0)
    last_failure_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)

    def __repr__(self):
        return f"<WebhookEndpointModel(id='{self.id}', url='{self.url}', is_active={self.is_active})>"


class WebhookEventModel(Base):
    __tablename__ = "webhook_events"

    id = Column(String(64), primary_key=True)
    merchant_id = Column(String(64), nullable=False, index=True)
    type = Column(String(64), nullable=False, index=True)
    data = Column(JSON, nullable=False)
    created = Column(BigInteger, nullable=False, comment="unix 秒")
    status = Column(String(20), nullable=False, default="pending", comment="pending/retrying/sent/failed")
    attempt_count = Column(Integer, nullable=False, default=0)
    next_retry_at = Column(DateTime(timezone=True), nullable=True)
    last_attempt_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        # 重试扫描
        Index("ix_webhook_events_due", "status", "next_retry_at"),
    )

    def __repr__(self):
        return f"<WebhookEventModel(id='{self.id}', type='{self.type}', status='{self.status}')>"


class WebhookDeliveryModel(Base):
    __tablename__ = "webhook_deliveries"

    id = Column(String(64), primary_key=True)
    event_id = Column(
        String(64),
        ForeignKey("webhook_events.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    endpoint_id = Column(
        String(64),
        ForeignKey("webhook_endpoints.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    attempt = Column(Integer, nullable=False)
    success = Column(Boolean, nullable=False)
    status_code = Column(Integer, nullable=True, comment="超时/网络错误时为空")
    duration_ms = Column(Integer, nullable=False, default=0)
    error = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False, index=True)

    def __repr__(self):
        return (
            f"<WebhookDeliveryModel(id='{self.id}', event_id='{self.event_id}', "
            f"endpoint_id='{self.endpoint_id}', success={self.success})>"
        )
