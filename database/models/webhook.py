import uuid
from enum import Enum

from sqlalchemy import Column, Text, TIMESTAMP, ForeignKey, Boolean, Integer, Index
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from .base import Base, JsonType, utcnow


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    RETRYING = "retrying"


class Webhook(Base):
    """A user-registered generic HTTP endpoint."""
    __tablename__ = 'webhooks'

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(Text, nullable=False, index=True)
    name = Column(Text, nullable=False, default="Webhook")
    url = Column(Text, nullable=False)
    secret = Column(Text, nullable=True)  # HMAC-SHA256 signing key
    is_active = Column(Boolean, nullable=False, default=True)
    events = Column(JsonType, nullable=False, default=list)  # event types, "*" for all
    headers = Column(JsonType, nullable=False, default=dict)  # custom request headers
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, default=utcnow)

    deliveries = relationship("WebhookDelivery", back_populates="webhook", cascade="all, delete-orphan")


class WebhookDelivery(Base):
    """
    One event sent to one webhook, with its retry state.

    status: pending -> retrying* -> success | failed
    Records are kept after the final attempt for audit.
    """
    __tablename__ = 'webhook_deliveries'

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    webhook_id = Column(UUID(as_uuid=True), ForeignKey('webhooks.id', ondelete='CASCADE'), nullable=False)

    event_type = Column(Text, nullable=False)
    payload = Column(JsonType, nullable=False)

    status = Column(Text, nullable=False, default=DeliveryStatus.PENDING.value)
    status_code = Column(Integer, nullable=True)
    response_body = Column(Text, nullable=True)
    error_message = Column(Text, nullable=True)

    attempt_count = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=5)
    next_retry_at = Column(TIMESTAMP(timezone=True), nullable=True)
    completed_at = Column(TIMESTAMP(timezone=True), nullable=True)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, default=utcnow)

    webhook = relationship("Webhook", back_populates="deliveries")

    __table_args__ = (
        Index('idx_webhook_deliveries_retry', 'status', 'next_retry_at'),
        Index('idx_webhook_deliveries_webhook', 'webhook_id', 'created_at'),
    )
