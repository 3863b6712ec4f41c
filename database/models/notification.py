import uuid

from sqlalchemy import Column, Text, TIMESTAMP, ForeignKey, Boolean, Integer, Index, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID

from .base import Base, JsonType, utcnow


class AlertDeliveryLog(Base):
    """
    One row per alert evaluation that reached a channel decision.

    Operator-facing history of what was sent (or skipped) and why.
    """
    __tablename__ = 'alert_delivery_log'

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    alert_id = Column(UUID(as_uuid=True), ForeignKey('alerts.id', ondelete='CASCADE'), nullable=True)
    monitor_id = Column(UUID(as_uuid=True), nullable=True, index=True)

    channel = Column(Text, nullable=True)
    destination_type = Column(Text, nullable=True)
    status = Column(Text, nullable=False)  # dispatched | skipped
    success = Column(Boolean, nullable=False, default=False)
    reason = Column(Text, nullable=True)
    error_message = Column(Text, nullable=True)

    results_count = Column(Integer, nullable=False, default=0)
    result_ids = Column(JsonType, nullable=False, default=list)

    created_at = Column(TIMESTAMP(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index('idx_alert_delivery_log_alert', 'alert_id', 'created_at'),
    )


class InAppNotification(Base):
    """Notification shown in the dashboard bell for the monitor owner."""
    __tablename__ = 'notifications'

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(Text, nullable=False)
    monitor_id = Column(UUID(as_uuid=True), ForeignKey('monitors.id', ondelete='CASCADE'), nullable=True)
    title = Column(Text, nullable=False)
    message = Column(Text, nullable=False)
    link = Column(Text, nullable=True)
    result_ids = Column(JsonType, nullable=False, default=list)
    is_read = Column(Boolean, nullable=False, default=False)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index('idx_notifications_user', 'user_id', 'created_at'),
    )


class UserIntegration(Base):
    """Per-user third-party connection state (e.g. Discord bot install)."""
    __tablename__ = 'user_integrations'

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(Text, nullable=False)
    provider = Column(Text, nullable=False)  # discord | slack
    connected = Column(Boolean, nullable=False, default=False)
    data = Column(JsonType, nullable=False, default=dict)
    updated_at = Column(TIMESTAMP(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint('user_id', 'provider', name='uq_user_integration_provider'),
    )
