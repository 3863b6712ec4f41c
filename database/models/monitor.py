import uuid
from enum import Enum

from sqlalchemy import Column, Text, TIMESTAMP, ForeignKey, Boolean, Float, Index
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from .base import Base, utcnow


class AlertChannel(str, Enum):
    EMAIL = "email"
    SLACK = "slack"
    DISCORD = "discord"
    WEBHOOK = "webhook"
    IN_APP = "in_app"


class AlertFrequency(str, Enum):
    INSTANT = "instant"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class Monitor(Base):
    """A user's keyword/topic tracker. Owns alerts and results."""
    __tablename__ = 'monitors'

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(Text, nullable=False, index=True)
    name = Column(Text, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, default=utcnow)

    alerts = relationship("Alert", back_populates="monitor", cascade="all, delete-orphan")
    results = relationship("Result", back_populates="monitor", cascade="all, delete-orphan")


class Alert(Base):
    """
    Notification rule bound to exactly one monitor.

    channel: email | slack | discord | webhook | in_app
    frequency: instant | daily | weekly | monthly
    destination: email address, webhook URL or Discord channel ID
    destination_type: slack | discord | generic, resolved once at creation
        for URL destinations
    """
    __tablename__ = 'alerts'

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    monitor_id = Column(UUID(as_uuid=True), ForeignKey('monitors.id', ondelete='CASCADE'), nullable=False)
    channel = Column(Text, nullable=False)
    frequency = Column(Text, nullable=False)
    destination = Column(Text, nullable=False)
    destination_type = Column(Text, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, default=utcnow)

    monitor = relationship("Monitor", back_populates="alerts")

    __table_args__ = (
        Index('idx_alerts_monitor', 'monitor_id'),
        Index('idx_alerts_active_frequency', 'is_active', 'frequency'),
    )


class Result(Base):
    """
    One discovered item belonging to a monitor.

    Classification fields (sentiment, conversation_category, ai_summary) are
    filled by the analysis pipeline; this package only stamps the dedup
    marker and interaction flags.
    """
    __tablename__ = 'results'

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    monitor_id = Column(UUID(as_uuid=True), ForeignKey('monitors.id', ondelete='CASCADE'), nullable=False)

    platform = Column(Text, nullable=False)
    source_url = Column(Text, nullable=False)
    title = Column(Text, nullable=False)
    content = Column(Text)
    author = Column(Text)
    posted_at = Column(TIMESTAMP(timezone=True))

    sentiment = Column(Text)  # positive | negative | neutral
    conversation_category = Column(Text)  # solution_request | money_talk | pain_point | ...
    ai_summary = Column(Text)
    engagement_score = Column(Float)

    # Dedup marker, monotonically non-decreasing
    last_sent_in_digest_at = Column(TIMESTAMP(timezone=True), nullable=True)

    # Interaction tracking
    is_viewed = Column(Boolean, nullable=False, default=False)
    viewed_at = Column(TIMESTAMP(timezone=True))
    is_clicked = Column(Boolean, nullable=False, default=False)
    clicked_at = Column(TIMESTAMP(timezone=True))
    is_hidden = Column(Boolean, nullable=False, default=False)

    created_at = Column(TIMESTAMP(timezone=True), nullable=False, default=utcnow)

    monitor = relationship("Monitor", back_populates="results")

    __table_args__ = (
        Index('idx_results_monitor_created', 'monitor_id', 'created_at'),
        Index('idx_results_digest', 'monitor_id', 'last_sent_in_digest_at'),
    )
