import logging
from typing import List, Optional, Any

from sqlalchemy import select
from sqlalchemy.orm import joinedload

from core.utils import as_uuid
from database.models import Alert, Monitor, AlertChannel, AlertFrequency
from database.repositories.base import BaseRepository

logger = logging.getLogger(__name__)


class AlertRepository(BaseRepository):
    def get_alert(self, alert_id: Any) -> Optional[Alert]:
        stmt = (
            select(Alert)
            .options(joinedload(Alert.monitor))
            .where(Alert.id == as_uuid(alert_id))
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def get_monitor(self, monitor_id: Any) -> Optional[Monitor]:
        stmt = select(Monitor).where(Monitor.id == as_uuid(monitor_id))
        return self.db.execute(stmt).scalar_one_or_none()

    def list_active_alerts(
        self,
        frequency: Optional[str] = None,
        monitor_id: Optional[Any] = None
    ) -> List[Alert]:
        stmt = (
            select(Alert)
            .join(Monitor, Alert.monitor_id == Monitor.id)
            .where(Alert.is_active.is_(True), Monitor.is_active.is_(True))
        )

        if frequency is not None:
            stmt = stmt.where(Alert.frequency == AlertFrequency(frequency).value)
        if monitor_id is not None:
            stmt = stmt.where(Alert.monitor_id == as_uuid(monitor_id))

        stmt = stmt.order_by(Alert.created_at)
        return list(self.db.execute(stmt).scalars().all())

    def create_monitor(self, user_id: str, name: str, is_active: bool = True) -> Monitor:
        monitor = Monitor(user_id=user_id, name=name, is_active=is_active)
        self.db.add(monitor)
        self.db.flush()
        return monitor

    def create_alert(
        self,
        monitor_id: Any,
        channel: str,
        frequency: str,
        destination: str,
        destination_type: Optional[str] = None,
        is_active: bool = True
    ) -> Alert:
        alert = Alert(
            monitor_id=as_uuid(monitor_id),
            channel=AlertChannel(channel).value,
            frequency=AlertFrequency(frequency).value,
            destination=destination,
            destination_type=destination_type,
            is_active=is_active,
        )
        self.db.add(alert)
        self.db.flush()
        logger.info(f"Created {alert.channel}/{alert.frequency} alert {alert.id} for monitor {monitor_id}")
        return alert
