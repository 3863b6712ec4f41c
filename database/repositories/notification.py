import logging
from typing import List, Optional, Any, Dict

from sqlalchemy import select

from core.utils import as_uuid
from database.models import AlertDeliveryLog, InAppNotification, UserIntegration
from database.repositories.base import BaseRepository

logger = logging.getLogger(__name__)


class NotificationRepository(BaseRepository):
    def record_dispatch(
        self,
        alert_id: Optional[Any],
        monitor_id: Optional[Any],
        channel: Optional[str],
        status: str,
        success: bool,
        reason: Optional[str] = None,
        error_message: Optional[str] = None,
        destination_type: Optional[str] = None,
        result_ids: Optional[List[Any]] = None
    ) -> AlertDeliveryLog:
        ids = [str(r) for r in (result_ids or [])]
        entry = AlertDeliveryLog(
            alert_id=as_uuid(alert_id),
            monitor_id=as_uuid(monitor_id),
            channel=channel,
            destination_type=destination_type,
            status=status,
            success=success,
            reason=reason,
            error_message=error_message,
            results_count=len(ids),
            result_ids=ids,
        )
        self.db.add(entry)
        self.db.flush()
        return entry

    def list_dispatch_log(self, alert_id: Any, limit: int = 50) -> List[AlertDeliveryLog]:
        stmt = (
            select(AlertDeliveryLog)
            .where(AlertDeliveryLog.alert_id == as_uuid(alert_id))
            .order_by(AlertDeliveryLog.created_at.desc())
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars().all())

    def create_in_app_notification(
        self,
        user_id: str,
        title: str,
        message: str,
        monitor_id: Optional[Any] = None,
        link: Optional[str] = None,
        result_ids: Optional[List[Any]] = None
    ) -> InAppNotification:
        notification = InAppNotification(
            user_id=user_id,
            monitor_id=as_uuid(monitor_id),
            title=title,
            message=message,
            link=link,
            result_ids=[str(r) for r in (result_ids or [])],
        )
        self.db.add(notification)
        self.db.flush()
        return notification


class IntegrationRepository(BaseRepository):
    def get_integration(self, user_id: str, provider: str) -> Optional[UserIntegration]:
        stmt = select(UserIntegration).where(
            UserIntegration.user_id == user_id,
            UserIntegration.provider == provider,
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def is_connected(self, user_id: str, provider: str) -> bool:
        integration = self.get_integration(user_id, provider)
        return bool(integration and integration.connected)

    def upsert_integration(
        self,
        user_id: str,
        provider: str,
        connected: bool,
        data: Optional[Dict[str, Any]] = None
    ) -> UserIntegration:
        integration = self.get_integration(user_id, provider)
        if integration is None:
            integration = UserIntegration(user_id=user_id, provider=provider)
            self.db.add(integration)

        integration.connected = connected
        integration.data = dict(data or {})
        self.db.flush()
        return integration
