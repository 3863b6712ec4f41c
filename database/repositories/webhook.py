import logging
from datetime import datetime
from typing import List, Optional, Any, Dict

from sqlalchemy import select, update, delete, or_, and_
from sqlalchemy.orm import joinedload

from core.utils import as_uuid
from database.models import Webhook, WebhookDelivery, DeliveryStatus
from database.repositories.base import BaseRepository

logger = logging.getLogger(__name__)

OPEN_STATUSES = (DeliveryStatus.PENDING.value, DeliveryStatus.RETRYING.value)
TERMINAL_STATUSES = (DeliveryStatus.SUCCESS.value, DeliveryStatus.FAILED.value)


class WebhookRepository(BaseRepository):
    def create_webhook(
        self,
        user_id: str,
        url: str,
        name: str = "Webhook",
        secret: Optional[str] = None,
        events: Optional[List[str]] = None,
        headers: Optional[Dict[str, str]] = None,
        is_active: bool = True
    ) -> Webhook:
        webhook = Webhook(
            user_id=user_id,
            url=url,
            name=name,
            secret=secret,
            events=list(events or ["*"]),
            headers=dict(headers or {}),
            is_active=is_active,
        )
        self.db.add(webhook)
        self.db.flush()
        return webhook

    def get_webhook(self, webhook_id: Any, user_id: Optional[str] = None) -> Optional[Webhook]:
        stmt = select(Webhook).where(Webhook.id == as_uuid(webhook_id))
        if user_id is not None:
            stmt = stmt.where(Webhook.user_id == user_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def get_subscribed_webhooks(self, user_id: str, event_type: str) -> List[Webhook]:
        stmt = select(Webhook).where(
            Webhook.user_id == user_id,
            Webhook.is_active.is_(True),
        ).order_by(Webhook.created_at)
        webhooks = self.db.execute(stmt).scalars().all()

        # events is a JSON list, filtered here to stay dialect-neutral
        return [
            w for w in webhooks
            if w.events and (event_type in w.events or "*" in w.events)
        ]

    def create_delivery(
        self,
        webhook_id: Any,
        event_type: str,
        payload: Dict[str, Any],
        max_attempts: int = 5
    ) -> WebhookDelivery:
        delivery = WebhookDelivery(
            webhook_id=as_uuid(webhook_id),
            event_type=event_type,
            payload=payload,
            status=DeliveryStatus.PENDING.value,
            attempt_count=0,
            max_attempts=max_attempts,
        )
        self.db.add(delivery)
        self.db.flush()
        return delivery

    def get_delivery(self, delivery_id: Any) -> Optional[WebhookDelivery]:
        stmt = (
            select(WebhookDelivery)
            .options(joinedload(WebhookDelivery.webhook))
            .where(WebhookDelivery.id == as_uuid(delivery_id))
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def list_deliveries(self, webhook_id: Any, limit: int = 50) -> List[WebhookDelivery]:
        stmt = (
            select(WebhookDelivery)
            .where(WebhookDelivery.webhook_id == as_uuid(webhook_id))
            .order_by(WebhookDelivery.created_at.desc())
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars().all())

    def claim_attempt(
        self,
        delivery_id: Any,
        expected_attempt_count: int,
        now: datetime,
        lease_until: datetime
    ) -> bool:
        """
        Reserve the next attempt: attempt_count goes from expected to
        expected + 1 only if nobody else got there first and the delivery is
        pending or its next_retry_at has passed.

        The delivery moves to retrying with next_retry_at=lease_until, so an
        attempt whose worker dies before writing an outcome is swept again
        once the lease expires.
        """
        stmt = (
            update(WebhookDelivery)
            .where(
                WebhookDelivery.id == as_uuid(delivery_id),
                WebhookDelivery.attempt_count == expected_attempt_count,
                or_(
                    WebhookDelivery.status == DeliveryStatus.PENDING.value,
                    and_(
                        WebhookDelivery.status == DeliveryStatus.RETRYING.value,
                        WebhookDelivery.next_retry_at <= now,
                    ),
                ),
            )
            .values(
                attempt_count=expected_attempt_count + 1,
                status=DeliveryStatus.RETRYING.value,
                next_retry_at=lease_until,
            )
        )
        return self._guarded_write(stmt) == 1

    def record_attempt_outcome(
        self,
        delivery_id: Any,
        attempt_count: int,
        **values: Any
    ) -> bool:
        """Write the outcome of the attempt numbered attempt_count."""
        stmt = (
            update(WebhookDelivery)
            .where(
                WebhookDelivery.id == as_uuid(delivery_id),
                WebhookDelivery.attempt_count == attempt_count,
                WebhookDelivery.status.in_(OPEN_STATUSES),
            )
            .values(**values)
        )
        return self._guarded_write(stmt) == 1

    def mark_failed(self, delivery_id: Any, now: datetime, error_message: Optional[str] = None) -> bool:
        values: Dict[str, Any] = {
            'status': DeliveryStatus.FAILED.value,
            'completed_at': now,
            'next_retry_at': None,
        }
        if error_message is not None:
            values['error_message'] = error_message

        stmt = (
            update(WebhookDelivery)
            .where(
                WebhookDelivery.id == as_uuid(delivery_id),
                WebhookDelivery.status.in_(OPEN_STATUSES),
            )
            .values(**values)
        )
        return self._guarded_write(stmt) == 1

    def get_due_retry_ids(self, now: datetime, limit: int = 100) -> List[Any]:
        stmt = (
            select(WebhookDelivery.id)
            .where(
                WebhookDelivery.status == DeliveryStatus.RETRYING.value,
                WebhookDelivery.next_retry_at <= now,
            )
            .order_by(WebhookDelivery.next_retry_at)
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars().all())

    def delete_completed_before(self, cutoff: datetime) -> int:
        stmt = (
            delete(WebhookDelivery)
            .where(
                WebhookDelivery.created_at < cutoff,
                WebhookDelivery.status.in_(TERMINAL_STATUSES),
            )
        )
        deleted = self._guarded_write(stmt)
        if deleted:
            logger.info(f"Deleted {deleted} completed webhook deliveries older than {cutoff.isoformat()}")
        return deleted
