#!/usr/bin/env python3
"""
Notification Service

Entry point used by the scheduler and the ingestion pipeline:
- validates and creates alerts and webhooks (destination resolved once)
- turns "new results" and "digest time" into alert dispatch units of work
- fans events out to user webhooks and drives their retries
- runs units of work on the Redis Queue, or inline in sync mode

Usage:
    from notification.service import NotificationService

    service = NotificationService(config.notifications)
    service.notify_new_results(monitor_id, result_ids)
    service.send_digests("daily")
"""

import logging
from datetime import datetime
from typing import Optional, Dict, Any, List, Callable, Iterable

from redis import Redis
from redis.exceptions import LockError, RedisError
from redis.lock import Lock
from rq import Queue

from core.config_loader import NotificationConfig
from database.models import AlertChannel, AlertFrequency, utcnow
from database.uow import alert_uow
from notification.delivery import WebhookDeliveryTracker
from notification.destination import Destination, validate_destination_url
from notification.dispatcher import AlertDispatcher, LocalAlertLocks
from notification.formatter import NotificationPayload, NotificationResult, PayloadFormatter

logger = logging.getLogger(__name__)

QUEUE_NAME = 'notifications'
RESULTS_NEW_EVENT = "results.new"
URL_CHANNELS = (AlertChannel.SLACK.value, AlertChannel.DISCORD.value, AlertChannel.WEBHOOK.value)


class AlertLock(Lock):
    """Redis lock whose release tolerates expiry during a long dispatch."""

    def release(self) -> None:
        try:
            super().release()
        except LockError as e:
            logger.warning(f"Lock {self.name} was lost before release (timeout {self.timeout}s): {e}")


class RedisAlertLocks:
    """Per-alert locks shared by every worker connected to the same Redis."""

    LOCK_PREFIX = "notification:alert-lock:"

    def __init__(self, redis_conn: Redis, timeout_seconds: int = 300):
        self.redis_conn = redis_conn
        self.timeout_seconds = timeout_seconds

    def __call__(self, alert_id: Any):
        return self.redis_conn.lock(
            f"{self.LOCK_PREFIX}{alert_id}", timeout=self.timeout_seconds, lock_class=AlertLock
        )


class NotificationService:
    """
    Coordinates alert dispatch and webhook delivery.

    In async mode every unit of work is an RQ job on the 'notifications'
    queue; otherwise it runs inline in the calling process.
    """

    def __init__(
        self,
        config: NotificationConfig,
        uow_factory: Callable = alert_uow,
        redis_conn: Optional[Redis] = None,
        dispatcher: Optional[AlertDispatcher] = None,
        tracker: Optional[WebhookDeliveryTracker] = None,
        listeners: Optional[Iterable[Callable[[Dict[str, Any]], None]]] = None
    ):
        """
        Initialize notification service.

        Args:
            config: Notification configuration, resolved once per process
            uow_factory: Context manager factory yielding an AlertStore
            redis_conn: Existing Redis connection (otherwise built from config)
            dispatcher: Pre-built dispatcher (tests)
            tracker: Pre-built webhook delivery tracker (tests)
            listeners: Delivery-outcome event listeners
        """
        self.config = config
        self.uow_factory = uow_factory

        if not config.use_async_queue:
            # Explicitly disabled via config - force sync mode
            logger.info("Async queue disabled via config. Using sync mode.")
            self.redis_conn = None
            self.queue = None
            self.async_mode = False
        else:
            try:
                self.redis_conn = redis_conn or Redis.from_url(config.redis_url or 'redis://localhost:6379/0')
                # Validate connection with ping before using
                self.redis_conn.ping()
                self.queue = Queue(QUEUE_NAME, connection=self.redis_conn)
                self.async_mode = True
                logger.info("Notification service connected to Redis")
            except RedisError as e:
                logger.error(f"Redis connection failed: {e}. Falling back to sync mode.")
                self.redis_conn = None
                self.queue = None
                self.async_mode = False

        if self.async_mode:
            lock_provider = RedisAlertLocks(self.redis_conn, config.dispatch_lock_timeout_seconds)
        else:
            lock_provider = LocalAlertLocks()

        self.dispatcher = dispatcher or AlertDispatcher(
            config,
            uow_factory=uow_factory,
            lock_provider=lock_provider,
            listeners=listeners,
        )
        self.tracker = tracker or WebhookDeliveryTracker(
            config.webhooks,
            uow_factory=uow_factory,
            dry_run=config.dry_run,
        )

    # --- Creation (destination validated and resolved once) ---

    def create_alert(
        self,
        monitor_id: Any,
        channel: str,
        frequency: str,
        destination: Optional[str] = None,
        is_active: bool = True
    ) -> str:
        """
        Create an alert for a monitor.

        Raises:
            ValueError: unknown channel/frequency, missing monitor, or an
                invalid destination for the channel
        """
        channel = AlertChannel(channel).value
        frequency = AlertFrequency(frequency).value
        destination = (destination or "").strip()
        destination_type = None

        if channel == AlertChannel.EMAIL.value:
            if '@' not in destination:
                raise ValueError("A valid email address is required for email alerts")
        elif channel == AlertChannel.DISCORD.value and destination and not destination.startswith(('http://', 'https://')):
            # Discord channel ID, delivered through the bot
            destination_type = 'discord_bot'
        elif channel in URL_CHANNELS:
            resolved = Destination.from_url(destination)
            destination, destination_type = resolved.url, resolved.type.value

        with self.uow_factory() as store:
            monitor = store.alerts.get_monitor(monitor_id)
            if monitor is None:
                raise ValueError(f"Monitor {monitor_id} not found")
            if channel == AlertChannel.IN_APP.value and not destination:
                destination = monitor.user_id

            alert = store.alerts.create_alert(
                monitor_id=monitor.id,
                channel=channel,
                frequency=frequency,
                destination=destination,
                destination_type=destination_type,
                is_active=is_active,
            )
            return str(alert.id)

    def create_webhook(
        self,
        user_id: str,
        url: str,
        name: str = "Webhook",
        secret: Optional[str] = None,
        events: Optional[List[str]] = None,
        headers: Optional[Dict[str, str]] = None
    ) -> str:
        url = validate_destination_url(url)
        with self.uow_factory() as store:
            webhook = store.webhooks.create_webhook(
                user_id=user_id,
                url=url,
                name=name,
                secret=secret,
                events=events,
                headers=headers,
            )
            return str(webhook.id)

    # --- Triggers ---

    def notify_new_results(self, monitor_id: Any, result_ids: List[Any]) -> Dict[str, List[Any]]:
        """
        React to newly ingested results of a monitor.

        Dispatches every active instant alert (restricted to result_ids) and
        publishes a results.new event to the owner's webhooks.

        Returns:
            {'alerts': [job id or outcome event], 'deliveries': [delivery id]}
        """
        if not self.config.enabled:
            logger.info("Notifications disabled, ignoring new results")
            return {'alerts': [], 'deliveries': []}

        result_ids = [str(r) for r in result_ids]
        cycle_at = utcnow()

        with self.uow_factory() as store:
            monitor = store.alerts.get_monitor(monitor_id)
            if monitor is None or not monitor.is_active:
                logger.info(f"Monitor {monitor_id} missing or inactive, skipping notifications")
                return {'alerts': [], 'deliveries': []}

            alert_ids = [
                str(a.id) for a in store.alerts.list_active_alerts(
                    frequency=AlertFrequency.INSTANT.value, monitor_id=monitor.id)
            ]
            records = store.results.get_candidate_results(monitor.id, None, cycle_at, result_ids) if result_ids else []
            user_id = monitor.user_id
            event_data = PayloadFormatter.to_generic(NotificationPayload(
                monitor_name=monitor.name,
                results=[NotificationResult.from_record(r) for r in records],
                dashboard_url=self.config.monitor_dashboard_url(monitor.id),
            ))

        alerts = [self.dispatch_alert(alert_id, result_ids, now=cycle_at) for alert_id in alert_ids]

        deliveries: List[Any] = []
        if records:
            event_data['monitorId'] = str(monitor_id)
            deliveries = self.publish_event(user_id, RESULTS_NEW_EVENT, event_data)

        return {'alerts': alerts, 'deliveries': deliveries}

    def send_digests(self, frequency: str, now: Optional[datetime] = None) -> List[Any]:
        """Dispatch every active alert of a digest frequency."""
        frequency = AlertFrequency(frequency).value
        if frequency == AlertFrequency.INSTANT.value:
            raise ValueError("Instant alerts are dispatched on new results, not as digests")

        with self.uow_factory() as store:
            alert_ids = [str(a.id) for a in store.alerts.list_active_alerts(frequency=frequency)]

        now = now or utcnow()
        logger.info(f"Sending {frequency} digests for {len(alert_ids)} alert(s)")
        return [self.dispatch_alert(alert_id, now=now) for alert_id in alert_ids]

    def dispatch_alert(
        self,
        alert_id: Any,
        result_ids: Optional[List[Any]] = None,
        now: Optional[datetime] = None
    ) -> Any:
        """
        Queue (async) or run (sync) one alert evaluation.

        Returns:
            RQ job id in async mode, the outcome event dict in sync mode
        """
        alert_id = str(alert_id)
        if self.async_mode:
            job = self.queue.enqueue(
                process_alert_dispatch_task,
                alert_id,
                result_ids,
                now.isoformat() if now else None,
                job_timeout='5m',
                result_ttl=86400,
            )
            logger.info(f"Queued dispatch of alert {alert_id} as job {job.id}")
            return job.id

        return self.dispatcher.dispatch(alert_id, result_ids=result_ids, now=now).to_event()

    def publish_event(self, user_id: str, event_type: str, data: Dict[str, Any]) -> List[Any]:
        """Create deliveries for the user's subscribed webhooks and attempt each once."""
        delivery_ids = self.tracker.publish_event(user_id, event_type, data)
        for delivery_id in delivery_ids:
            self.deliver_webhook(delivery_id)
        return delivery_ids

    def deliver_webhook(self, delivery_id: Any) -> Any:
        """Queue (async) or run (sync) the next attempt of a delivery."""
        delivery_id = str(delivery_id)
        if self.async_mode:
            job = self.queue.enqueue(
                process_webhook_delivery_task,
                delivery_id,
                job_timeout='2m',
                result_ttl=86400,
            )
            return job.id

        return self.tracker.attempt_delivery(delivery_id)

    def sweep_webhook_retries(self, now: Optional[datetime] = None) -> int:
        """Re-attempt every delivery whose retry time has come."""
        delivery_ids = self.tracker.due_retries(now)
        for delivery_id in delivery_ids:
            self.deliver_webhook(delivery_id)
        return len(delivery_ids)

    def cleanup_deliveries(self, now: Optional[datetime] = None) -> int:
        return self.tracker.cleanup(now)

    def send_test_webhook(self, webhook_id: Any, user_id: Optional[str] = None) -> Dict[str, Any]:
        return self.tracker.send_test(webhook_id, user_id=user_id)

    # --- Result interaction tracking ---

    def mark_result_viewed(self, result_id: Any) -> bool:
        with self.uow_factory() as store:
            return store.results.mark_viewed(result_id, utcnow())

    def mark_result_clicked(self, result_id: Any) -> bool:
        with self.uow_factory() as store:
            return store.results.mark_clicked(result_id, utcnow())

    def get_queue_status(self) -> Dict[str, Any]:
        """Get queue status."""
        if not self.async_mode:
            return {'status': 'sync_mode', 'queue_length': 0}

        try:
            return {
                'status': 'active',
                'queue_length': len(self.queue),
                'redis_connected': self.redis_conn.ping()
            }
        except RedisError as e:
            return {'status': 'error', 'error': str(e)}


# Worker tasks - must be at module level for RQ

def process_alert_dispatch_task(
    alert_id: str,
    result_ids: Optional[List[str]] = None,
    now: Optional[str] = None
) -> Dict[str, Any]:
    """Evaluate one alert inside an RQ worker."""
    from core.app_context import get_app_context

    service = get_app_context().notification_service
    evaluated_at = datetime.fromisoformat(now) if now else None
    logger.info(f"Processing dispatch of alert {alert_id}")
    return service.dispatcher.dispatch(alert_id, result_ids=result_ids, now=evaluated_at).to_event()


def process_webhook_delivery_task(delivery_id: str) -> Dict[str, Any]:
    """Perform the next attempt of one webhook delivery inside an RQ worker."""
    from core.app_context import get_app_context

    service = get_app_context().notification_service
    attempt = service.tracker.attempt_delivery(delivery_id)
    return {
        'deliveryId': attempt.delivery_id,
        'success': attempt.success,
        'status': attempt.status,
        'reason': attempt.reason,
        'statusCode': attempt.status_code,
        'error': attempt.error,
        'attemptCount': attempt.attempt_count,
    }
