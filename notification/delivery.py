#!/usr/bin/env python3
"""
Webhook Delivery Tracker

Drives delivery of events to user-registered webhooks:

    pending -> retrying* -> success | failed

Every attempt is claimed first with a conditional update on
(id, attempt_count), then the HTTP call runs outside any transaction, then
the outcome is written keyed by the claimed attempt number. Two workers
can therefore never both perform attempt n of the same delivery.

A retrying delivery is only claimed once its next_retry_at has passed.
The claim itself moves the delivery to retrying with a short lease, so an
attempt abandoned by a dead worker comes back through the sweep.

The tracker is passive between attempts: an external scheduler calls
due_retries() and hands the ids back to attempt_delivery().

Usage:
    from notification.delivery import WebhookDeliveryTracker

    tracker = WebhookDeliveryTracker(config.notifications.webhooks)
    for delivery_id in tracker.publish_event(user_id, "results.new", data):
        tracker.attempt_delivery(delivery_id)
"""

import hashlib
import hmac
import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, List, Any, Dict, Callable

import requests

from core.config_loader import WebhookDeliveryConfig
from core.utils import ensure_utc
from database.models import DeliveryStatus, utcnow
from database.uow import alert_uow
from notification.destination import safe_url_for_log

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Webhook-Signature"
TEST_EVENT_TYPE = "test"
TEST_RESPONSE_BODY_LIMIT = 500


def sign_payload(secret: str, body: str) -> str:
    """Hex HMAC-SHA256 of the raw request body."""
    return hmac.new(secret.encode('utf-8'), body.encode('utf-8'), hashlib.sha256).hexdigest()


def serialize_payload(payload: Dict[str, Any]) -> str:
    """Compact JSON; the exact bytes that are signed and sent."""
    return json.dumps(payload, separators=(',', ':'), default=str)


def build_event_payload(event_type: str, data: Dict[str, Any], now: datetime) -> Dict[str, Any]:
    return {
        'eventType': event_type,
        'data': data,
        'timestamp': now.isoformat(),
    }


@dataclass
class DeliveryAttempt:
    """Outcome of one attempt_delivery() call."""
    delivery_id: str
    success: bool
    status: Optional[str] = None
    reason: Optional[str] = None
    status_code: Optional[int] = None
    error: Optional[str] = None
    attempt_count: Optional[int] = None
    next_retry_at: Optional[datetime] = None

    @property
    def will_retry(self) -> bool:
        return self.status == DeliveryStatus.RETRYING.value


class WebhookDeliveryTracker:
    def __init__(
        self,
        config: WebhookDeliveryConfig,
        uow_factory: Callable = alert_uow,
        dry_run: bool = False
    ):
        self.config = config
        self.uow_factory = uow_factory
        self.dry_run = dry_run

    def compute_next_retry_at(self, attempt_count: int, now: datetime) -> datetime:
        """Delay for attempt n is retry_delays_minutes[min(n - 1, len - 1)]."""
        delays = self.config.retry_delays_minutes
        index = max(0, min(attempt_count - 1, len(delays) - 1))
        return now + timedelta(minutes=delays[index])

    def publish_event(
        self,
        user_id: str,
        event_type: str,
        data: Dict[str, Any],
        now: Optional[datetime] = None
    ) -> List[str]:
        """
        Create one pending delivery per active webhook of the user subscribed
        to event_type (or "*").

        Returns:
            Ids of the created deliveries
        """
        now = now or utcnow()
        payload = build_event_payload(event_type, data, now)

        with self.uow_factory() as store:
            webhooks = store.webhooks.get_subscribed_webhooks(user_id, event_type)
            delivery_ids = [
                str(store.webhooks.create_delivery(
                    webhook_id=webhook.id,
                    event_type=event_type,
                    payload=payload,
                    max_attempts=self.config.max_attempts,
                ).id)
                for webhook in webhooks
            ]

        logger.info(f"Created {len(delivery_ids)} webhook deliveries for {event_type} (user {user_id})")
        return delivery_ids

    def attempt_delivery(self, delivery_id: Any, now: Optional[datetime] = None) -> DeliveryAttempt:
        """
        Perform the next attempt of a delivery.

        Args:
            delivery_id: Delivery to attempt
            now: Time of the attempt, defaults to the current UTC time
        """
        started = now or utcnow()
        delivery_id = str(delivery_id)

        with self.uow_factory() as store:
            delivery = store.webhooks.get_delivery(delivery_id)
            if delivery is None:
                logger.error(f"Webhook delivery {delivery_id} not found")
                return DeliveryAttempt(delivery_id, success=False, reason="not_found")

            if delivery.status == DeliveryStatus.SUCCESS.value:
                logger.info(f"Webhook delivery {delivery_id} already successful")
                return DeliveryAttempt(delivery_id, success=True, status=delivery.status,
                                       reason="already_delivered", attempt_count=delivery.attempt_count)

            if delivery.status == DeliveryStatus.FAILED.value:
                return DeliveryAttempt(delivery_id, success=False, status=delivery.status,
                                       reason="already_failed", attempt_count=delivery.attempt_count)

            retry_at = ensure_utc(delivery.next_retry_at)
            if delivery.status == DeliveryStatus.RETRYING.value and retry_at is not None and retry_at > started:
                logger.info(f"Webhook delivery {delivery_id} not due until {retry_at.isoformat()}")
                return DeliveryAttempt(delivery_id, success=False, status=delivery.status, reason="not_due",
                                       attempt_count=delivery.attempt_count, next_retry_at=retry_at)

            if delivery.attempt_count >= delivery.max_attempts:
                logger.info(f"Webhook delivery {delivery_id} reached max attempts, marking as failed")
                store.webhooks.mark_failed(delivery_id, started)
                return DeliveryAttempt(delivery_id, success=False, status=DeliveryStatus.FAILED.value,
                                       reason="max_attempts", attempt_count=delivery.attempt_count)

            webhook = delivery.webhook
            if webhook is None or not webhook.is_active:
                store.webhooks.mark_failed(delivery_id, started, error_message="Webhook is inactive")
                return DeliveryAttempt(delivery_id, success=False, status=DeliveryStatus.FAILED.value,
                                       reason="webhook_inactive", attempt_count=delivery.attempt_count)

            attempt_number = delivery.attempt_count + 1
            max_attempts = delivery.max_attempts
            url = webhook.url
            headers = self._build_headers(delivery.event_type, delivery_id, webhook.headers)
            body = serialize_payload(delivery.payload)
            if webhook.secret:
                headers[SIGNATURE_HEADER] = f"sha256={sign_payload(webhook.secret, body)}"

            lease_until = started + timedelta(seconds=self.config.claim_lease_seconds)
            if not store.webhooks.claim_attempt(delivery_id, delivery.attempt_count, started, lease_until):
                logger.info(f"Webhook delivery {delivery_id} attempt {attempt_number} claimed elsewhere")
                return DeliveryAttempt(delivery_id, success=False, reason="in_progress")

        status_code, response_body, error = self._post(url, body, headers, self.config.request_timeout_seconds)
        finished = now or utcnow()
        success = error is None

        values: Dict[str, Any] = {
            'status_code': status_code,
            'response_body': response_body,
            'error_message': error,
        }
        if success:
            values.update(status=DeliveryStatus.SUCCESS.value, completed_at=finished, next_retry_at=None)
        elif attempt_number >= max_attempts:
            values.update(status=DeliveryStatus.FAILED.value, completed_at=finished, next_retry_at=None)
        else:
            values.update(
                status=DeliveryStatus.RETRYING.value,
                next_retry_at=self.compute_next_retry_at(attempt_number, finished),
            )

        with self.uow_factory() as store:
            recorded = store.webhooks.record_attempt_outcome(delivery_id, attempt_number, **values)
        if not recorded:
            logger.warning(f"Outcome of webhook delivery {delivery_id} attempt {attempt_number} was superseded")

        attempt = DeliveryAttempt(
            delivery_id,
            success=success,
            status=values['status'],
            status_code=status_code,
            error=error,
            attempt_count=attempt_number,
            next_retry_at=values['next_retry_at'],
        )
        if success:
            logger.info(f"Webhook delivery {delivery_id} succeeded ({status_code}) to {safe_url_for_log(url)}")
        else:
            logger.error(
                f"Webhook delivery {delivery_id} attempt {attempt_number}/{max_attempts} failed: {error} "
                f"-> {attempt.status}"
            )
        return attempt

    def due_retries(self, now: Optional[datetime] = None) -> List[str]:
        """Ids of retrying deliveries whose next_retry_at has passed."""
        now = now or utcnow()
        with self.uow_factory() as store:
            ids = store.webhooks.get_due_retry_ids(now, limit=self.config.sweep_batch_size)
        if ids:
            logger.info(f"Found {len(ids)} webhook deliveries to retry")
        return [str(i) for i in ids]

    def cleanup(self, now: Optional[datetime] = None) -> int:
        """Delete success/failed deliveries older than the retention period."""
        now = now or utcnow()
        cutoff = now - timedelta(days=self.config.retention_days)
        with self.uow_factory() as store:
            return store.webhooks.delete_completed_before(cutoff)

    def send_test(self, webhook_id: Any, user_id: Optional[str] = None, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Send a signed test event immediately. Creates no delivery record.

        Returns:
            {success, statusCode, responseBody, error, latencyMs}
        """
        now = now or utcnow()
        with self.uow_factory() as store:
            webhook = store.webhooks.get_webhook(webhook_id, user_id=user_id)
            if webhook is None:
                return {'success': False, 'statusCode': None, 'responseBody': None,
                        'error': "Webhook not found", 'latencyMs': 0}
            url = webhook.url
            secret = webhook.secret
            custom_headers = webhook.headers
            webhook_name = webhook.name

        payload = build_event_payload(TEST_EVENT_TYPE, {
            'message': "This is a test webhook delivery",
            'webhookId': str(webhook_id),
            'webhookName': webhook_name,
        }, now)
        body = serialize_payload(payload)
        headers = self._build_headers(TEST_EVENT_TYPE, "test", custom_headers)
        if secret:
            headers[SIGNATURE_HEADER] = f"sha256={sign_payload(secret, body)}"

        started = time.monotonic()
        status_code, response_body, error = self._post(url, body, headers, self.config.test_timeout_seconds)
        latency_ms = int((time.monotonic() - started) * 1000)

        return {
            'success': error is None,
            'statusCode': status_code,
            'responseBody': response_body[:TEST_RESPONSE_BODY_LIMIT] if response_body else response_body,
            'error': error,
            'latencyMs': latency_ms,
        }

    @staticmethod
    def _build_headers(event_type: str, delivery_id: str, custom_headers: Optional[Dict[str, str]]) -> Dict[str, str]:
        headers = {
            'Content-Type': 'application/json',
            'X-Webhook-Event': event_type,
            'X-Webhook-Delivery-Id': delivery_id,
        }
        headers.update(custom_headers or {})
        return headers

    def _post(self, url: str, body: str, headers: Dict[str, str], timeout: int):
        """Returns (status_code, response_body, error); error is None on 2xx."""
        if self.dry_run:
            logger.info(f"[DRY RUN] webhook -> {safe_url_for_log(url)}: {body[:500]}")
            return None, None, None

        try:
            response = requests.post(url, data=body.encode('utf-8'), headers=headers, timeout=timeout)
        except requests.RequestException as e:
            return None, None, str(e) or e.__class__.__name__

        response_body = (response.text or "")[:self.config.response_body_limit]
        if not response.ok:
            return response.status_code, response_body, f"HTTP {response.status_code}: {response.reason}"
        return response.status_code, response_body, None
