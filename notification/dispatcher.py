#!/usr/bin/env python3
"""
Alert Dispatcher

Evaluates one alert: loaded -> skipped(reason) | dispatched.

1. Load the alert; missing or inactive -> skipped
2. Load candidate results through the dedup window; none -> skipped
3. Claim the dedup markers with a conditional update, build the channel
   payload, commit the claim
4. Send through the alert's single channel sender
5. Record the outcome (delivery log row + listener events)

Markers are stamped on attempt, not on confirmed delivery: a failed send
is retried only at the alert's next scheduled evaluation.

Usage:
    from notification.dispatcher import AlertDispatcher

    dispatcher = AlertDispatcher(config.notifications)
    outcome = dispatcher.dispatch(alert_id)
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, List, Any, Callable, Dict, Iterable

from core.config_loader import NotificationConfig
from database.models import AlertChannel, utcnow
from database.uow import alert_uow
from notification.channels import ChannelSender, ChannelSenderFactory, SendResult, SmtpEmailClient
from notification.dedup import DigestDeduplicator
from notification.destination import Destination
from notification.formatter import NotificationPayload, NotificationResult

logger = logging.getLogger(__name__)

STATUS_DISPATCHED = "dispatched"
STATUS_SKIPPED = "skipped"

REASON_NOT_FOUND = "Alert not found"
REASON_INACTIVE = "Alert is inactive"
REASON_MONITOR_INACTIVE = "Monitor is inactive"
REASON_NO_RESULTS = "No results to send"
REASON_ALREADY_CLAIMED = "Results already sent by a concurrent dispatch"
REASON_MISSING_DESTINATION = "Alert has no destination"
REASON_DISCORD_NOT_CONNECTED = "Discord integration not connected"
REASON_UNKNOWN_CHANNEL = "Unknown alert channel"
REASON_IN_PROGRESS = "Alert dispatch already in progress"


@dataclass
class DispatchOutcome:
    alert_id: Optional[str]
    status: str
    success: bool = False
    monitor_id: Optional[str] = None
    channel: Optional[str] = None
    reason: Optional[str] = None
    error: Optional[str] = None
    destination_type: Optional[str] = None
    result_ids: List[str] = field(default_factory=list)
    timestamp: datetime = field(default_factory=utcnow)

    @property
    def skipped(self) -> bool:
        return self.status == STATUS_SKIPPED

    @property
    def results_count(self) -> int:
        return len(self.result_ids)

    def to_event(self) -> Dict[str, Any]:
        """Delivery-outcome event for external observers."""
        return {
            'event': f"alert.{self.status}",
            'alertId': self.alert_id,
            'monitorId': self.monitor_id,
            'channel': self.channel,
            'status': self.status,
            'success': self.success,
            'reason': self.reason,
            'error': self.error,
            'resultsCount': self.results_count,
            'destinationType': self.destination_type,
            'timestamp': self.timestamp.isoformat(),
        }


class AlertDispatchError(Exception):
    """Raised after all alerts of a monitor ran and at least one raised."""

    def __init__(self, outcomes: List[DispatchOutcome], errors: Dict[str, BaseException]):
        self.outcomes = outcomes
        self.errors = errors
        failed = ", ".join(f"{alert_id}: {exc}" for alert_id, exc in errors.items())
        super().__init__(f"{len(errors)} alert dispatch(es) raised: {failed}")


class LocalAlertLocks:
    """Process-local per-alert locks, used when no Redis is available."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}

    def __call__(self, alert_id: Any) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(str(alert_id), threading.Lock())


class AlertDispatcher:
    """
    Runs alert evaluations as independent units of work.

    Args:
        config: Injected notification configuration
        uow_factory: Context manager factory yielding an AlertStore
        lock_provider: Callable alert_id -> lock with acquire(blocking=False)
            and release(); evaluations of the same alert never overlap
        listeners: Callables receiving each outcome event dict
    """

    def __init__(
        self,
        config: NotificationConfig,
        uow_factory: Callable = alert_uow,
        lock_provider: Optional[Callable[[Any], Any]] = None,
        smtp_client: Optional[SmtpEmailClient] = None,
        listeners: Optional[Iterable[Callable[[Dict[str, Any]], None]]] = None
    ):
        self.config = config
        self.uow_factory = uow_factory
        self.lock_provider = lock_provider or LocalAlertLocks()
        self.smtp_client = smtp_client
        self.listeners = list(listeners or [])

    def add_listener(self, listener: Callable[[Dict[str, Any]], None]) -> None:
        self.listeners.append(listener)

    def dispatch(
        self,
        alert_id: Any,
        result_ids: Optional[List[Any]] = None,
        now: Optional[datetime] = None
    ) -> DispatchOutcome:
        """
        Evaluate one alert.

        Args:
            alert_id: Alert to evaluate
            result_ids: Restrict candidates to these results (instant alerts
                triggered by new results); None considers every result
            now: Evaluation time, defaults to the current UTC time

        Returns:
            DispatchOutcome; configuration problems are skips, send
            failures are dispatched outcomes with success=False

        Raises:
            Exceptions from payload construction propagate
        """
        now = now or utcnow()
        lock = self.lock_provider(alert_id)

        if not lock.acquire(blocking=False):
            logger.info(f"Alert {alert_id} is already being dispatched, skipping")
            outcome = DispatchOutcome(alert_id=str(alert_id), status=STATUS_SKIPPED, reason=REASON_IN_PROGRESS)
            self._emit(outcome)
            return outcome

        try:
            with self.uow_factory() as store:
                outcome = self._dispatch_locked(store, alert_id, result_ids, now)
                if outcome.reason != REASON_NOT_FOUND:
                    store.notifications.record_dispatch(
                        alert_id=alert_id,
                        monitor_id=outcome.monitor_id,
                        channel=outcome.channel,
                        status=outcome.status,
                        success=outcome.success,
                        reason=outcome.reason,
                        error_message=outcome.error,
                        destination_type=outcome.destination_type,
                        result_ids=outcome.result_ids,
                    )
        finally:
            lock.release()

        self._log_outcome(outcome)
        self._emit(outcome)
        return outcome

    def dispatch_monitor(
        self,
        monitor_id: Any,
        frequency: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> List[DispatchOutcome]:
        """
        Dispatch every active alert of a monitor independently.

        An exception in one alert never prevents its siblings from running;
        collected exceptions are raised together afterwards.
        """
        now = now or utcnow()
        with self.uow_factory() as store:
            alert_ids = [a.id for a in store.alerts.list_active_alerts(frequency=frequency, monitor_id=monitor_id)]

        outcomes = []
        errors: Dict[str, BaseException] = {}
        for alert_id in alert_ids:
            try:
                outcomes.append(self.dispatch(alert_id, now=now))
            except Exception as e:
                logger.error(f"Dispatch of alert {alert_id} raised: {e}", exc_info=True)
                errors[str(alert_id)] = e

        if errors:
            raise AlertDispatchError(outcomes, errors)
        return outcomes

    def _dispatch_locked(self, store, alert_id: Any, result_ids: Optional[List[Any]], now: datetime) -> DispatchOutcome:
        alert = store.alerts.get_alert(alert_id)
        if alert is None:
            return DispatchOutcome(alert_id=str(alert_id), status=STATUS_SKIPPED, reason=REASON_NOT_FOUND)

        monitor = alert.monitor
        base = {
            'alert_id': str(alert.id),
            'monitor_id': str(alert.monitor_id),
            'channel': alert.channel,
            'destination_type': alert.destination_type,
        }

        if not alert.is_active:
            return DispatchOutcome(status=STATUS_SKIPPED, reason=REASON_INACTIVE, **base)
        if not monitor.is_active:
            return DispatchOutcome(status=STATUS_SKIPPED, reason=REASON_MONITOR_INACTIVE, **base)

        window_start = DigestDeduplicator.window_start(alert.frequency, now)
        candidates = store.results.get_candidate_results(alert.monitor_id, window_start, now, result_ids)
        candidates = DigestDeduplicator.filter_eligible(alert.frequency, candidates, now)
        if not candidates:
            return DispatchOutcome(status=STATUS_SKIPPED, reason=REASON_NO_RESULTS, **base)

        sender, destination, skip_reason = self._resolve_sender(store, alert, monitor)
        if skip_reason:
            return DispatchOutcome(status=STATUS_SKIPPED, reason=skip_reason, **base)

        claimed_ids = set(store.results.claim_for_dispatch([r.id for r in candidates], window_start, now))
        claimed = [r for r in candidates if r.id in claimed_ids]
        if not claimed:
            return DispatchOutcome(status=STATUS_SKIPPED, reason=REASON_ALREADY_CLAIMED, **base)

        payload = NotificationPayload(
            monitor_name=monitor.name,
            results=[NotificationResult.from_record(r) for r in claimed],
            dashboard_url=self.config.monitor_dashboard_url(monitor.id),
        )
        body = sender.format(payload)
        if alert.channel == AlertChannel.IN_APP.value:
            body['monitor_id'] = monitor.id

        sent_ids = [str(r.id) for r in claimed]

        # Markers are committed before the external call
        store.commit()

        result: SendResult = sender.send(destination, body)
        return DispatchOutcome(
            status=STATUS_DISPATCHED,
            success=result.success,
            error=result.error,
            result_ids=sent_ids,
            **{**base, 'destination_type': result.destination_type or base['destination_type']},
        )

    def _resolve_sender(self, store, alert, monitor):
        """Return (sender, destination, skip_reason) for the alert's channel."""
        channel = alert.channel
        destination = alert.destination

        if channel == AlertChannel.IN_APP.value:
            return ChannelSenderFactory.in_app(self.config, store.notifications), monitor.user_id, None

        if not destination:
            return None, None, REASON_MISSING_DESTINATION

        if channel == AlertChannel.EMAIL.value:
            return ChannelSenderFactory.email(self.config, self.smtp_client), destination, None

        if channel == AlertChannel.DISCORD.value and not destination.startswith(('http://', 'https://')):
            # Bare channel ID: post through the bot, only for connected users
            if not store.integrations.is_connected(monitor.user_id, 'discord'):
                return None, None, REASON_DISCORD_NOT_CONNECTED
            return ChannelSenderFactory.discord_bot(self.config), destination, None

        if channel in (AlertChannel.SLACK.value, AlertChannel.DISCORD.value, AlertChannel.WEBHOOK.value):
            target = Destination.from_stored(destination, alert.destination_type)
            sender: ChannelSender = ChannelSenderFactory.for_webhook(target, self.config)
            return sender, target.url, None

        return None, None, REASON_UNKNOWN_CHANNEL

    def _log_outcome(self, outcome: DispatchOutcome) -> None:
        if outcome.skipped:
            logger.info(f"Alert {outcome.alert_id} skipped: {outcome.reason}")
        elif outcome.success:
            logger.info(
                f"Alert {outcome.alert_id} dispatched via {outcome.channel} "
                f"({outcome.results_count} result(s))"
            )
        else:
            logger.error(f"Alert {outcome.alert_id} failed via {outcome.channel}: {outcome.error}")

    def _emit(self, outcome: DispatchOutcome) -> None:
        event = outcome.to_event()
        for listener in self.listeners:
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Outcome listener {listener!r} failed: {e}")
