#!/usr/bin/env python3
"""
Tests for NotificationService in sync mode (SQLite store) and its RQ
enqueue path (mocked Redis and Queue).
"""

import unittest
from unittest.mock import MagicMock, Mock, patch

from redis.exceptions import ConnectionError as RedisConnectionError, LockNotOwnedError

from core.config_loader import NotificationConfig
from database.models import DeliveryStatus
from notification.dispatcher import LocalAlertLocks
from notification.service import (
    AlertLock,
    NotificationService,
    RedisAlertLocks,
    process_alert_dispatch_task,
    process_webhook_delivery_task,
)
from tests import FIXED_NOW, SqliteStoreTestCase

SLACK_URL = "https://hooks.slack.com/services/T000/B000/XXXX"
GENERIC_URL = "https://hooks.example.com/incoming"


def http_response(status_code: int = 200) -> Mock:
    response = Mock()
    response.ok = 200 <= status_code < 300
    response.status_code = status_code
    response.text = "ok"
    response.reason = "OK"
    return response


class ServiceTestCase(SqliteStoreTestCase):

    def setUp(self):
        super().setUp()
        self.config = NotificationConfig(
            dashboard_base_url="https://app.example.com/dashboard",
            use_async_queue=False,
        )
        self.service = NotificationService(self.config, uow_factory=self.uow)
        self.monitor = self.add_monitor()

    def get_alert(self, alert_id):
        with self.uow() as store:
            alert = store.alerts.get_alert(alert_id)
            store.db.expunge_all()
        return alert


class TestCreateAlert(ServiceTestCase):

    def test_slack_url_is_resolved_once(self):
        alert_id = self.service.create_alert(self.monitor.id, "slack", "instant", f"  {SLACK_URL} ")

        alert = self.get_alert(alert_id)
        self.assertEqual(alert.destination, SLACK_URL)
        self.assertEqual(alert.destination_type, "slack")

    def test_generic_webhook_url(self):
        alert_id = self.service.create_alert(self.monitor.id, "webhook", "daily", GENERIC_URL)
        self.assertEqual(self.get_alert(alert_id).destination_type, "generic")

    def test_discord_channel_id_uses_bot(self):
        alert_id = self.service.create_alert(self.monitor.id, "discord", "instant", "123456789012345678")
        self.assertEqual(self.get_alert(alert_id).destination_type, "discord_bot")

    def test_in_app_defaults_to_monitor_owner(self):
        alert_id = self.service.create_alert(self.monitor.id, "in_app", "instant")
        self.assertEqual(self.get_alert(alert_id).destination, self.monitor.user_id)

    def test_invalid_destinations_are_rejected(self):
        cases = [
            ("email", "not-an-address"),
            ("slack", "ftp://hooks.slack.com/services/x"),
            ("webhook", ""),
        ]
        for channel, destination in cases:
            with self.subTest(channel=channel):
                with self.assertRaises(ValueError):
                    self.service.create_alert(self.monitor.id, channel, "instant", destination)

    def test_unknown_frequency_and_monitor(self):
        with self.assertRaises(ValueError):
            self.service.create_alert(self.monitor.id, "slack", "hourly", SLACK_URL)
        with self.assertRaises(ValueError):
            self.service.create_alert("00000000-0000-0000-0000-000000000000", "slack", "instant", SLACK_URL)

    def test_create_webhook_validates_url(self):
        with self.assertRaises(ValueError):
            self.service.create_webhook("user-1", "not a url")
        self.assertTrue(self.service.create_webhook("user-1", GENERIC_URL, events=["results.new"]))


class TestTriggers(ServiceTestCase):

    @patch('requests.post')
    def test_new_results_dispatch_instant_alerts_and_publish_event(self, mock_post):
        mock_post.return_value = http_response(200)
        self.service.create_alert(self.monitor.id, "slack", "instant", SLACK_URL)
        self.service.create_alert(self.monitor.id, "slack", "daily", SLACK_URL)
        self.service.create_webhook(self.monitor.user_id, GENERIC_URL, events=["results.new"])
        result = self.add_result(self.monitor, "Anyone know a good CRM?")

        summary = self.service.notify_new_results(self.monitor.id, [result.id])

        self.assertEqual(len(summary['alerts']), 1)
        self.assertTrue(summary['alerts'][0]['success'])
        self.assertEqual(summary['alerts'][0]['resultsCount'], 1)
        self.assertEqual(len(summary['deliveries']), 1)
        self.assertEqual(mock_post.call_count, 2)

        with self.uow() as store:
            delivery = store.webhooks.get_delivery(summary['deliveries'][0])
            self.assertEqual(delivery.status, DeliveryStatus.SUCCESS.value)
            self.assertEqual(delivery.payload['data']['monitorId'], str(self.monitor.id))
            self.assertEqual(delivery.payload['data']['resultsCount'], 1)

    @patch('requests.post')
    def test_every_instant_alert_of_a_monitor_receives_new_results(self, mock_post):
        mock_post.return_value = http_response(200)
        self.service.create_alert(self.monitor.id, "slack", "instant", SLACK_URL)
        self.service.create_alert(self.monitor.id, "webhook", "instant", GENERIC_URL)
        result = self.add_result(self.monitor)

        summary = self.service.notify_new_results(self.monitor.id, [result.id])

        self.assertEqual([a['success'] for a in summary['alerts']], [True, True])
        self.assertEqual([a['resultsCount'] for a in summary['alerts']], [1, 1])

    @patch('requests.post')
    def test_inactive_monitor_is_ignored(self, mock_post):
        monitor = self.add_monitor(name="Paused", is_active=False)
        result = self.add_result(monitor)

        self.assertEqual(self.service.notify_new_results(monitor.id, [result.id]), {'alerts': [], 'deliveries': []})
        mock_post.assert_not_called()

    def test_disabled_notifications_do_nothing(self):
        service = NotificationService(NotificationConfig(enabled=False, use_async_queue=False), uow_factory=self.uow)
        result = self.add_result(self.monitor)
        self.assertEqual(service.notify_new_results(self.monitor.id, [result.id]), {'alerts': [], 'deliveries': []})

    @patch('requests.post')
    def test_daily_digest_reaches_every_daily_alert(self, mock_post):
        mock_post.return_value = http_response(200)
        self.service.create_alert(self.monitor.id, "slack", "daily", SLACK_URL)
        self.service.create_alert(self.monitor.id, "webhook", "daily", GENERIC_URL)
        self.service.create_alert(self.monitor.id, "slack", "weekly", SLACK_URL)
        self.add_result(self.monitor)

        events = self.service.send_digests("daily", now=FIXED_NOW)

        self.assertEqual(len(events), 2)
        self.assertTrue(all(e['success'] for e in events))
        self.assertEqual(mock_post.call_count, 2)

    def test_instant_is_not_a_digest(self):
        with self.assertRaises(ValueError):
            self.service.send_digests("instant")

    def test_mark_result_viewed(self):
        result = self.add_result(self.monitor)
        self.assertTrue(self.service.mark_result_viewed(result.id))
        self.assertFalse(self.service.mark_result_viewed(result.id))
        self.assertTrue(self.get_result(result.id).is_viewed)

    def test_queue_status_in_sync_mode(self):
        self.assertFalse(self.service.async_mode)
        self.assertIsInstance(self.service.dispatcher.lock_provider, LocalAlertLocks)
        self.assertEqual(self.service.get_queue_status(), {'status': 'sync_mode', 'queue_length': 0})


class TestAsyncMode(unittest.TestCase):

    def setUp(self):
        self.config = NotificationConfig(use_async_queue=True, redis_url="redis://redis:6379/0")
        self.redis_conn = MagicMock()
        self.redis_conn.ping.return_value = True
        patcher = patch('notification.service.Queue')
        self.mock_queue_class = patcher.start()
        self.addCleanup(patcher.stop)
        self.queue = self.mock_queue_class.return_value
        self.queue.enqueue.return_value = Mock(id="job-1")

    def test_dispatch_is_enqueued(self):
        service = NotificationService(self.config, redis_conn=self.redis_conn)

        job_id = service.dispatch_alert("alert-1", ["r1"], now=FIXED_NOW)

        self.assertEqual(job_id, "job-1")
        self.mock_queue_class.assert_called_once_with('notifications', connection=self.redis_conn)
        self.queue.enqueue.assert_called_once_with(
            process_alert_dispatch_task,
            "alert-1",
            ["r1"],
            FIXED_NOW.isoformat(),
            job_timeout='5m',
            result_ttl=86400,
        )

    def test_webhook_delivery_is_enqueued(self):
        service = NotificationService(self.config, redis_conn=self.redis_conn)

        self.assertEqual(service.deliver_webhook("delivery-1"), "job-1")
        args = self.queue.enqueue.call_args.args
        self.assertEqual(args, (process_webhook_delivery_task, "delivery-1"))

    def test_alert_locks_live_in_redis(self):
        service = NotificationService(self.config, redis_conn=self.redis_conn)

        locks = service.dispatcher.lock_provider
        self.assertIsInstance(locks, RedisAlertLocks)
        locks("alert-1")
        self.redis_conn.lock.assert_called_once_with(
            "notification:alert-lock:alert-1", timeout=300, lock_class=AlertLock)

    def test_falls_back_to_sync_when_redis_is_down(self):
        self.redis_conn.ping.side_effect = RedisConnectionError("refused")

        service = NotificationService(self.config, redis_conn=self.redis_conn)

        self.assertFalse(service.async_mode)
        self.assertIsNone(service.queue)
        self.assertIsInstance(service.dispatcher.lock_provider, LocalAlertLocks)

    def test_queue_status(self):
        self.queue.__len__.return_value = 3
        service = NotificationService(self.config, redis_conn=self.redis_conn)

        status = service.get_queue_status()

        self.assertEqual(status, {'status': 'active', 'queue_length': 3, 'redis_connected': True})


class TestAlertLock(unittest.TestCase):

    @patch.object(AlertLock, 'register_scripts')
    def test_release_after_expiry_is_logged(self, _):
        lock = AlertLock(MagicMock(), "notification:alert-lock:alert-1", timeout=5)
        lock.local.token = b"token"

        with patch.object(AlertLock, 'do_release', side_effect=LockNotOwnedError("lock expired")):
            with self.assertLogs('notification.service', level='WARNING') as logs:
                lock.release()

        self.assertIn("notification:alert-lock:alert-1", logs.output[0])


class TestWorkerTasks(unittest.TestCase):

    @patch('core.app_context.get_app_context')
    def test_dispatch_task_parses_evaluation_time(self, mock_get_context):
        service = mock_get_context.return_value.notification_service
        service.dispatcher.dispatch.return_value.to_event.return_value = {'status': "dispatched"}

        event = process_alert_dispatch_task("alert-1", ["r1"], FIXED_NOW.isoformat())

        self.assertEqual(event, {'status': "dispatched"})
        service.dispatcher.dispatch.assert_called_once_with("alert-1", result_ids=["r1"], now=FIXED_NOW)

    @patch('core.app_context.get_app_context')
    def test_delivery_task_returns_attempt_summary(self, mock_get_context):
        service = mock_get_context.return_value.notification_service
        attempt = service.tracker.attempt_delivery.return_value
        attempt.delivery_id = "delivery-1"
        attempt.success = False
        attempt.status = "retrying"
        attempt.reason = None
        attempt.status_code = 502
        attempt.error = "HTTP 502: Bad Gateway"
        attempt.attempt_count = 1

        summary = process_webhook_delivery_task("delivery-1")

        self.assertEqual(summary['status'], "retrying")
        self.assertEqual(summary['statusCode'], 502)
        self.assertEqual(summary['attemptCount'], 1)


if __name__ == '__main__':
    unittest.main()
