#!/usr/bin/env python3
"""
Repository tests against an in-memory SQLite store.

Covers the conditional updates the dispatcher and delivery tracker rely on:
- ResultRepository.claim_for_dispatch()
- WebhookRepository.claim_attempt() / record_attempt_outcome()
"""

import unittest
from datetime import timedelta

from core.utils import ensure_utc
from database.models import DeliveryStatus
from tests import FIXED_NOW, SqliteStoreTestCase


class TestAlertRepository(SqliteStoreTestCase):

    def test_list_active_alerts_filters_inactive_and_frequency(self):
        monitor = self.add_monitor()
        paused_monitor = self.add_monitor(name="Paused", is_active=False)
        instant = self.add_alert(monitor)
        daily = self.add_alert(monitor, frequency="daily")
        self.add_alert(monitor, is_active=False)
        self.add_alert(paused_monitor)

        with self.uow() as store:
            all_ids = [a.id for a in store.alerts.list_active_alerts()]
            instant_ids = [a.id for a in store.alerts.list_active_alerts(frequency="instant")]
            by_monitor = [a.id for a in store.alerts.list_active_alerts(monitor_id=str(monitor.id))]

        self.assertEqual(set(all_ids), {instant.id, daily.id})
        self.assertEqual(instant_ids, [instant.id])
        self.assertEqual(set(by_monitor), {instant.id, daily.id})

    def test_create_alert_rejects_unknown_channel(self):
        monitor = self.add_monitor()
        with self.assertRaises(ValueError):
            self.add_alert(monitor, channel="pager")

    def test_get_alert_loads_monitor(self):
        monitor = self.add_monitor(name="Acme")
        alert = self.add_alert(monitor)

        with self.uow() as store:
            loaded = store.alerts.get_alert(str(alert.id))
            self.assertEqual(loaded.monitor.name, "Acme")


class TestResultRepository(SqliteStoreTestCase):

    def setUp(self):
        super().setUp()
        self.monitor = self.add_monitor()

    def test_candidates_are_newest_first_and_skip_hidden(self):
        older = self.add_result(self.monitor, "older", created_at=FIXED_NOW - timedelta(hours=2))
        newer = self.add_result(self.monitor, "newer", created_at=FIXED_NOW - timedelta(hours=1))
        self.add_result(self.monitor, "hidden", is_hidden=True)

        with self.uow() as store:
            ids = [r.id for r in store.results.get_candidate_results(self.monitor.id, None, FIXED_NOW)]

        self.assertEqual(ids, [newer.id, older.id])

    def test_candidates_restricted_to_result_ids(self):
        wanted = self.add_result(self.monitor, "wanted")
        self.add_result(self.monitor, "other")

        with self.uow() as store:
            ids = [r.id for r in store.results.get_candidate_results(
                self.monitor.id, None, FIXED_NOW, result_ids=[str(wanted.id)])]

        self.assertEqual(ids, [wanted.id])

    def test_instant_candidates_exclude_earlier_sends(self):
        self.add_result(self.monitor, "sent", last_sent_in_digest_at=FIXED_NOW - timedelta(days=90))
        fresh = self.add_result(self.monitor, "fresh")

        with self.uow() as store:
            ids = [r.id for r in store.results.get_candidate_results(self.monitor.id, None, FIXED_NOW)]

        self.assertEqual(ids, [fresh.id])

    def test_digest_candidates_include_sends_before_window(self):
        stale = self.add_result(self.monitor, "stale", last_sent_in_digest_at=FIXED_NOW - timedelta(hours=30))
        self.add_result(self.monitor, "recent", last_sent_in_digest_at=FIXED_NOW - timedelta(hours=3))
        window_start = FIXED_NOW - timedelta(hours=24)

        with self.uow() as store:
            ids = [r.id for r in store.results.get_candidate_results(self.monitor.id, window_start, FIXED_NOW)]

        self.assertEqual(ids, [stale.id])

    def test_claim_stamps_marker_once_per_cycle(self):
        result = self.add_result(self.monitor)

        with self.uow() as store:
            first = store.results.claim_for_dispatch([result.id], None, FIXED_NOW)
        with self.uow() as store:
            later_cycle = store.results.claim_for_dispatch([result.id], None, FIXED_NOW + timedelta(minutes=1))

        self.assertEqual(first, [result.id])
        self.assertEqual(later_cycle, [])
        self.assertEqual(ensure_utc(self.get_result(result.id).last_sent_in_digest_at), FIXED_NOW)

    def test_sibling_alert_in_same_cycle_can_claim(self):
        result = self.add_result(self.monitor)

        with self.uow() as store:
            store.results.claim_for_dispatch([result.id], None, FIXED_NOW)
        with self.uow() as store:
            sibling = store.results.claim_for_dispatch([result.id], FIXED_NOW - timedelta(hours=24), FIXED_NOW)

        self.assertEqual(sibling, [result.id])

    def test_marker_never_moves_backwards(self):
        result = self.add_result(self.monitor, last_sent_in_digest_at=FIXED_NOW)

        with self.uow() as store:
            claimed = store.results.claim_for_dispatch(
                [result.id], FIXED_NOW - timedelta(days=2), FIXED_NOW - timedelta(days=1))

        self.assertEqual(claimed, [])
        self.assertEqual(ensure_utc(self.get_result(result.id).last_sent_in_digest_at), FIXED_NOW)

    def test_claim_skips_rows_claimed_elsewhere(self):
        taken = self.add_result(self.monitor, "taken", last_sent_in_digest_at=FIXED_NOW - timedelta(minutes=5))
        free = self.add_result(self.monitor, "free")

        with self.uow() as store:
            claimed = store.results.claim_for_dispatch([taken.id, free.id], None, FIXED_NOW)

        self.assertEqual(claimed, [free.id])

    def test_mark_viewed_and_clicked_once(self):
        result = self.add_result(self.monitor)

        with self.uow() as store:
            self.assertTrue(store.results.mark_viewed(str(result.id), FIXED_NOW))
            self.assertFalse(store.results.mark_viewed(str(result.id), FIXED_NOW))
            self.assertTrue(store.results.mark_clicked(result.id, FIXED_NOW))

        stored = self.get_result(result.id)
        self.assertTrue(stored.is_viewed)
        self.assertTrue(stored.is_clicked)
        self.assertEqual(ensure_utc(stored.viewed_at), FIXED_NOW)


class TestWebhookRepository(SqliteStoreTestCase):

    def add_delivery(self):
        with self.uow() as store:
            webhook = store.webhooks.create_webhook(user_id="user-1", url="https://hooks.example.com/a")
            delivery = store.webhooks.create_delivery(webhook.id, "results.new", {'eventType': "results.new"})
            return delivery.id

    def test_attempt_can_only_be_claimed_once(self):
        delivery_id = self.add_delivery()
        lease = FIXED_NOW + timedelta(seconds=60)

        with self.uow() as store:
            first = store.webhooks.claim_attempt(delivery_id, 0, FIXED_NOW, lease)
        with self.uow() as store:
            second = store.webhooks.claim_attempt(delivery_id, 0, FIXED_NOW, lease)

        self.assertTrue(first)
        self.assertFalse(second)
        with self.uow() as store:
            self.assertEqual(store.webhooks.get_delivery(delivery_id).attempt_count, 1)

    def test_claim_moves_pending_delivery_to_retrying_with_lease(self):
        delivery_id = self.add_delivery()
        lease = FIXED_NOW + timedelta(seconds=60)

        with self.uow() as store:
            self.assertTrue(store.webhooks.claim_attempt(delivery_id, 0, FIXED_NOW, lease))
        with self.uow() as store:
            delivery = store.webhooks.get_delivery(delivery_id)
            self.assertEqual(delivery.status, DeliveryStatus.RETRYING.value)
            self.assertEqual(ensure_utc(delivery.next_retry_at), lease)

    def test_retrying_delivery_is_not_claimed_before_next_retry_at(self):
        delivery_id = self.add_delivery()
        retry_at = FIXED_NOW + timedelta(minutes=5)
        with self.uow() as store:
            store.webhooks.record_attempt_outcome(
                delivery_id, 0, status=DeliveryStatus.RETRYING.value, next_retry_at=retry_at)

        with self.uow() as store:
            early = store.webhooks.claim_attempt(delivery_id, 0, FIXED_NOW, FIXED_NOW + timedelta(seconds=60))
        with self.uow() as store:
            due = store.webhooks.claim_attempt(delivery_id, 0, retry_at, retry_at + timedelta(seconds=60))

        self.assertFalse(early)
        self.assertTrue(due)

    def test_outcome_for_superseded_attempt_is_ignored(self):
        delivery_id = self.add_delivery()
        lease = FIXED_NOW + timedelta(seconds=60)

        with self.uow() as store:
            store.webhooks.claim_attempt(delivery_id, 0, FIXED_NOW, lease)
            store.webhooks.claim_attempt(delivery_id, 1, lease, lease + timedelta(seconds=60))

        with self.uow() as store:
            stale = store.webhooks.record_attempt_outcome(
                delivery_id, 1, status=DeliveryStatus.SUCCESS.value, completed_at=FIXED_NOW)
            current = store.webhooks.record_attempt_outcome(
                delivery_id, 2, status=DeliveryStatus.RETRYING.value, next_retry_at=FIXED_NOW)

        self.assertFalse(stale)
        self.assertTrue(current)
        with self.uow() as store:
            self.assertEqual(store.webhooks.get_delivery(delivery_id).status, DeliveryStatus.RETRYING.value)

    def test_terminal_delivery_cannot_be_claimed(self):
        delivery_id = self.add_delivery()

        with self.uow() as store:
            self.assertTrue(store.webhooks.mark_failed(delivery_id, FIXED_NOW, error_message="gone"))
        with self.uow() as store:
            self.assertFalse(store.webhooks.claim_attempt(delivery_id, 0, FIXED_NOW, FIXED_NOW))
            self.assertFalse(store.webhooks.mark_failed(delivery_id, FIXED_NOW))


class TestNotificationRepositories(SqliteStoreTestCase):

    def test_integration_upsert_and_connection(self):
        with self.uow() as store:
            self.assertFalse(store.integrations.is_connected("user-1", "discord"))
            store.integrations.upsert_integration("user-1", "discord", connected=True, data={'guild': "g1"})

        with self.uow() as store:
            self.assertTrue(store.integrations.is_connected("user-1", "discord"))
            store.integrations.upsert_integration("user-1", "discord", connected=False)

        with self.uow() as store:
            self.assertFalse(store.integrations.is_connected("user-1", "discord"))
            self.assertEqual(store.integrations.get_integration("user-1", "discord").data, {})

    def test_dispatch_log_records_result_ids(self):
        monitor = self.add_monitor()
        alert = self.add_alert(monitor)
        result = self.add_result(monitor)

        with self.uow() as store:
            store.notifications.record_dispatch(
                alert_id=str(alert.id),
                monitor_id=monitor.id,
                channel="slack",
                status="dispatched",
                success=True,
                result_ids=[result.id],
            )

        with self.uow() as store:
            entries = store.notifications.list_dispatch_log(alert.id)
            self.assertEqual(len(entries), 1)
            self.assertEqual(entries[0].results_count, 1)
            self.assertEqual(entries[0].result_ids, [str(result.id)])


if __name__ == '__main__':
    unittest.main()
