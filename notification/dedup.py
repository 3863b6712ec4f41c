#!/usr/bin/env python3
"""
Digest Deduplicator

Decides which results of a monitor may be included in the current send,
based on the alert's frequency and each result's dedup marker
(last_sent_in_digest_at).

- instant: only results never sent before
- daily / weekly / monthly: never sent, or last sent before the window
  boundary (24h / 7d / 30d before "now")

A marker equal to "now" belongs to the cycle being evaluated and stays
eligible, so sibling alerts of one monitor all receive the same batch.

Evaluation has no side effects. Stamping the marker is the dispatcher's job,
done as a conditional claim before the send (see ResultRepository).

Usage:
    from notification.dedup import DigestDeduplicator

    window_start = DigestDeduplicator.window_start(alert.frequency, now)
    eligible = DigestDeduplicator.filter_eligible(alert.frequency, results, now)
"""

import logging
from datetime import datetime, timedelta
from typing import Optional, List, Any, Iterable, Dict

from core.utils import ensure_utc
from database.models import AlertFrequency

logger = logging.getLogger(__name__)

DIGEST_WINDOWS: Dict[AlertFrequency, timedelta] = {
    AlertFrequency.DAILY: timedelta(hours=24),
    AlertFrequency.WEEKLY: timedelta(days=7),
    AlertFrequency.MONTHLY: timedelta(days=30),
}


class DigestDeduplicator:
    @staticmethod
    def window_start(frequency: str, now: datetime) -> Optional[datetime]:
        """
        Boundary before which a previous send no longer counts.

        Returns None for instant alerts, which have no window: a result is
        sent at most once.

        Raises:
            ValueError: for an unknown frequency
        """
        freq = AlertFrequency(frequency)
        if freq == AlertFrequency.INSTANT:
            return None
        return ensure_utc(now) - DIGEST_WINDOWS[freq]

    @staticmethod
    def is_eligible(frequency: str, last_sent_at: Optional[datetime], now: datetime) -> bool:
        if last_sent_at is None:
            return True

        # Stamped by this same evaluation cycle: every alert of the monitor
        # evaluated at `now` shares the batch
        if ensure_utc(last_sent_at) == ensure_utc(now):
            return True

        boundary = DigestDeduplicator.window_start(frequency, now)
        if boundary is None:
            return False
        return ensure_utc(last_sent_at) < boundary

    @staticmethod
    def filter_eligible(frequency: str, results: Iterable[Any], now: datetime) -> List[Any]:
        """Keep eligible results, preserving input order."""
        eligible = [
            r for r in results
            if DigestDeduplicator.is_eligible(frequency, r.last_sent_in_digest_at, now)
        ]
        logger.debug(f"{len(eligible)} result(s) eligible for {frequency} alert")
        return eligible
