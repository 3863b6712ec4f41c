"""
Tests for digest window eligibility.
"""

from datetime import timedelta
from types import SimpleNamespace

import pytest

from notification.dedup import DigestDeduplicator


def result(last_sent_at=None, name="r"):
    return SimpleNamespace(name=name, last_sent_in_digest_at=last_sent_at)


def test_instant_has_no_window(fixed_now):
    assert DigestDeduplicator.window_start("instant", fixed_now) is None


@pytest.mark.parametrize("frequency,window", [
    ("daily", timedelta(hours=24)),
    ("weekly", timedelta(days=7)),
    ("monthly", timedelta(days=30)),
])
def test_digest_window_boundaries(fixed_now, frequency, window):
    assert DigestDeduplicator.window_start(frequency, fixed_now) == fixed_now - window


def test_unknown_frequency_raises(fixed_now):
    with pytest.raises(ValueError):
        DigestDeduplicator.window_start("hourly", fixed_now)


def test_never_sent_is_always_eligible(fixed_now):
    for frequency in ("instant", "daily", "weekly", "monthly"):
        assert DigestDeduplicator.is_eligible(frequency, None, fixed_now)


def test_instant_never_resends(fixed_now):
    assert not DigestDeduplicator.is_eligible("instant", fixed_now - timedelta(days=365), fixed_now)


def test_daily_excludes_results_sent_within_window(fixed_now):
    assert not DigestDeduplicator.is_eligible("daily", fixed_now - timedelta(hours=23), fixed_now)
    assert DigestDeduplicator.is_eligible("daily", fixed_now - timedelta(hours=25), fixed_now)


def test_weekly_resurfaces_after_seven_days(fixed_now):
    assert not DigestDeduplicator.is_eligible("weekly", fixed_now - timedelta(days=6), fixed_now)
    assert DigestDeduplicator.is_eligible("weekly", fixed_now - timedelta(days=8), fixed_now)


def test_naive_marker_is_treated_as_utc(fixed_now):
    naive = (fixed_now - timedelta(hours=1)).replace(tzinfo=None)
    assert not DigestDeduplicator.is_eligible("daily", naive, fixed_now)


def test_filter_preserves_order(fixed_now):
    candidates = [
        result(None, "a"),
        result(fixed_now - timedelta(hours=2), "b"),
        result(fixed_now - timedelta(days=2), "c"),
        result(None, "d"),
    ]
    eligible = DigestDeduplicator.filter_eligible("daily", candidates, fixed_now)
    assert [r.name for r in eligible] == ["a", "c", "d"]


def test_marker_from_same_cycle_stays_eligible(fixed_now):
    # A sibling alert evaluated at the same instant already stamped the result
    assert DigestDeduplicator.is_eligible("instant", fixed_now, fixed_now)
    assert DigestDeduplicator.is_eligible("daily", fixed_now.replace(tzinfo=None), fixed_now)
