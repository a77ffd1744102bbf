"""
Unit tests for date helpers.

Tests cover:
- Timezone-aware current time
- Naive datetimes treated as UTC
- Elapsed minutes
"""

from datetime import datetime, timedelta, timezone

from shared_lib.utils.date import ensure_utc, minutes_since, utc_now


class TestDateHelpers:
    def test_utc_now_is_aware(self):
        assert utc_now().tzinfo == timezone.utc

    def test_ensure_utc(self):
        naive = datetime(2024, 12, 22, 10, 30)
        other_zone = datetime(2024, 12, 22, 10, 30, tzinfo=timezone(timedelta(hours=2)))

        assert ensure_utc(naive) == datetime(2024, 12, 22, 10, 30, tzinfo=timezone.utc)
        assert ensure_utc(other_zone) is other_zone

    def test_minutes_since(self):
        now = datetime(2024, 12, 22, 10, 30, tzinfo=timezone.utc)

        assert minutes_since(datetime(2024, 12, 22, 10, 0), now=now) == 30
        assert minutes_since(now + timedelta(minutes=5), now=now) == -5
