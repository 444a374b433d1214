"""
Tests for display formatting and the synthetic safe-walk data
"""
import random
from datetime import datetime, timedelta, timezone

import pytest

from shesurvived.formatting import format_elapsed, latest_chunk_label, recording_duration, seek_chunk, time_ago
from shesurvived.heatmap import CITY_COORDINATES, city_label, generate_heat_points, generate_zones, safe_walk_view
from shesurvived.repository import parse_timestamp, to_timestamp

NOW = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


def ago(**kwargs):
    return to_timestamp(NOW - timedelta(**kwargs))


class TestFormatting:

    @pytest.mark.parametrize("seconds, expected", [
        (0, "00:00"),
        (5, "00:05"),
        (65, "01:05"),
        (3600, "60:00"),
        (-3, "00:00"),
    ])
    def test_format_elapsed(self, seconds, expected):
        assert format_elapsed(seconds) == expected

    @pytest.mark.parametrize("delta, expected", [
        (timedelta(seconds=30), "just now"),
        (timedelta(minutes=1), "1 minute ago"),
        (timedelta(minutes=12), "12 minutes ago"),
        (timedelta(hours=1, minutes=5), "1 hour ago"),
        (timedelta(hours=5), "5 hours ago"),
    ])
    def test_time_ago(self, delta, expected):
        assert time_ago(to_timestamp(NOW - delta), now=NOW) == expected

    def test_latest_chunk_label(self):
        assert latest_chunk_label(None, now=NOW) is None
        assert latest_chunk_label(ago(seconds=2), now=NOW) == "Just now"
        assert latest_chunk_label(ago(seconds=42), now=NOW) == "42 seconds ago"
        assert latest_chunk_label(ago(minutes=1), now=NOW) == "1 minute ago"
        assert latest_chunk_label(ago(minutes=3), now=NOW) == "3 minutes ago"

    def test_recording_duration_is_five_seconds_per_chunk(self):
        assert recording_duration(0) == 0
        assert format_elapsed(recording_duration(13)) == "01:05"

    def test_seek_chunk(self):
        assert seek_chunk(0.5, 0) == (0, 0.0)
        assert seek_chunk(0.0, 4) == (0, 0.0)
        assert seek_chunk(0.5, 4) == (2, 0.0)
        assert seek_chunk(1.0, 4) == (3, 1.0)
        assert seek_chunk(2.0, 4) == (3, 1.0)

    def test_timestamps_are_utc_with_milliseconds(self):
        stamp = to_timestamp(NOW)

        assert stamp == "2024-05-01T12:00:00.000Z"
        assert parse_timestamp(stamp) == NOW


class TestHeatmap:

    def test_points_stay_within_radius(self):
        center = CITY_COORDINATES["Agadir"]
        points = generate_heat_points(center, count=100, radius=10, rng=random.Random(5))

        assert len(points) == 100
        for lat, lng, weight in points:
            assert abs(lat - center[0]) <= 0.1 + 1e-9
            assert abs(lng - center[1]) <= 0.1 + 1e-9
            assert 0.5 <= weight <= 1.0

    def test_zones(self):
        zones = generate_zones(CITY_COORDINATES["Miami"], count=5, rng=random.Random(9))

        assert len(zones) == 5
        assert all(50 <= z.radius <= 150 for z in zones)

    def test_city_label(self):
        assert city_label((30.43, -9.6)) == "Agadir"
        assert city_label((0.0, 0.0)) == "Your Location"

    def test_safe_walk_view(self):
        view = safe_walk_view(CITY_COORDINATES["Chicago"], rng=random.Random(1))

        assert view.label == "Chicago"
        assert len(view.points) == 200
        assert len(view.zones) == 5
