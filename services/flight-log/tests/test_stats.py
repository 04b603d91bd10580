"""Tests for the radar aggregation engine."""

from __future__ import annotations

import json
import math
from datetime import datetime, timedelta, timezone

import pytest

from blackbox.schemas import RadarStats
from blackbox.stats import (
    avg_duration_minutes,
    compute_radar_stats,
    hourly_distribution,
    landing_stats,
    location_name,
    location_ranking,
    monthly_sorties,
    recent_experience,
    total_flight_hours,
    weekly_distribution,
)

UTC = timezone.utc
NOW = datetime(2024, 1, 20, 12, 0, tzinfo=UTC)


def _place(**fields) -> str:
    return json.dumps(fields)


def test_two_flight_monday_scenario(make_track):
    # 2024-01-01 was a Monday
    records = [
        make_track("2024-01-01T08:00:00Z", minutes=90, experience=8),
        make_track("2024-01-01T14:00:00Z", minutes=60, landing_type="FORCED"),
    ]

    stats = compute_radar_stats(records, now=NOW, tz=UTC)

    assert stats.total_missions == 2
    assert stats.total_flight_hours == pytest.approx(2.5)
    assert stats.avg_duration_minutes == pytest.approx(75.0)
    assert stats.hourly_distribution[8] == 1
    assert stats.hourly_distribution[14] == 1
    assert stats.weekly_distribution[1] == 2
    assert stats.landing_stats.normal == 1
    assert stats.landing_stats.forced == 1
    assert stats.landing_stats.forced_rate == pytest.approx(0.5)
    assert stats.avg_experience == 8
    assert stats.recent_experience == [8]


def test_empty_record_set_yields_zeroed_stats():
    stats = compute_radar_stats([], now=NOW, tz=UTC)

    assert stats == RadarStats()
    assert stats.hourly_distribution == [0] * 24
    assert stats.weekly_distribution == [0] * 7
    assert stats.landing_stats.forced_rate == 0.0
    for value in (stats.total_flight_hours, stats.avg_duration_minutes, stats.avg_experience):
        assert value == 0
        assert not math.isnan(value)


def test_distributions_sum_to_total_missions(make_track):
    start = datetime(2024, 3, 1, 0, 30, tzinfo=UTC)
    records = [
        make_track((start + timedelta(hours=7 * i)).isoformat(), minutes=15 + i)
        for i in range(40)
    ]

    stats = compute_radar_stats(records, now=NOW, tz=UTC)

    assert sum(stats.hourly_distribution) == stats.total_missions == 40
    assert sum(stats.weekly_distribution) == 40
    assert stats.landing_stats.normal + stats.landing_stats.forced == 40


def test_total_hours_is_sum_of_per_record_durations(make_track):
    durations = [17, 45.5, 123, 1, 60]
    records = [
        make_track(f"2024-02-0{i + 1}T10:00:00Z", minutes=m) for i, m in enumerate(durations)
    ]

    assert total_flight_hours(records) == pytest.approx(sum(durations) / 60)
    assert avg_duration_minutes(records) == pytest.approx(sum(durations) / len(durations))


def test_hour_and_weekday_use_local_time(make_track):
    plus_eight = timezone(timedelta(hours=8))
    # Saturday 23:30 UTC is Sunday 07:30 at UTC+8
    records = [make_track("2024-01-06T23:30:00Z")]

    assert hourly_distribution(records, tz=plus_eight)[7] == 1
    assert weekly_distribution(records, tz=plus_eight)[0] == 1
    assert hourly_distribution(records, tz=UTC)[23] == 1
    assert weekly_distribution(records, tz=UTC)[6] == 1


def test_monthly_sorties_counts_current_local_month(make_track):
    minus_five = timezone(timedelta(hours=-5))
    now = datetime(2024, 2, 10, 12, 0, tzinfo=UTC)
    records = [
        make_track("2024-02-01T03:00:00Z"),  # still January 31st at UTC-5
        make_track("2024-02-01T06:00:00Z"),
        make_track("2024-02-29T23:00:00Z"),
        make_track("2024-03-01T06:00:00Z"),
    ]

    assert monthly_sorties(records, now=now, tz=minus_five) == 2
    assert monthly_sorties(records, now=now, tz=UTC) == 3


def test_recent_experience_windows_before_dropping_unrated(make_track):
    start = datetime(2024, 1, 1, 9, 0, tzinfo=UTC)
    ratings = [10, 9, 8, None, 6, 5, None, 3, 2, None, 1, 7]
    records = [
        make_track((start + timedelta(days=i)).isoformat(), experience=rating)
        for i, rating in enumerate(ratings)
    ]
    records.reverse()

    result = recent_experience(records)

    # the ten newest are indexes 2..11; three of those are unrated
    assert result == [8, 6, 5, 3, 2, 1, 7]
    assert len(result) <= 10


def test_recent_experience_is_chronological_regardless_of_input_order(make_track):
    records = [
        make_track("2024-01-03T10:00:00Z", experience=3),
        make_track("2024-01-01T10:00:00Z", experience=1),
        make_track("2024-01-02T10:00:00Z", experience=2),
    ]

    assert recent_experience(records) == [1, 2, 3]


def test_negative_durations_are_clamped_to_zero(make_track):
    broken = make_track("2024-01-01T10:00:00Z", minutes=-30)
    healthy = make_track("2024-01-02T10:00:00Z", minutes=60)

    assert total_flight_hours([broken, healthy]) == pytest.approx(1.0)


def test_unreadable_timestamp_does_not_abort_aggregation(make_track):
    broken = make_track("2024-01-01T10:00:00Z", experience=4)
    broken.takeoff_time = "not a timestamp"
    healthy = make_track("2024-01-01T10:00:00Z", experience=6)

    stats = compute_radar_stats([broken, healthy], now=NOW, tz=UTC)

    assert stats.total_missions == 2
    assert stats.total_flight_hours == pytest.approx(1.0)
    assert stats.hourly_distribution[10] == 1
    assert stats.avg_experience == 5


def test_landing_stats_with_no_records():
    result = landing_stats([])

    assert (result.normal, result.forced, result.forced_rate) == (0, 0, 0.0)


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        (_place(city="Hangzhou", district="Xihu"), "Hangzhou"),
        (_place(district="Xihu", name="Pier 3"), "Xihu"),
        (_place(name="Pier 3", address="1 Lake Road"), "Pier 3"),
        (_place(address="1 Lake Road"), "1 Lake Road"),
        (_place(city="  Suzhou "), "Suzhou"),
        (_place(country="China"), None),
        ("Beijing Airport", "Beijing Airport"),
        ('{"city": "Beij', '{"city": "Beij'),
        ("", None),
        (None, None),
        ("42", None),
        ('"Beijing"', None),
    ],
)
def test_location_name_precedence(raw, expected):
    assert location_name(raw) == expected


def test_ranking_counts_only_takeoff_locations(make_track):
    """Landing places add to diversity but never to the ranking counts.

    This asymmetry is intentional: counting landings too would put Shanghai
    first here.
    """
    records = [
        make_track("2024-01-01T08:00:00Z", takeoff_location=_place(city="Hangzhou"),
                   landing_location=_place(city="Shanghai")),
        make_track("2024-01-02T08:00:00Z", takeoff_location=_place(city="Hangzhou"),
                   landing_location=_place(city="Shanghai")),
        make_track("2024-01-03T08:00:00Z", takeoff_location=_place(city="Shanghai"),
                   landing_location=_place(city="Shanghai")),
    ]

    top, diversity = location_ranking(records)

    assert [(t.name, t.count) for t in top] == [("Hangzhou", 2), ("Shanghai", 1)]
    assert diversity == 2


def test_ranking_does_not_merge_similar_names(make_track):
    records = [
        make_track("2024-01-01T08:00:00Z", takeoff_location=_place(city="Beijing")),
        make_track("2024-01-02T08:00:00Z", takeoff_location="Beijing Airport"),
    ]

    top, diversity = location_ranking(records)

    assert {t.name for t in top} == {"Beijing", "Beijing Airport"}
    assert diversity == 2


def test_ranking_keeps_top_five_and_breaks_ties_by_first_seen(make_track):
    names = ["Alpha", "Bravo", "Charlie", "Delta", "Echo", "Foxtrot", "Bravo"]
    records = [
        make_track(f"2024-01-0{i + 1}T08:00:00Z", takeoff_location=_place(city=name))
        for i, name in enumerate(names)
    ]

    top, diversity = location_ranking(records)

    assert [t.name for t in top] == ["Bravo", "Alpha", "Charlie", "Delta", "Echo"]
    assert top[0].count == 2
    assert diversity == 6


def test_records_without_locations_contribute_nothing(make_track):
    records = [make_track("2024-01-01T08:00:00Z"), make_track("2024-01-02T08:00:00Z")]

    top, diversity = location_ranking(records)

    assert top == []
    assert diversity == 0
