"""Tests for reporting range normalization."""

from __future__ import annotations

from datetime import date

from analytics_hub.services.date_ranges import normalize_date_range, previous_period

TODAY = date(2026, 10, 19)
FLOOR = date(2020, 1, 1)


def _normalize(start, end):
    return normalize_date_range(start, end, today=TODAY, floor=FLOOR, default_days=30)


def test_missing_values_default_to_trailing_window() -> None:
    rng = _normalize(None, None)
    assert rng.end == TODAY
    assert rng.start == date(2026, 9, 19)
    assert rng.previous_end == date(2026, 9, 18)
    assert (rng.previous_end - rng.previous_start) == (rng.end - rng.start)


def test_previous_period_has_equal_length_and_precedes_start() -> None:
    start, end = date(2026, 3, 1), date(2026, 3, 10)
    prev_start, prev_end = previous_period(start, end)
    assert prev_end == date(2026, 2, 28)
    assert (prev_end - prev_start) == (end - start)


def test_inverted_range_keeps_its_length_and_ends_at_end() -> None:
    rng = _normalize("2026-03-10", "2026-03-01")
    assert rng.end == date(2026, 3, 1)
    assert rng.start == date(2026, 2, 20)


def test_inverted_range_in_the_future_ends_today() -> None:
    rng = _normalize("2026-12-31", "2026-12-01")
    assert rng.end == TODAY
    assert rng.days == 31


def test_dates_are_clamped_to_floor_and_tomorrow() -> None:
    rng = _normalize("2019-05-01", "2020-01-10")
    assert rng.start == FLOOR

    rng = _normalize("2026-10-01", "2027-01-01")
    assert rng.end == date(2026, 10, 20)


def test_unparseable_values_fall_back_to_defaults() -> None:
    rng = _normalize("yesterday", "")
    assert rng.end == TODAY
    assert rng.start == date(2026, 9, 19)


def test_range_key_and_strings() -> None:
    rng = _normalize("2026-01-01", "2026-01-31")
    assert rng.key == "2026-01-01:2026-01-31"
    assert rng.as_strings() == ("2026-01-01", "2026-01-31", "2025-12-01", "2025-12-31")
