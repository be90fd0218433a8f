from datetime import date, datetime, time, timedelta

import pytest

from periods import month_bounds, month_period, resolve_range, weekly_windows


def test_weekly_windows_cover_range_without_gaps():
    start, end = date(2026, 1, 1), date(2026, 1, 31)
    windows = weekly_windows(start, end)

    assert [w.slug for w in windows] == [f"Week {n}" for n in range(1, 6)]
    assert windows[0].start == start
    assert windows[-1].end == end
    for prev, nxt in zip(windows, windows[1:]):
        assert nxt.start == prev.end + timedelta(days=1)
    assert all(w.days <= 7 for w in windows)
    assert sum(w.days for w in windows) == (end - start).days + 1


def test_weekly_windows_truncate_last_window():
    windows = weekly_windows(date(2026, 2, 1), date(2026, 2, 10))
    assert [(w.start, w.end) for w in windows] == [
        (date(2026, 2, 1), date(2026, 2, 7)),
        (date(2026, 2, 8), date(2026, 2, 10)),
    ]


def test_weekly_windows_are_anchored_at_range_start_not_iso_weeks():
    # 2026-01-07 is a Wednesday; the first window still starts there.
    windows = weekly_windows(date(2026, 1, 7), date(2026, 1, 20))
    assert windows[0].start == date(2026, 1, 7)
    assert windows[1].start == date(2026, 1, 14)
    assert len(windows) == 2


def test_weekly_windows_single_day():
    windows = weekly_windows(date(2026, 3, 3), date(2026, 3, 3))
    assert len(windows) == 1
    assert windows[0].days == 1


def test_weekly_windows_rejects_inverted_range():
    with pytest.raises(ValueError):
        weekly_windows(date(2026, 3, 3), date(2026, 3, 1))


def test_month_period_handles_leap_years_and_december():
    assert month_period(2024, 2).end == date(2024, 2, 29)
    assert month_period(2025, 2).end == date(2025, 2, 28)
    dec = month_period(2025, 12)
    assert (dec.start, dec.end) == (date(2025, 12, 1), date(2025, 12, 31))


def test_month_bounds_cover_whole_last_day():
    start, end = month_bounds(2026, 4)
    assert start == datetime(2026, 4, 1, 0, 0)
    assert end == datetime.combine(date(2026, 4, 30), time.max)


def test_month_period_rejects_invalid_month():
    with pytest.raises(ValueError):
        month_period(2026, 13)


def test_resolve_range_open_bounds():
    assert resolve_range(None, None) == (None, None)
    start, end = resolve_range(date(2026, 1, 1), None)
    assert start == datetime(2026, 1, 1)
    assert end is None
    with pytest.raises(ValueError):
        resolve_range(date(2026, 2, 1), date(2026, 1, 1))
