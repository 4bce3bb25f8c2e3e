from datetime import datetime

from checkout_recovery.services.call_window import adjust_to_window, next_retry_at, parse_hhmm


def test_parse_hhmm():
    assert parse_hhmm("09:00") == 540
    assert parse_hhmm("23:59") == 23 * 60 + 59
    assert parse_hhmm("24:00") is None
    assert parse_hhmm("9am") is None
    assert parse_hhmm(None) is None


def test_inside_window_is_unchanged():
    t = datetime(2026, 1, 6, 12, 30)
    assert adjust_to_window(t, "09:00", "19:00", "UTC") == t


def test_window_bounds_are_inclusive():
    t = datetime(2026, 1, 6, 19, 0)
    assert adjust_to_window(t, "09:00", "19:00", "UTC") == t
    t = datetime(2026, 1, 6, 9, 0)
    assert adjust_to_window(t, "09:00", "19:00", "UTC") == t


def test_after_window_moves_to_next_day_start():
    # Tuesday 20:00 -> Wednesday 09:00
    t = datetime(2026, 1, 6, 20, 0)
    assert adjust_to_window(t, "09:00", "19:00", "UTC") == datetime(2026, 1, 7, 9, 0)


def test_before_window_moves_to_same_day_start():
    t = datetime(2026, 1, 6, 6, 15)
    assert adjust_to_window(t, "09:00", "19:00", "UTC") == datetime(2026, 1, 6, 9, 0)


def test_window_in_shop_timezone():
    # 06:00 UTC is 07:00 in Berlin (winter); window opens 09:00 Berlin == 08:00 UTC
    t = datetime(2026, 1, 6, 6, 0)
    assert adjust_to_window(t, "09:00", "19:00", "Europe/Berlin") == datetime(2026, 1, 6, 8, 0)
    # 18:30 UTC is 19:30 Berlin -> next day 09:00 Berlin
    t = datetime(2026, 1, 6, 18, 30)
    assert adjust_to_window(t, "09:00", "19:00", "Europe/Berlin") == datetime(2026, 1, 7, 8, 0)


def test_malformed_bounds_fall_back_to_defaults():
    t = datetime(2026, 1, 6, 20, 0)
    assert adjust_to_window(t, "nine", "", "UTC") == datetime(2026, 1, 7, 9, 0)


def test_reversed_bounds_are_normalised():
    t = datetime(2026, 1, 6, 7, 0)
    assert adjust_to_window(t, "19:00", "09:00", "UTC") == datetime(2026, 1, 6, 9, 0)


def test_unknown_timezone_uses_utc():
    t = datetime(2026, 1, 6, 20, 0)
    assert adjust_to_window(t, "09:00", "19:00", "Mars/Olympus") == datetime(2026, 1, 7, 9, 0)


def test_next_retry_at_adds_delay_then_snaps():
    now = datetime(2026, 1, 6, 17, 0)
    assert next_retry_at(now, 60, "09:00", "19:00", "UTC") == datetime(2026, 1, 6, 18, 0)
    assert next_retry_at(now, 180, "09:00", "19:00", "UTC") == datetime(2026, 1, 7, 9, 0)
