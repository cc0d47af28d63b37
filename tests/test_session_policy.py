import pytest

from voxrelay.streaming.session_policy import SessionPolicy


def test_no_warning_before_threshold():
    p = SessionPolicy(max_duration_sec=7200, warning_threshold_sec=300, warning_interval_sec=60)
    d = p.evaluate(elapsed_sec=100.0)
    assert d.expired is False
    assert d.warn is False
    assert d.next_check_sec == pytest.approx(7200 - 100 - 300)


def test_first_warning_at_threshold_then_once_per_interval():
    p = SessionPolicy(max_duration_sec=7200, warning_threshold_sec=300, warning_interval_sec=60)
    d = p.evaluate(elapsed_sec=6900.0)
    assert d.warn is True
    assert d.minutes_remaining == 5
    assert d.warning_slot == 5

    again = p.evaluate(elapsed_sec=6930.0, last_warning_slot=d.warning_slot)
    assert again.warn is False
    assert again.warning_slot == 5

    nxt = p.evaluate(elapsed_sec=6960.0, last_warning_slot=d.warning_slot)
    assert nxt.warn is True
    assert nxt.minutes_remaining == 4
    assert nxt.warning_slot == 4


def test_next_check_lands_on_slot_boundary():
    p = SessionPolicy(max_duration_sec=7200, warning_threshold_sec=300, warning_interval_sec=60)
    d = p.evaluate(elapsed_sec=6910.0)
    # remaining 290 -> slot 5; next slot starts at remaining 240
    assert d.next_check_sec == pytest.approx(50.0)


def test_expired_at_cap():
    p = SessionPolicy(max_duration_sec=10, warning_threshold_sec=5, warning_interval_sec=1)
    d = p.evaluate(elapsed_sec=10.0)
    assert d.expired is True
    assert d.remaining_sec == 0.0
    assert p.evaluate(elapsed_sec=50.0).expired is True
