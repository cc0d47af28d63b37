import pytest

from voxrelay.streaming.recreation_policy import RecreationPolicy


def test_time_cap_mode_ignores_early_finals():
    p = RecreationPolicy(mode="time_cap", max_stream_sec=240, soft_cap_sec=200)
    d = p.on_final(stream_age_sec=30.0)
    assert d.should_recreate is False
    assert d.reason == "none"


def test_time_cap_mode_recreates_on_final_after_soft_cap():
    p = RecreationPolicy(mode="time_cap", max_stream_sec=240, soft_cap_sec=200)
    d = p.on_final(stream_age_sec=201.0)
    assert d.should_recreate is True
    assert d.reason == "soft_cap"
    assert d.delay_sec == 0.0


def test_timer_recreates_at_hard_cap():
    p = RecreationPolicy(max_stream_sec=240, soft_cap_sec=200)
    assert p.on_timer(239.0).should_recreate is False
    d = p.on_timer(240.0)
    assert d.should_recreate is True
    assert d.reason == "hard_cap"
    assert p.time_until_hard_cap(100.0) == pytest.approx(140.0)
    assert p.time_until_hard_cap(300.0) == 0.0


def test_after_final_modes():
    assert RecreationPolicy(mode="after_final").on_final(1.0).should_recreate is True
    d = RecreationPolicy(mode="after_final_delayed", final_delay_sec=1.5).on_final(1.0)
    assert d.should_recreate is True
    assert d.delay_sec == 1.5


def test_unknown_mode_rejected_and_soft_cap_clamped():
    with pytest.raises(ValueError, match="recreation mode"):
        RecreationPolicy(mode="sometimes")
    p = RecreationPolicy(max_stream_sec=100, soft_cap_sec=500)
    assert p.soft_cap_sec == 100
