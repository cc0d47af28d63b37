# coding=utf-8
from __future__ import annotations

from dataclasses import dataclass

RECREATION_MODES = ("time_cap", "after_final", "after_final_delayed")


@dataclass(frozen=True)
class RecreationDecision:
    should_recreate: bool
    reason: str
    delay_sec: float
    stream_age_sec: float


class RecreationPolicy:
    """
    Decide when to rotate the recognition stream before the upstream
    service's hard stream-duration limit cuts it.
    """

    def __init__(
        self,
        mode: str = "time_cap",
        max_stream_sec: float = 240.0,
        soft_cap_sec: float = 200.0,
        final_delay_sec: float = 1.0,
    ) -> None:
        normalized = str(mode or "time_cap").strip().lower()
        if normalized not in RECREATION_MODES:
            raise ValueError(f"unknown recreation mode: {mode}")
        self.mode = normalized
        self.max_stream_sec = max(0.01, float(max_stream_sec))
        self.soft_cap_sec = min(self.max_stream_sec, max(0.0, float(soft_cap_sec)))
        self.final_delay_sec = max(0.0, float(final_delay_sec))

    def time_until_hard_cap(self, stream_age_sec: float) -> float:
        return max(0.0, self.max_stream_sec - max(0.0, float(stream_age_sec)))

    def on_final(self, stream_age_sec: float) -> RecreationDecision:
        age = max(0.0, float(stream_age_sec))
        if self.mode == "after_final":
            return RecreationDecision(True, "after_final", 0.0, age)
        if self.mode == "after_final_delayed":
            return RecreationDecision(True, "after_final", self.final_delay_sec, age)
        if age >= self.soft_cap_sec:
            return RecreationDecision(True, "soft_cap", 0.0, age)
        return RecreationDecision(False, "none", 0.0, age)

    def on_timer(self, stream_age_sec: float) -> RecreationDecision:
        age = max(0.0, float(stream_age_sec))
        if age >= self.max_stream_sec:
            return RecreationDecision(True, "hard_cap", 0.0, age)
        return RecreationDecision(False, "none", 0.0, age)
