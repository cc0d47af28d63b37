# coding=utf-8
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional

DURATION_LIMIT_REASON = "duration limit reached"


@dataclass(frozen=True)
class SessionPolicyDecision:
    expired: bool
    remaining_sec: float
    warn: bool
    warning_slot: Optional[int]
    minutes_remaining: int
    next_check_sec: float


class SessionPolicy:
    """
    Session duration cap with remaining-time warnings.

    Warnings are due once per ``warning_interval_sec`` slot after the remaining
    time drops to ``warning_threshold_sec`` or below.
    """

    def __init__(
        self,
        max_duration_sec: float = 7200.0,
        warning_threshold_sec: float = 300.0,
        warning_interval_sec: float = 60.0,
    ) -> None:
        self.max_duration_sec = max(0.001, float(max_duration_sec))
        self.warning_threshold_sec = max(0.0, float(warning_threshold_sec))
        self.warning_interval_sec = max(0.001, float(warning_interval_sec))

    def remaining(self, elapsed_sec: float) -> float:
        return max(0.0, self.max_duration_sec - max(0.0, float(elapsed_sec)))

    def evaluate(self, elapsed_sec: float, last_warning_slot: Optional[int] = None) -> SessionPolicyDecision:
        remaining = self.remaining(elapsed_sec)
        minutes = int(math.ceil(remaining / 60.0)) if remaining > 0 else 0
        if remaining <= 1e-6:
            return SessionPolicyDecision(
                expired=True,
                remaining_sec=0.0,
                warn=False,
                warning_slot=last_warning_slot,
                minutes_remaining=0,
                next_check_sec=0.0,
            )

        if remaining > self.warning_threshold_sec:
            return SessionPolicyDecision(
                expired=False,
                remaining_sec=remaining,
                warn=False,
                warning_slot=last_warning_slot,
                minutes_remaining=minutes,
                next_check_sec=remaining - self.warning_threshold_sec,
            )

        slot = max(1, int(math.ceil(remaining / self.warning_interval_sec - 1e-9)))
        warn = last_warning_slot is None or slot < int(last_warning_slot)
        next_check = remaining - (slot - 1) * self.warning_interval_sec
        return SessionPolicyDecision(
            expired=False,
            remaining_sec=remaining,
            warn=warn,
            warning_slot=slot if warn else last_warning_slot,
            minutes_remaining=max(1, minutes),
            next_check_sec=max(0.001, next_check),
        )
