"""
Micro-Break Policy

Pure decision rules consulted by the engagement aggregator. Thresholds live
here so they can be tuned without touching the aggregation bookkeeping.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from .errors import InvalidArgument
from .models import BreakReason, MicroBreakDecision


@dataclass(frozen=True)
class MicroBreakPolicy:
    """
    Thresholds for break decisions.

    Args:
        low_threshold: attention below this counts as low (0-1, exclusive)
        consecutive_low_limit: low samples in a row that force a break
        cooldown: minimum time between two breaks
        ema_alpha: weight of the newest sample in the moving average
        high_threshold: attention above this counts as high (reporting only)
    """
    low_threshold: float = 0.4
    consecutive_low_limit: int = 3
    cooldown: timedelta = timedelta(minutes=5)
    ema_alpha: float = 0.3
    high_threshold: float = 0.7

    def __post_init__(self):
        if not 0.0 < self.low_threshold < 1.0:
            raise InvalidArgument(f"low_threshold must be in (0, 1), got {self.low_threshold}")
        if isinstance(self.consecutive_low_limit, bool) or not isinstance(self.consecutive_low_limit, int):
            raise InvalidArgument("consecutive_low_limit must be an integer")
        if self.consecutive_low_limit < 1:
            raise InvalidArgument(f"consecutive_low_limit must be >= 1, got {self.consecutive_low_limit}")
        if self.cooldown < timedelta(0):
            raise InvalidArgument("cooldown must not be negative")
        if not 0.0 < self.ema_alpha < 1.0:
            raise InvalidArgument(f"ema_alpha must be in (0, 1), got {self.ema_alpha}")
        if not self.low_threshold <= self.high_threshold <= 1.0:
            raise InvalidArgument("high_threshold must be between low_threshold and 1")

    @classmethod
    def from_settings(
        cls,
        low_threshold: float = 0.4,
        consecutive_low_limit: int = 3,
        cooldown_seconds: float = 300,
        ema_alpha: float = 0.3,
    ) -> "MicroBreakPolicy":
        return cls(
            low_threshold=low_threshold,
            consecutive_low_limit=consecutive_low_limit,
            cooldown=timedelta(seconds=cooldown_seconds),
            ema_alpha=ema_alpha,
        )

    def smooth(self, ema: Optional[float], attention: float) -> float:
        """Fold one attention score into the moving average."""
        if ema is None:
            return attention
        return self.ema_alpha * attention + (1 - self.ema_alpha) * ema

    def is_low(self, attention: float) -> bool:
        return attention < self.low_threshold

    def band(self, attention: float) -> str:
        """Reporting band for an attention score: low, medium or high."""
        if attention < self.low_threshold:
            return "low"
        if attention > self.high_threshold:
            return "high"
        return "medium"

    def decide(
        self,
        ema: float,
        consecutive_low_count: int,
        now: datetime,
        cooldown_until: Optional[datetime] = None,
    ) -> MicroBreakDecision:
        """
        Decide whether a break is due.

        Rules, first match wins:
        1. Inside the cooldown window → no break
        2. Smoothed attention below threshold → LOW_ATTENTION
        3. Enough low samples in a row → CONSECUTIVE_LOW
        """
        if cooldown_until is not None and now < cooldown_until:
            return MicroBreakDecision.no_break()
        if ema < self.low_threshold:
            return MicroBreakDecision(should_break=True, reason=BreakReason.LOW_ATTENTION)
        if consecutive_low_count >= self.consecutive_low_limit:
            return MicroBreakDecision(should_break=True, reason=BreakReason.CONSECUTIVE_LOW)
        return MicroBreakDecision.no_break()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lowThreshold": self.low_threshold,
            "consecutiveLowLimit": self.consecutive_low_limit,
            "cooldownSeconds": self.cooldown.total_seconds(),
            "emaAlpha": self.ema_alpha,
            "highThreshold": self.high_threshold,
        }
