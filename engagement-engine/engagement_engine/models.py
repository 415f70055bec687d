"""
Domain Models

Plain dataclasses shared by every layer of the pipeline. Wire-facing
``to_dict`` output uses the camelCase keys the browser client speaks.
"""

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Deque, Dict, Optional


Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_iso(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


class SessionStatus(Enum):
    OPEN = "open"
    CLOSED = "closed"


class EndReason(Enum):
    ENDED = "ended"          # Explicit EndSession call
    ABANDONED = "abandoned"  # Superseded by a newer session on the same lesson


class BreakReason(Enum):
    """Why a micro-break was triggered."""
    LOW_ATTENTION = "low_attention"      # Smoothed attention below threshold
    CONSECUTIVE_LOW = "consecutive_low"  # Too many low samples in a row


class AggregatorPhase(Enum):
    """
    Lifecycle of per-session engagement tracking.

    UNINITIALIZED → TRACKING → COOLING → TRACKING → ... → DISCARDED
    """
    UNINITIALIZED = "uninitialized"
    TRACKING = "tracking"
    COOLING = "cooling"
    DISCARDED = "discarded"


@dataclass(frozen=True)
class Caller:
    """An already-authenticated user, handed in by the surrounding system."""
    user_id: str
    role: str = "student"


@dataclass
class EngagementSummary:
    """Final engagement figures for a closed session."""
    sample_count: int = 0
    avg_attention: float = 0.0
    final_ema: Optional[float] = None
    low_pct: float = 0.0
    med_pct: float = 0.0
    high_pct: float = 0.0
    break_count: int = 0
    duplicate_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sampleCount": self.sample_count,
            "avgAttention": round(self.avg_attention, 3),
            "finalEma": round(self.final_ema, 3) if self.final_ema is not None else None,
            "lowPct": round(self.low_pct, 3),
            "medPct": round(self.med_pct, 3),
            "highPct": round(self.high_pct, 3),
            "breakCount": self.break_count,
            "duplicateCount": self.duplicate_count,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EngagementSummary":
        return cls(
            sample_count=data.get("sampleCount", 0),
            avg_attention=data.get("avgAttention", 0.0),
            final_ema=data.get("finalEma"),
            low_pct=data.get("lowPct", 0.0),
            med_pct=data.get("medPct", 0.0),
            high_pct=data.get("highPct", 0.0),
            break_count=data.get("breakCount", 0),
            duplicate_count=data.get("duplicateCount", 0),
        )


@dataclass
class Session:
    """One continuous attempt by a learner at a lesson."""
    id: str
    user_id: str
    lesson_id: str
    started_at: datetime
    device_info: Dict[str, Any] = field(default_factory=dict)
    status: SessionStatus = SessionStatus.OPEN
    ended_at: Optional[datetime] = None
    end_reason: Optional[EndReason] = None
    engagement: Optional[EngagementSummary] = None

    @property
    def is_open(self) -> bool:
        return self.status == SessionStatus.OPEN

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "userId": self.user_id,
            "lessonId": self.lesson_id,
            "deviceInfo": dict(self.device_info),
            "startedAt": _iso(self.started_at),
            "endedAt": _iso(self.ended_at),
            "status": self.status.value,
            "endReason": self.end_reason.value if self.end_reason else None,
            "engagement": self.engagement.to_dict() if self.engagement else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Session":
        end_reason = data.get("endReason")
        engagement = data.get("engagement")
        return cls(
            id=data["id"],
            user_id=data["userId"],
            lesson_id=data["lessonId"],
            started_at=_parse_iso(data["startedAt"]),
            device_info=dict(data.get("deviceInfo") or {}),
            status=SessionStatus(data.get("status", SessionStatus.OPEN.value)),
            ended_at=_parse_iso(data.get("endedAt")),
            end_reason=EndReason(end_reason) if end_reason else None,
            engagement=EngagementSummary.from_dict(engagement) if engagement else None,
        )


@dataclass
class TelemetrySample:
    """One decoded emotion/attention reading."""
    session_id: str
    ts: datetime
    emotion_label: str
    emotion_confidence: float
    attention_score: float
    raw_signals: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "ts": self.ts.isoformat(),
            "emotionLabel": self.emotion_label,
            "emotionConfidence": round(self.emotion_confidence, 4),
            "attentionScore": round(self.attention_score, 4),
            "rawSignals": self.raw_signals,
        }


@dataclass
class MicroBreakDecision:
    """Transient answer to "should the learner take a break now?"."""
    should_break: bool
    reason: Optional[BreakReason] = None
    duplicate: bool = False

    @classmethod
    def no_break(cls, duplicate: bool = False) -> "MicroBreakDecision":
        return cls(should_break=False, reason=None, duplicate=duplicate)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "shouldBreak": self.should_break,
            "reason": self.reason.value if self.reason else None,
            "duplicate": self.duplicate,
        }


@dataclass
class EngagementState:
    """Per-session smoothing state. Only the aggregator mutates it."""
    session_id: str
    phase: AggregatorPhase = AggregatorPhase.UNINITIALIZED
    ema_attention: Optional[float] = None
    consecutive_low_count: int = 0
    last_break_at: Optional[datetime] = None
    break_cooldown_until: Optional[datetime] = None
    sample_count: int = 0

    # Reporting counters
    break_count: int = 0
    duplicate_count: int = 0
    attention_sum: float = 0.0
    low_count: int = 0
    medium_count: int = 0
    high_count: int = 0
    last_sample_ts: Optional[datetime] = None

    # Timestamps already folded, oldest first
    recent_ts: Deque[datetime] = field(default_factory=deque, repr=False)

    def is_cooling(self, now: datetime) -> bool:
        return self.break_cooldown_until is not None and now < self.break_cooldown_until

    def summarize(self) -> EngagementSummary:
        n = self.sample_count
        return EngagementSummary(
            sample_count=n,
            avg_attention=self.attention_sum / n if n else 0.0,
            final_ema=self.ema_attention,
            low_pct=self.low_count / n if n else 0.0,
            med_pct=self.medium_count / n if n else 0.0,
            high_pct=self.high_count / n if n else 0.0,
            break_count=self.break_count,
            duplicate_count=self.duplicate_count,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "phase": self.phase.value,
            "emaAttention": round(self.ema_attention, 4) if self.ema_attention is not None else None,
            "consecutiveLowCount": self.consecutive_low_count,
            "lastBreakAt": _iso(self.last_break_at),
            "breakCooldownUntil": _iso(self.break_cooldown_until),
            "sampleCount": self.sample_count,
            "breakCount": self.break_count,
            "duplicateCount": self.duplicate_count,
            "lastSampleTs": _iso(self.last_sample_ts),
        }


@dataclass
class ProgressRecord:
    """How far a learner has advanced through a lesson."""
    user_id: str
    lesson_id: str
    position_sec: float
    duration_sec: float
    completed: bool
    last_ping_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "userId": self.user_id,
            "lessonId": self.lesson_id,
            "positionSec": self.position_sec,
            "durationSec": self.duration_sec,
            "completed": self.completed,
            "lastPingAt": _iso(self.last_ping_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProgressRecord":
        return cls(
            user_id=data["userId"],
            lesson_id=data["lessonId"],
            position_sec=data.get("positionSec", 0),
            duration_sec=data.get("durationSec", 0),
            completed=bool(data.get("completed", False)),
            last_ping_at=_parse_iso(data["lastPingAt"]),
        )
