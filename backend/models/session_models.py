"""
Engagement API Models

Pydantic request/response bodies for the session, telemetry and progress
endpoints. Field names follow the camelCase the browser client sends.
"""

from pydantic import BaseModel, ConfigDict, Field
from typing import Any, Dict, List, Optional


class StartSessionRequest(BaseModel):
    """API request body for opening a lesson session."""
    lessonId: str
    deviceInfo: Dict[str, Any] = Field(default_factory=dict)  # ua, platform, lang


class EndSessionRequest(BaseModel):
    sessionId: str


class EngagementSummaryModel(BaseModel):
    sampleCount: int = 0
    avgAttention: float = 0.0
    finalEma: Optional[float] = None
    lowPct: float = 0.0
    medPct: float = 0.0
    highPct: float = 0.0
    breakCount: int = 0
    duplicateCount: int = 0


class SessionResponse(BaseModel):
    id: str
    userId: str
    lessonId: str
    deviceInfo: Dict[str, Any] = Field(default_factory=dict)
    startedAt: str
    endedAt: Optional[str] = None
    status: str  # open, closed
    endReason: Optional[str] = None  # ended, abandoned
    engagement: Optional[EngagementSummaryModel] = None


class IngestRequest(BaseModel):
    """
    API request body for a telemetry batch.

    Samples stay loosely typed: each one is decoded individually so a bad
    sample is reported instead of failing the whole batch.
    """
    model_config = ConfigDict(extra="ignore")

    sessionId: str
    samples: List[Any] = Field(default_factory=list)


class DecisionModel(BaseModel):
    shouldBreak: bool
    reason: Optional[str] = None  # low_attention, consecutive_low
    duplicate: bool = False


class SampleErrorModel(BaseModel):
    index: int
    error: str
    message: str


class IngestResponse(BaseModel):
    """One decision per input sample, in input order."""
    decisions: List[DecisionModel] = []
    errors: List[SampleErrorModel] = []


class EngagementStateResponse(BaseModel):
    sessionId: str
    phase: str  # uninitialized, tracking, cooling, discarded
    emaAttention: Optional[float] = None
    consecutiveLowCount: int = 0
    lastBreakAt: Optional[str] = None
    breakCooldownUntil: Optional[str] = None
    sampleCount: int = 0
    breakCount: int = 0
    duplicateCount: int = 0
    lastSampleTs: Optional[str] = None
    cooling: bool = False


class ProgressPingRequest(BaseModel):
    lessonId: str
    positionSec: float = Field(ge=0, allow_inf_nan=False)
    durationSec: float = Field(default=0, ge=0, allow_inf_nan=False)
    completed: bool = False


class ProgressResponse(BaseModel):
    userId: str
    lessonId: str
    positionSec: float
    durationSec: float
    completed: bool
    lastPingAt: str
