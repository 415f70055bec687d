"""
Engagement Engine - Session Engagement Pipeline

Watches a learner's attention during a lesson and decides when a
micro-break is due, while keeping session lifecycle and lesson progress
consistent over an unreliable network.

Layers:
1. Telemetry Codec (validation, normalization) - codec.py
2. Micro-Break Policy (thresholds, pure rules) - policy.py
3. Engagement Aggregator (EMA, cooldown, duplicates) - aggregator.py
4. Session Manager (lifecycle, single open session) - sessions.py
5. Progress Reconciler (monotonic, idempotent pings) - progress.py
6. Pipeline (service object for the transport layer) - pipeline.py
"""

from .errors import (
    PipelineError,
    InvalidArgument,
    MalformedSample,
    NotFound,
    Conflict,
    SessionClosed,
    StorageUnavailable,
)

from .models import (
    Caller,
    Session,
    SessionStatus,
    EndReason,
    TelemetrySample,
    EngagementState,
    EngagementSummary,
    AggregatorPhase,
    MicroBreakDecision,
    BreakReason,
    ProgressRecord,
    utc_now,
)

from .codec import TelemetryCodec, parse_timestamp, derive_attention, LABEL_ATTENTION
from .policy import MicroBreakPolicy
from .aggregator import EngagementAggregator
from .storage import (
    SessionStore,
    ProgressStore,
    InMemorySessionStore,
    InMemoryProgressStore,
)
from .sessions import SessionManager
from .progress import ProgressReconciler, merge_ping, any_lesson_exists
from .pipeline import EngagementPipeline, IngestResult, SampleError

__version__ = "0.1.0"
__all__ = [
    # Errors
    "PipelineError",
    "InvalidArgument",
    "MalformedSample",
    "NotFound",
    "Conflict",
    "SessionClosed",
    "StorageUnavailable",
    # Models
    "Caller",
    "Session",
    "SessionStatus",
    "EndReason",
    "TelemetrySample",
    "EngagementState",
    "EngagementSummary",
    "AggregatorPhase",
    "MicroBreakDecision",
    "BreakReason",
    "ProgressRecord",
    "utc_now",
    # Codec
    "TelemetryCodec",
    "parse_timestamp",
    "derive_attention",
    "LABEL_ATTENTION",
    # Policy & aggregation
    "MicroBreakPolicy",
    "EngagementAggregator",
    # Storage
    "SessionStore",
    "ProgressStore",
    "InMemorySessionStore",
    "InMemoryProgressStore",
    # Services
    "SessionManager",
    "ProgressReconciler",
    "merge_ping",
    "any_lesson_exists",
    "EngagementPipeline",
    "IngestResult",
    "SampleError",
]
