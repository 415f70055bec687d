"""
Engagement Pipeline

The service object the transport layer talks to. It owns one instance of
each component, built from injected stores so that tests and separate
deployments never share state:

    client ── start ──▶ SessionManager ──▶ SessionStore
           ── ingest ─▶ TelemetryCodec ──▶ EngagementAggregator ──▶ MicroBreakPolicy
           ── ping ───▶ ProgressReconciler ──▶ ProgressStore
           ── end ────▶ SessionManager (discards aggregator state)
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from .aggregator import EngagementAggregator
from .codec import TelemetryCodec
from .errors import MalformedSample, SessionClosed
from .models import Caller, Clock, EngagementState, MicroBreakDecision, ProgressRecord, Session, utc_now
from .policy import MicroBreakPolicy
from .progress import LessonDirectory, ProgressReconciler, any_lesson_exists
from .sessions import SessionManager
from .storage import InMemoryProgressStore, InMemorySessionStore, ProgressStore, SessionStore

logger = logging.getLogger(__name__)


@dataclass
class SampleError:
    """Why one sample in a batch was skipped."""
    index: int
    error: str
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return {"index": self.index, "error": self.error, "message": self.message}


@dataclass
class IngestResult:
    """One decision per input sample, in input order, plus per-sample errors."""
    decisions: List[MicroBreakDecision] = field(default_factory=list)
    errors: List[SampleError] = field(default_factory=list)

    @property
    def should_break(self) -> bool:
        return any(d.should_break for d in self.decisions)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "decisions": [d.to_dict() for d in self.decisions],
            "errors": [e.to_dict() for e in self.errors],
        }


class EngagementPipeline:

    def __init__(
        self,
        session_store: Optional[SessionStore] = None,
        progress_store: Optional[ProgressStore] = None,
        policy: Optional[MicroBreakPolicy] = None,
        lesson_exists: LessonDirectory = any_lesson_exists,
        duplicate_window: int = 64,
        completion_ratio: Optional[float] = 0.95,
        clock: Clock = utc_now,
    ):
        self.codec = TelemetryCodec()
        self.aggregator = EngagementAggregator(
            policy=policy,
            duplicate_window=duplicate_window,
            clock=clock,
        )
        self.sessions = SessionManager(
            store=session_store or InMemorySessionStore(),
            aggregator=self.aggregator,
            clock=clock,
        )
        self.progress = ProgressReconciler(
            store=progress_store or InMemoryProgressStore(),
            lesson_exists=lesson_exists,
            completion_ratio=completion_ratio,
            clock=clock,
        )

    @property
    def policy(self) -> MicroBreakPolicy:
        return self.aggregator.policy

    # Sessions

    async def start_session(
        self,
        caller: Caller,
        lesson_id: str,
        device_info: Optional[Dict[str, Any]] = None,
    ) -> Session:
        return await self.sessions.start_session(caller, lesson_id, device_info)

    async def end_session(self, caller: Caller, session_id: str) -> Session:
        return await self.sessions.end_session(caller, session_id)

    async def get_session(self, caller: Caller, session_id: str) -> Session:
        return await self.sessions.get_session(caller, session_id)

    # Telemetry

    async def ingest(
        self,
        caller: Caller,
        session_id: str,
        raw_samples: Sequence[Any],
    ) -> IngestResult:
        """
        Decode and fold a batch of telemetry samples.

        Malformed samples, and samples addressed to another session, are
        reported per index without discarding their valid siblings.

        Raises:
            NotFound: unknown session, or one the caller does not own
            SessionClosed: the session has already ended
        """
        session = await self.sessions.get_session(caller, session_id)
        if not session.is_open:
            raise SessionClosed(f"Session {session_id} is closed")

        result = IngestResult(decisions=[MicroBreakDecision.no_break() for _ in raw_samples])
        valid_indexes: List[int] = []
        valid_samples = []

        for index, raw in enumerate(raw_samples):
            try:
                sample = self.codec.decode(raw, index=index)
            except MalformedSample as e:
                logger.warning(f"Skipping malformed sample {index} for session {session_id}: {e.message}")
                result.errors.append(SampleError(index, "MalformedSample", e.message))
                continue
            if sample.session_id != session.id:
                result.errors.append(SampleError(
                    index,
                    "InvalidArgument",
                    f"sample belongs to session {sample.session_id}, not {session.id}",
                ))
                continue
            valid_indexes.append(index)
            valid_samples.append(sample)

        for index, decision in zip(valid_indexes, self.aggregator.ingest_batch(valid_samples)):
            result.decisions[index] = decision

        return result

    async def engagement_state(self, caller: Caller, session_id: str) -> Optional[EngagementState]:
        """Polling view of the aggregator for an owned session."""
        session = await self.sessions.get_session(caller, session_id)
        return self.aggregator.snapshot(session.id)

    # Progress

    async def ping_progress(
        self,
        caller: Caller,
        lesson_id: str,
        position_sec: float,
        duration_sec: float,
        completed: bool = False,
    ) -> ProgressRecord:
        return await self.progress.apply_ping(caller, lesson_id, position_sec, duration_sec, completed)

    async def get_progress(self, caller: Caller, user_id: str, lesson_id: str) -> ProgressRecord:
        return await self.progress.get_progress(user_id or caller.user_id, lesson_id)
