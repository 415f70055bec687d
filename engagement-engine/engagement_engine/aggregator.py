"""
Engagement Aggregator

Turns a noisy stream of attention samples into micro-break decisions.

Samples are folded in arrival order. Batches can arrive out of order across
network calls; each sample's own timestamp is used for duplicate detection
and bookkeeping only, never for reordering.

State is kept per session and mutated under that session's lock, so
concurrent batches for one session behave as if they were sequential while
different sessions proceed in parallel.
"""

import logging
import threading
from collections import OrderedDict, deque
from dataclasses import replace
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from .errors import SessionClosed
from .models import (
    AggregatorPhase,
    Clock,
    EngagementState,
    MicroBreakDecision,
    TelemetrySample,
    utc_now,
)
from .policy import MicroBreakPolicy

logger = logging.getLogger(__name__)

# How many closed session ids are remembered to refuse late samples
DISCARDED_MEMORY = 4096


class EngagementAggregator:
    """Per-session smoothing and break decisions."""

    def __init__(
        self,
        policy: Optional[MicroBreakPolicy] = None,
        duplicate_window: int = 64,
        clock: Clock = utc_now,
    ):
        """
        Args:
            policy: decision thresholds (defaults if omitted)
            duplicate_window: how many recent timestamps to remember per session
            clock: source of "now" for cooldown checks
        """
        self.policy = policy or MicroBreakPolicy()
        self.duplicate_window = max(1, duplicate_window)
        self.clock = clock

        self._states: Dict[str, EngagementState] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()
        self._discarded: "OrderedDict[str, None]" = OrderedDict()

    def _lock_for(self, session_id: str) -> threading.Lock:
        with self._registry_lock:
            if session_id in self._discarded:
                raise SessionClosed(f"Session {session_id} is closed")
            lock = self._locks.get(session_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[session_id] = lock
            return lock

    def ingest(self, sample: TelemetrySample) -> MicroBreakDecision:
        """Fold one sample and return the decision for it."""
        with self._lock_for(sample.session_id):
            return self._fold(sample)

    def ingest_batch(self, samples: Iterable[TelemetrySample]) -> List[MicroBreakDecision]:
        """
        Fold a batch in the order given.

        All samples must belong to the same session; the session lock is
        taken once for the whole batch.
        """
        samples = list(samples)
        if not samples:
            return []
        session_id = samples[0].session_id
        if any(s.session_id != session_id for s in samples):
            raise ValueError("ingest_batch expects samples from a single session")
        with self._lock_for(session_id):
            return [self._fold(sample) for sample in samples]

    def snapshot(self, session_id: str) -> Optional[EngagementState]:
        """Current state for a session, or None if nothing was folded yet."""
        with self._registry_lock:
            lock = self._locks.get(session_id)
        if lock is None:
            return None
        with lock:
            state = self._states.get(session_id)
            if state is None:
                return None
            self._refresh_phase(state, self.clock())
            return replace(state, recent_ts=deque(state.recent_ts))

    def discard(self, session_id: str) -> Optional[EngagementState]:
        """
        Drop all state for a session.

        Returns the final state so the caller can keep a summary, or None
        if the session never received a sample. Samples arriving for the
        session afterwards are refused with SessionClosed.
        """
        with self._registry_lock:
            lock = self._locks.get(session_id) or threading.Lock()
        with lock:
            state = self._states.pop(session_id, None)
            if state is not None:
                state.phase = AggregatorPhase.DISCARDED
            with self._registry_lock:
                self._locks.pop(session_id, None)
                self._discarded[session_id] = None
                self._discarded.move_to_end(session_id)
                while len(self._discarded) > DISCARDED_MEMORY:
                    self._discarded.popitem(last=False)
        if state is not None:
            logger.debug(f"Discarded engagement state for session {session_id}")
        return state

    @property
    def active_sessions(self) -> int:
        return len(self._states)

    # ------------------------------------------------------------------ #

    def _fold(self, sample: TelemetrySample) -> MicroBreakDecision:
        # The lock may have been taken just before a concurrent discard
        if sample.session_id in self._discarded:
            raise SessionClosed(f"Session {sample.session_id} is closed")
        state = self._states.get(sample.session_id)
        if state is None:
            state = EngagementState(session_id=sample.session_id)
            self._states[sample.session_id] = state

        if sample.ts in state.recent_ts:
            state.duplicate_count += 1
            logger.debug(f"Skipping duplicate sample {sample.ts.isoformat()} for session {sample.session_id}")
            return MicroBreakDecision.no_break(duplicate=True)
        state.recent_ts.append(sample.ts)
        while len(state.recent_ts) > self.duplicate_window:
            state.recent_ts.popleft()

        attention = sample.attention_score
        policy = self.policy

        state.ema_attention = policy.smooth(state.ema_attention, attention)
        if policy.is_low(attention):
            state.consecutive_low_count += 1
        else:
            state.consecutive_low_count = 0

        state.sample_count += 1
        state.attention_sum += attention
        state.last_sample_ts = sample.ts
        band = policy.band(attention)
        if band == "low":
            state.low_count += 1
        elif band == "high":
            state.high_count += 1
        else:
            state.medium_count += 1

        now = self.clock()
        decision = policy.decide(
            ema=state.ema_attention,
            consecutive_low_count=state.consecutive_low_count,
            now=now,
            cooldown_until=state.break_cooldown_until,
        )

        if decision.should_break:
            state.last_break_at = now
            state.break_cooldown_until = now + policy.cooldown
            state.break_count += 1
            state.consecutive_low_count = 0
            logger.info(
                f"Micro-break for session {sample.session_id}: {decision.reason.value} "
                f"(ema={state.ema_attention:.3f})"
            )

        self._refresh_phase(state, now)
        return decision

    @staticmethod
    def _refresh_phase(state: EngagementState, now: datetime):
        if state.phase == AggregatorPhase.DISCARDED or state.sample_count == 0:
            return
        state.phase = AggregatorPhase.COOLING if state.is_cooling(now) else AggregatorPhase.TRACKING
