"""
End-to-end tests for the Engagement Pipeline

Runs the full flow: start a session, stream telemetry, ping progress and
end the session, all against in-memory storage.
"""

import asyncio

import pytest

from engagement_engine import (
    BreakReason,
    Caller,
    EngagementPipeline,
    NotFound,
    SessionClosed,
    SessionStatus,
)
from engagement_engine.storage import InMemorySessionStore


U1 = Caller(user_id="u1")


def run(coro):
    return asyncio.run(coro)


def samples(session_id, scores, start=1714554000):
    return [
        {
            "sessionId": session_id,
            "ts": start + i,
            "emotionLabel": "neutral",
            "emotionConfidence": 0.8,
            "attentionScore": score,
        }
        for i, score in enumerate(scores)
    ]


class TestEngagementPipeline:

    @pytest.fixture
    def pipeline(self, clock):
        return EngagementPipeline(clock=clock)

    def test_break_scenario(self, pipeline):
        """Third low sample in a row triggers the micro-break."""
        session = run(pipeline.start_session(U1, "l1", {"platform": "web"}))
        result = run(pipeline.ingest(U1, session.id, samples(session.id, [0.9, 0.35, 0.3, 0.32])))

        assert [d.should_break for d in result.decisions] == [False, False, False, True]
        assert result.decisions[3].reason == BreakReason.CONSECUTIVE_LOW
        assert result.errors == []
        assert result.should_break is True

    def test_progress_scenario(self, pipeline, clock):
        run(pipeline.ping_progress(U1, "l1", 30, 300, False))
        clock.advance(seconds=10)
        record = run(pipeline.ping_progress(U1, "l1", 20, 300, False))

        assert record.position_sec == 30
        assert record.last_ping_at == clock.now
        assert run(pipeline.get_progress(U1, "u1", "l1")).position_sec == 30

    def test_partial_batch_failure(self, pipeline):
        """One bad sample does not discard its valid siblings."""
        session = run(pipeline.start_session(U1, "l1"))
        batch = samples(session.id, [0.9, 0.8, 0.7])
        batch.insert(1, {"sessionId": session.id, "ts": "garbage"})
        batch.append({"ts": 1714554100, "attentionScore": 0.1})

        result = run(pipeline.ingest(U1, session.id, batch))

        assert len(result.decisions) == 5
        assert [e.index for e in result.errors] == [1, 4]
        assert all(e.error == "MalformedSample" for e in result.errors)
        assert run(pipeline.engagement_state(U1, session.id)).sample_count == 3

    def test_foreign_session_sample_reported(self, pipeline):
        session = run(pipeline.start_session(U1, "l1"))
        batch = samples(session.id, [0.9]) + samples("someone-else", [0.1], start=1714554050)

        result = run(pipeline.ingest(U1, session.id, batch))

        assert [e.index for e in result.errors] == [1]
        assert result.errors[0].error == "InvalidArgument"

    def test_duplicated_batch_does_not_double_count(self, pipeline):
        session = run(pipeline.start_session(U1, "l1"))
        batch = samples(session.id, [0.9, 0.3])
        run(pipeline.ingest(U1, session.id, batch))
        before = run(pipeline.engagement_state(U1, session.id))

        retry = run(pipeline.ingest(U1, session.id, batch))
        after = run(pipeline.engagement_state(U1, session.id))

        assert all(d.duplicate for d in retry.decisions)
        assert after.ema_attention == before.ema_attention
        assert after.sample_count == before.sample_count

    def test_ingest_unknown_session(self, pipeline):
        with pytest.raises(NotFound):
            run(pipeline.ingest(U1, "missing", []))

    def test_ingest_closed_session(self, pipeline):
        session = run(pipeline.start_session(U1, "l1"))
        run(pipeline.end_session(U1, session.id))

        with pytest.raises(SessionClosed):
            run(pipeline.ingest(U1, session.id, samples(session.id, [0.5])))

    def test_ingest_racing_end_leaves_no_state(self, clock):
        """A batch that passed the open check before the session ended is refused."""

        class YieldingStore(InMemorySessionStore):
            async def get_session(self, session_id):
                session = await super().get_session(session_id)
                await asyncio.sleep(0)
                return session

        pipeline = EngagementPipeline(session_store=YieldingStore(), clock=clock)
        session = run(pipeline.start_session(U1, "l1"))
        batch = samples(session.id, [0.9, 0.8])

        async def race():
            return await asyncio.gather(
                pipeline.end_session(U1, session.id),
                pipeline.ingest(U1, session.id, batch),
                return_exceptions=True,
            )

        ended, ingested = run(race())

        assert ended.status == SessionStatus.CLOSED
        assert isinstance(ingested, SessionClosed)
        assert pipeline.aggregator.active_sessions == 0
        assert run(pipeline.engagement_state(U1, session.id)) is None

    def test_polling_closed_sessions_keeps_no_locks(self, pipeline):
        for _ in range(20):
            session = run(pipeline.start_session(U1, "l1"))
            run(pipeline.ingest(U1, session.id, samples(session.id, [0.8])))
            run(pipeline.end_session(U1, session.id))
            assert run(pipeline.engagement_state(U1, session.id)) is None

        assert pipeline.aggregator._locks == {}
        assert pipeline.aggregator.active_sessions == 0

    def test_full_session_lifecycle(self, pipeline):
        session = run(pipeline.start_session(U1, "l1"))
        run(pipeline.ingest(U1, session.id, samples(session.id, [0.9, 0.8, 0.75, 0.2])))
        run(pipeline.ping_progress(U1, "l1", 120, 240, False))

        ended = run(pipeline.end_session(U1, session.id))
        again = run(pipeline.end_session(U1, session.id))

        assert ended.status == SessionStatus.CLOSED
        assert again == ended
        assert ended.engagement.sample_count == 4
        assert ended.engagement.low_pct == pytest.approx(0.25)
        assert run(pipeline.engagement_state(U1, session.id)) is None

    def test_restart_discards_previous_engagement(self, pipeline):
        first = run(pipeline.start_session(U1, "l1"))
        run(pipeline.ingest(U1, first.id, samples(first.id, [0.9, 0.9])))
        second = run(pipeline.start_session(U1, "l1"))

        abandoned = run(pipeline.get_session(U1, first.id))
        assert abandoned.engagement.sample_count == 2
        assert run(pipeline.engagement_state(U1, first.id)) is None
        assert run(pipeline.get_session(U1, second.id)).is_open

    def test_result_serialization(self, pipeline):
        session = run(pipeline.start_session(U1, "l1"))
        result = run(pipeline.ingest(U1, session.id, samples(session.id, [0.1])))

        assert result.to_dict() == {
            "decisions": [{"shouldBreak": True, "reason": "low_attention", "duplicate": False}],
            "errors": [],
        }
