"""
Tests for the MongoDB stores, run against a fake async collection.
"""

import asyncio
import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest
from pymongo.errors import DuplicateKeyError, ServerSelectionTimeoutError

# Add backend and engine to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))
sys.path.insert(0, str(Path(__file__).parent.parent.parent / "engagement-engine"))

from engagement_engine import (  # noqa: E402
    Conflict,
    EndReason,
    EngagementSummary,
    ProgressRecord,
    Session,
    SessionStatus,
    StorageUnavailable,
)
from services.mongo_store import (  # noqa: E402
    MongoProgressStore,
    MongoSessionStore,
    doc_to_progress,
    doc_to_session,
    progress_to_doc,
    session_to_doc,
)


T0 = datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)


def run(coro):
    return asyncio.run(coro)


class FakeCollection:
    """Records calls and replays scripted results or errors."""

    def __init__(self, results=None, error=None):
        self.results = list(results or [])
        self.error = error
        self.calls = []

    async def _answer(self, name, /, *args, **kwargs):
        self.calls.append((name, args, kwargs))
        if isinstance(self.error, list):
            if self.error:
                raise self.error.pop(0)
        elif self.error is not None:
            raise self.error
        return self.results.pop(0) if self.results else None

    async def insert_one(self, *args, **kwargs):
        return await self._answer("insert_one", *args, **kwargs)

    async def find_one(self, *args, **kwargs):
        return await self._answer("find_one", *args, **kwargs)

    async def find_one_and_update(self, *args, **kwargs):
        return await self._answer("find_one_and_update", *args, **kwargs)

    async def create_index(self, *args, **kwargs):
        return await self._answer("create_index", *args, **kwargs)


class FakeDb:

    def __init__(self, sessions=None, progress=None):
        self.sessions = sessions or FakeCollection()
        self.progress = progress or FakeCollection()


def make_session(**overrides):
    fields = dict(id="s1", user_id="u1", lesson_id="l1", started_at=T0, device_info={"platform": "web"})
    fields.update(overrides)
    return Session(**fields)


class TestDocumentMapping:

    def test_session_doc_keeps_datetimes(self):
        doc = session_to_doc(make_session())
        assert doc["startedAt"] == T0
        assert doc["status"] == "open"
        assert doc["userId"] == "u1"

    def test_naive_datetimes_read_back_as_utc(self):
        doc = session_to_doc(make_session())
        doc["startedAt"] = T0.replace(tzinfo=None)
        session = doc_to_session(doc)
        assert session.started_at == T0
        assert session.started_at.tzinfo is not None

    def test_closed_session_mapping(self):
        closed = make_session(
            status=SessionStatus.CLOSED,
            ended_at=T0,
            end_reason=EndReason.ABANDONED,
            engagement=EngagementSummary(sample_count=3, avg_attention=0.5),
        )
        session = doc_to_session(session_to_doc(closed))
        assert session.end_reason == EndReason.ABANDONED
        assert session.engagement.sample_count == 3

    def test_progress_mapping(self):
        record = ProgressRecord(user_id="u1", lesson_id="l1", position_sec=42.0, duration_sec=300.0, completed=False, last_ping_at=T0)
        doc = progress_to_doc(record)
        assert doc["lastPingAt"] == T0
        assert doc_to_progress(doc).position_sec == 42.0


class TestMongoSessionStore:

    def test_duplicate_open_session_is_conflict(self):
        collection = FakeCollection(error=DuplicateKeyError("E11000 one_open_session_per_lesson"))
        store = MongoSessionStore(FakeDb(sessions=collection))
        with pytest.raises(Conflict):
            run(store.insert_session(make_session()))

    def test_unreachable_server_is_storage_unavailable(self):
        collection = FakeCollection(error=ServerSelectionTimeoutError("no servers"))
        store = MongoSessionStore(FakeDb(sessions=collection))
        with pytest.raises(StorageUnavailable):
            run(store.get_session("s1"))

    def test_close_only_matches_open_sessions(self):
        closed_doc = session_to_doc(make_session(status=SessionStatus.CLOSED, ended_at=T0, end_reason=EndReason.ENDED))
        collection = FakeCollection(results=[closed_doc])
        store = MongoSessionStore(FakeDb(sessions=collection))

        session = run(store.close_session("s1", T0, EndReason.ENDED))

        name, args, _ = collection.calls[0]
        assert name == "find_one_and_update"
        assert args[0] == {"id": "s1", "status": "open"}
        assert session.status == SessionStatus.CLOSED

    def test_close_already_closed_returns_stored(self):
        closed_doc = session_to_doc(make_session(status=SessionStatus.CLOSED, ended_at=T0, end_reason=EndReason.ENDED))
        collection = FakeCollection(results=[None, closed_doc])
        store = MongoSessionStore(FakeDb(sessions=collection))

        session = run(store.close_session("s1", T0, EndReason.ABANDONED))

        assert [call[0] for call in collection.calls] == ["find_one_and_update", "find_one"]
        assert session.end_reason == EndReason.ENDED

    def test_partial_unique_index(self):
        collection = FakeCollection()
        run(MongoSessionStore(FakeDb(sessions=collection)).ensure_indexes())
        _, _, kwargs = collection.calls[1]
        assert kwargs["unique"] is True
        assert kwargs["partialFilterExpression"] == {"status": "open"}


class TestMongoProgressStore:

    def record(self, position):
        return ProgressRecord(user_id="u1", lesson_id="l1", position_sec=position, duration_sec=300.0, completed=False, last_ping_at=T0)

    def test_save_uses_max_for_monotonic_fields(self):
        saved = progress_to_doc(self.record(120.0))
        collection = FakeCollection(results=[saved])
        store = MongoProgressStore(FakeDb(progress=collection))

        result = run(store.save_progress(self.record(120.0)))

        _, args, kwargs = collection.calls[0]
        assert args[1]["$max"] == {"positionSec": 120.0, "durationSec": 300.0, "completed": False}
        assert set(args[1]["$set"]) == {"lastPingAt"}
        assert kwargs["upsert"] is True
        assert result.position_sec == 120.0

    def test_racing_upsert_is_retried_once(self):
        saved = progress_to_doc(self.record(60.0))
        collection = FakeCollection(results=[saved], error=[DuplicateKeyError("E11000")])
        store = MongoProgressStore(FakeDb(progress=collection))

        result = run(store.save_progress(self.record(60.0)))

        assert len(collection.calls) == 2
        assert result.position_sec == 60.0

    def test_timeout_is_storage_unavailable(self):
        collection = FakeCollection(error=ServerSelectionTimeoutError("no servers"))
        store = MongoProgressStore(FakeDb(progress=collection))
        with pytest.raises(StorageUnavailable):
            run(store.get_progress("u1", "l1"))
