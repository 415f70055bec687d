"""
MongoDB Storage

Session and progress stores backed by motor. The single-open-session
invariant is enforced by a partial unique index, and progress writes use
``$max`` on position, duration and completion so concurrent writers in
other processes can never move a record backwards.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ASCENDING, ReturnDocument
from pymongo.errors import ConnectionFailure, DuplicateKeyError, ExecutionTimeout

from engagement_engine.errors import Conflict, StorageUnavailable
from engagement_engine.models import EndReason, EngagementSummary, ProgressRecord, Session, SessionStatus
from engagement_engine.storage import ProgressStore, SessionStore

logger = logging.getLogger(__name__)

TRANSIENT_ERRORS = (ConnectionFailure, ExecutionTimeout)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _unavailable(action: str, error: Exception) -> StorageUnavailable:
    logger.error(f"MongoDB {action} failed: {error}")
    return StorageUnavailable(f"Storage unavailable during {action}")


def session_to_doc(session: Session) -> Dict[str, Any]:
    doc = session.to_dict()
    # Keep real datetimes in Mongo so they sort and index properly
    doc["startedAt"] = session.started_at
    doc["endedAt"] = session.ended_at
    return doc


def doc_to_session(doc: Dict[str, Any]) -> Session:
    session = Session.from_dict(doc)
    session.started_at = _aware(session.started_at)
    session.ended_at = _aware(session.ended_at)
    return session


def progress_to_doc(record: ProgressRecord) -> Dict[str, Any]:
    doc = record.to_dict()
    doc["lastPingAt"] = record.last_ping_at
    return doc


def doc_to_progress(doc: Dict[str, Any]) -> ProgressRecord:
    record = ProgressRecord.from_dict(doc)
    record.last_ping_at = _aware(record.last_ping_at)
    return record


class MongoSessionStore(SessionStore):

    def __init__(self, db):
        self.collection = db.sessions

    async def ensure_indexes(self):
        await self.collection.create_index([("id", ASCENDING)], unique=True)
        await self.collection.create_index(
            [("userId", ASCENDING), ("lessonId", ASCENDING)],
            unique=True,
            partialFilterExpression={"status": SessionStatus.OPEN.value},
            name="one_open_session_per_lesson",
        )

    async def insert_session(self, session: Session) -> Session:
        try:
            await self.collection.insert_one(session_to_doc(session))
        except DuplicateKeyError as e:
            raise Conflict(
                f"Session already open for user {session.user_id} on lesson {session.lesson_id}"
            ) from e
        except TRANSIENT_ERRORS as e:
            raise _unavailable("insert_session", e) from e
        return session

    async def get_session(self, session_id: str) -> Optional[Session]:
        try:
            doc = await self.collection.find_one({"id": session_id}, {"_id": 0})
        except TRANSIENT_ERRORS as e:
            raise _unavailable("get_session", e) from e
        return doc_to_session(doc) if doc else None

    async def find_open_session(self, user_id: str, lesson_id: str) -> Optional[Session]:
        try:
            doc = await self.collection.find_one(
                {"userId": user_id, "lessonId": lesson_id, "status": SessionStatus.OPEN.value},
                {"_id": 0},
            )
        except TRANSIENT_ERRORS as e:
            raise _unavailable("find_open_session", e) from e
        return doc_to_session(doc) if doc else None

    async def close_session(
        self,
        session_id: str,
        ended_at: datetime,
        end_reason: EndReason,
        engagement: Optional[EngagementSummary] = None,
    ) -> Optional[Session]:
        try:
            doc = await self.collection.find_one_and_update(
                {"id": session_id, "status": SessionStatus.OPEN.value},
                {"$set": {
                    "status": SessionStatus.CLOSED.value,
                    "endedAt": ended_at,
                    "endReason": end_reason.value,
                    "engagement": engagement.to_dict() if engagement else None,
                }},
                projection={"_id": 0},
                return_document=ReturnDocument.AFTER,
            )
            if doc is None:
                # Already closed (or never existed): return what is stored
                doc = await self.collection.find_one({"id": session_id}, {"_id": 0})
        except TRANSIENT_ERRORS as e:
            raise _unavailable("close_session", e) from e
        return doc_to_session(doc) if doc else None


class MongoProgressStore(ProgressStore):

    def __init__(self, db):
        self.collection = db.progress

    async def ensure_indexes(self):
        await self.collection.create_index(
            [("userId", ASCENDING), ("lessonId", ASCENDING)],
            unique=True,
        )

    async def get_progress(self, user_id: str, lesson_id: str) -> Optional[ProgressRecord]:
        try:
            doc = await self.collection.find_one({"userId": user_id, "lessonId": lesson_id}, {"_id": 0})
        except TRANSIENT_ERRORS as e:
            raise _unavailable("get_progress", e) from e
        return doc_to_progress(doc) if doc else None

    async def save_progress(self, record: ProgressRecord) -> ProgressRecord:
        try:
            try:
                doc = await self._upsert(record)
            except DuplicateKeyError:
                # Two first pings raced on the upsert; the second try updates
                doc = await self._upsert(record)
        except TRANSIENT_ERRORS as e:
            raise _unavailable("save_progress", e) from e
        return doc_to_progress(doc)

    async def _upsert(self, record: ProgressRecord) -> Dict[str, Any]:
        return await self.collection.find_one_and_update(
            {"userId": record.user_id, "lessonId": record.lesson_id},
            {
                "$max": {
                    "positionSec": record.position_sec,
                    "durationSec": record.duration_sec,
                    "completed": record.completed,
                },
                "$set": {"lastPingAt": record.last_ping_at},
            },
            projection={"_id": 0},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )


def create_mongo_stores(mongo_url: str, db_name: str):
    """
    Build motor-backed stores.

    Returns:
        (client, session_store, progress_store)
    """
    client = AsyncIOMotorClient(mongo_url, tz_aware=True)
    db = client[db_name]
    return client, MongoSessionStore(db), MongoProgressStore(db)
