"""
Storage Interfaces

Durable records the pipeline depends on. Any store that honors these
contracts works; the in-memory versions back tests and single-process runs.

Contracts:
- ``SessionStore.insert_session`` is a conditional write: it raises
  ``Conflict`` if an open session already exists for the same
  (user, lesson) pair.
- ``SessionStore.close_session`` only transitions OPEN → CLOSED; closing an
  already closed session returns the stored record unchanged.
- ``ProgressStore.save_progress`` must never regress ``position_sec`` or
  ``completed`` relative to what is stored.
- Transient backend failures surface as ``StorageUnavailable``.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime
from typing import Dict, Optional, Tuple

from .errors import Conflict
from .models import EndReason, EngagementSummary, ProgressRecord, Session, SessionStatus


class SessionStore(ABC):

    @abstractmethod
    async def insert_session(self, session: Session) -> Session:
        ...

    @abstractmethod
    async def get_session(self, session_id: str) -> Optional[Session]:
        ...

    @abstractmethod
    async def find_open_session(self, user_id: str, lesson_id: str) -> Optional[Session]:
        ...

    @abstractmethod
    async def close_session(
        self,
        session_id: str,
        ended_at: datetime,
        end_reason: EndReason,
        engagement: Optional[EngagementSummary] = None,
    ) -> Optional[Session]:
        ...


class ProgressStore(ABC):

    @abstractmethod
    async def get_progress(self, user_id: str, lesson_id: str) -> Optional[ProgressRecord]:
        ...

    @abstractmethod
    async def save_progress(self, record: ProgressRecord) -> ProgressRecord:
        ...


class InMemorySessionStore(SessionStore):
    """Session records kept in a dict, guarded by one asyncio lock."""

    def __init__(self):
        self._sessions: Dict[str, Session] = {}
        self._open_index: Dict[Tuple[str, str], str] = {}
        self._lock = asyncio.Lock()

    async def insert_session(self, session: Session) -> Session:
        key = (session.user_id, session.lesson_id)
        async with self._lock:
            if session.is_open and key in self._open_index:
                raise Conflict(
                    f"Session {self._open_index[key]} is already open for "
                    f"user {session.user_id} on lesson {session.lesson_id}"
                )
            self._sessions[session.id] = replace(session)
            if session.is_open:
                self._open_index[key] = session.id
        return replace(session)

    async def get_session(self, session_id: str) -> Optional[Session]:
        session = self._sessions.get(session_id)
        return replace(session) if session else None

    async def find_open_session(self, user_id: str, lesson_id: str) -> Optional[Session]:
        session_id = self._open_index.get((user_id, lesson_id))
        if session_id is None:
            return None
        return await self.get_session(session_id)

    async def close_session(
        self,
        session_id: str,
        ended_at: datetime,
        end_reason: EndReason,
        engagement: Optional[EngagementSummary] = None,
    ) -> Optional[Session]:
        async with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return None
            if session.is_open:
                session.status = SessionStatus.CLOSED
                session.ended_at = ended_at
                session.end_reason = end_reason
                session.engagement = engagement
                self._open_index.pop((session.user_id, session.lesson_id), None)
            return replace(session)


class InMemoryProgressStore(ProgressStore):
    """Progress records keyed by (user, lesson)."""

    def __init__(self):
        self._records: Dict[Tuple[str, str], ProgressRecord] = {}
        self._lock = asyncio.Lock()

    async def get_progress(self, user_id: str, lesson_id: str) -> Optional[ProgressRecord]:
        record = self._records.get((user_id, lesson_id))
        return replace(record) if record else None

    async def save_progress(self, record: ProgressRecord) -> ProgressRecord:
        key = (record.user_id, record.lesson_id)
        async with self._lock:
            stored = self._records.get(key)
            if stored is not None:
                record = replace(
                    record,
                    position_sec=max(stored.position_sec, record.position_sec),
                    completed=stored.completed or record.completed,
                )
            self._records[key] = replace(record)
        return replace(record)
