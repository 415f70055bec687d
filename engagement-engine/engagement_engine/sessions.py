"""
Session Manager

Sole writer of session lifecycle state. Guarantees at most one open
session per (user, lesson): starting a new session closes ("abandons") the
previous one first. Closing a session also tells the engagement aggregator
to drop its state, keeping a final summary on the session record.
"""

import logging
import uuid
from typing import Any, Callable, Dict, Optional

from .aggregator import EngagementAggregator
from .errors import InvalidArgument, NotFound
from .locks import KeyedLock
from .models import Caller, Clock, EndReason, Session, utc_now
from .storage import SessionStore

logger = logging.getLogger(__name__)


def _new_session_id() -> str:
    return str(uuid.uuid4())


class SessionManager:

    def __init__(
        self,
        store: SessionStore,
        aggregator: EngagementAggregator,
        clock: Clock = utc_now,
        id_factory: Callable[[], str] = _new_session_id,
    ):
        self.store = store
        self.aggregator = aggregator
        self.clock = clock
        self.id_factory = id_factory
        self._key_locks = KeyedLock()

    async def start_session(
        self,
        caller: Caller,
        lesson_id: str,
        device_info: Optional[Dict[str, Any]] = None,
    ) -> Session:
        """
        Open a new session for the caller on a lesson.

        Any session still open for the same lesson is closed first with
        end reason ABANDONED.

        Raises:
            InvalidArgument: empty lesson id
            Conflict: another process opened a session concurrently
        """
        lesson_id = (lesson_id or "").strip()
        if not lesson_id:
            raise InvalidArgument("lessonId is required")
        _require_user(caller)

        async with self._key_locks.hold((caller.user_id, lesson_id)):
            previous = await self.store.find_open_session(caller.user_id, lesson_id)
            if previous is not None:
                await self._close(previous.id, EndReason.ABANDONED)
                logger.info(
                    f"Abandoned session {previous.id} for user {caller.user_id} "
                    f"on lesson {lesson_id}"
                )

            session = Session(
                id=self.id_factory(),
                user_id=caller.user_id,
                lesson_id=lesson_id,
                started_at=self.clock(),
                device_info=dict(device_info or {}),
            )
            session = await self.store.insert_session(session)

        logger.info(f"Started session {session.id} for user {caller.user_id} on lesson {lesson_id}")
        return session

    async def end_session(self, caller: Caller, session_id: str) -> Session:
        """
        Close a session. Ending an already closed session returns the
        stored record unchanged, since client retries make duplicate end
        calls routine.

        Raises:
            NotFound: unknown session, or one the caller does not own
        """
        session = await self.get_session(caller, session_id)
        if not session.is_open:
            return session

        async with self._key_locks.hold((session.user_id, session.lesson_id)):
            closed = await self._close(session.id, EndReason.ENDED)

        logger.info(f"Ended session {session.id} for user {session.user_id}")
        return closed

    async def get_session(self, caller: Caller, session_id: str) -> Session:
        """
        Raises:
            NotFound: unknown session, or one the caller does not own
        """
        session = await self.store.get_session(session_id) if session_id else None
        if session is None or session.user_id != caller.user_id:
            raise NotFound(f"Session {session_id} not found")
        return session

    async def _close(self, session_id: str, reason: EndReason) -> Session:
        # State is only dropped once the store has accepted the close
        final_state = self.aggregator.snapshot(session_id)
        summary = final_state.summarize() if final_state else None
        closed = await self.store.close_session(
            session_id,
            ended_at=self.clock(),
            end_reason=reason,
            engagement=summary,
        )
        if closed is None:
            raise NotFound(f"Session {session_id} not found")
        self.aggregator.discard(session_id)
        return closed


def _require_user(caller: Caller):
    if caller is None or not caller.user_id:
        raise InvalidArgument("caller identity is required")
