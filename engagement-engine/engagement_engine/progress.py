"""
Progress Reconciler

Applies lesson-progress pings to the progress ledger. Pings come from a
client with intermittent connectivity, so they may be duplicated, replayed
or arrive out of order. The merge is monotonic and idempotent:

- position only moves forward
- completed only flips false → true
- a ping that advances nothing is still accepted and refreshes lastPingAt
"""

import logging
import math
from dataclasses import replace
from typing import Awaitable, Callable, Optional

from .errors import InvalidArgument, NotFound
from .locks import KeyedLock
from .models import Caller, Clock, ProgressRecord, utc_now
from .storage import ProgressStore

logger = logging.getLogger(__name__)


LessonDirectory = Callable[[str], Awaitable[bool]]


async def any_lesson_exists(lesson_id: str) -> bool:
    return True


def merge_ping(
    stored: Optional[ProgressRecord],
    incoming: ProgressRecord,
) -> ProgressRecord:
    """
    Merge a ping into the stored record.

    The stored record only changes if the ping moves the position forward
    or newly marks the lesson completed. ``last_ping_at`` always comes from
    the incoming ping.
    """
    if stored is None:
        return incoming

    advances_position = incoming.position_sec > stored.position_sec
    newly_completed = incoming.completed and not stored.completed

    if not (advances_position or newly_completed):
        return replace(stored, last_ping_at=incoming.last_ping_at)

    duration = incoming.duration_sec if incoming.duration_sec > 0 else stored.duration_sec
    return replace(
        stored,
        position_sec=max(stored.position_sec, incoming.position_sec),
        duration_sec=duration,
        completed=stored.completed or incoming.completed,
        last_ping_at=incoming.last_ping_at,
    )


class ProgressReconciler:

    def __init__(
        self,
        store: ProgressStore,
        lesson_exists: LessonDirectory = any_lesson_exists,
        completion_ratio: Optional[float] = 0.95,
        clock: Clock = utc_now,
    ):
        """
        Args:
            store: progress ledger
            lesson_exists: async check against the lesson catalog
            completion_ratio: position/duration at which a lesson counts as
                completed even if the client did not say so; None disables
            clock: source of lastPingAt
        """
        if completion_ratio is not None and not 0.0 < completion_ratio <= 1.0:
            raise InvalidArgument(f"completion_ratio must be in (0, 1], got {completion_ratio}")
        self.store = store
        self.lesson_exists = lesson_exists
        self.completion_ratio = completion_ratio
        self.clock = clock
        self._key_locks = KeyedLock()

    async def apply_ping(
        self,
        caller: Caller,
        lesson_id: str,
        position_sec: float,
        duration_sec: float,
        completed: bool = False,
    ) -> ProgressRecord:
        """
        Merge one progress ping for the caller and return the stored record.

        Raises:
            InvalidArgument: empty lesson id, negative or non-finite position/duration
            NotFound: the lesson is unknown to the catalog
        """
        lesson_id = (lesson_id or "").strip()
        if not lesson_id:
            raise InvalidArgument("lessonId is required")
        if not caller or not caller.user_id:
            raise InvalidArgument("caller identity is required")
        if position_sec is None or not math.isfinite(position_sec) or position_sec < 0:
            raise InvalidArgument("positionSec must be a finite number >= 0")
        if duration_sec is None or not math.isfinite(duration_sec) or duration_sec < 0:
            raise InvalidArgument("durationSec must be a finite number >= 0")

        if not await self.lesson_exists(lesson_id):
            logger.warning(f"Progress ping for unknown lesson {lesson_id} from user {caller.user_id}")
            raise NotFound(f"Lesson {lesson_id} not found")

        incoming = ProgressRecord(
            user_id=caller.user_id,
            lesson_id=lesson_id,
            position_sec=position_sec,
            duration_sec=duration_sec,
            completed=bool(completed) or self._reached_end(position_sec, duration_sec),
            last_ping_at=self.clock(),
        )

        async with self._key_locks.hold((caller.user_id, lesson_id)):
            stored = await self.store.get_progress(caller.user_id, lesson_id)
            merged = merge_ping(stored, incoming)
            saved = await self.store.save_progress(merged)

        if stored is None:
            logger.info(f"Created progress for user {caller.user_id} on lesson {lesson_id}")
        elif saved.completed and not stored.completed:
            logger.info(f"User {caller.user_id} completed lesson {lesson_id}")
        return saved

    async def get_progress(self, user_id: str, lesson_id: str) -> ProgressRecord:
        """
        Raises:
            NotFound: no ping was ever recorded for this pair
        """
        record = await self.store.get_progress(user_id, lesson_id)
        if record is None:
            raise NotFound(f"No progress for user {user_id} on lesson {lesson_id}")
        return record

    def _reached_end(self, position_sec: float, duration_sec: float) -> bool:
        if self.completion_ratio is None or duration_sec <= 0:
            return False
        return position_sec / duration_sec >= self.completion_ratio
