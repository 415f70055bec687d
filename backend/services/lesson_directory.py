"""
Lesson Directory

Asks the lesson catalog service whether a lesson exists before progress is
recorded against it. Lesson CRUD itself lives in that service.
"""

import logging
from typing import Optional
from urllib.parse import quote

import httpx

from engagement_engine.errors import StorageUnavailable

logger = logging.getLogger(__name__)


class HttpLessonDirectory:
    """
    ``GET {base_url}/lessons/{lesson_id}``: 200 means the lesson exists,
    404 means it does not. Anything else is treated as the catalog being
    unavailable.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    async def __call__(self, lesson_id: str) -> bool:
        url = f"{self.base_url}/lessons/{quote(lesson_id, safe='')}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as http_client:
                response = await http_client.get(url)
        except httpx.HTTPError as e:
            logger.error(f"Lesson catalog request failed for {lesson_id}: {e}")
            raise StorageUnavailable("Lesson catalog unavailable") from e

        if response.status_code == 200:
            return True
        if response.status_code == 404:
            return False

        logger.error(f"Lesson catalog returned {response.status_code} for {lesson_id}")
        raise StorageUnavailable(f"Lesson catalog returned {response.status_code}")
