"""
Staging store for generated wrapper scripts.

Scripts are kept in Redis under ``scripts:{id}`` with a short TTL so that a
sandbox worker can fetch them by URL. Expiry is the only deletion path.
"""

import logging
import uuid
from typing import Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

SCRIPTS_KEY = "scripts"
DEFAULT_TTL = 30


class StoreUnavailableError(Exception):
    """Raised when the staging store cannot be reached."""
    pass


class ScriptStore:
    """
    Redis-backed store for staged scripts.

    One client is created on ``start()`` and shared by every request until
    ``stop()``. Keys are unique per ``put`` and never rewritten, so concurrent
    requests need no coordination.
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379/0",
        ttl: int = DEFAULT_TTL,
        client: Optional[redis.Redis] = None
    ):
        self.redis_url = redis_url
        self.ttl = ttl
        self.redis: Optional[redis.Redis] = client
        self._owns_client = client is None

    async def start(self):
        """Open the Redis client."""
        if self.redis is None:
            logger.info("Connecting script store")
            self.redis = redis.from_url(self.redis_url, decode_responses=True)
            self._owns_client = True

    async def stop(self):
        """Close the Redis client if this store created it."""
        if self.redis is not None and self._owns_client:
            await self.redis.aclose()
            self.redis = None
            logger.info("Script store closed")

    @staticmethod
    def key(script_id: str) -> str:
        return f"{SCRIPTS_KEY}:{script_id}"

    async def put(self, content: str) -> str:
        """
        Stage a script under a fresh random id.

        Args:
            content: Script text

        Returns:
            The new script id
        """
        if self.redis is None:
            raise StoreUnavailableError("Script store not started")

        script_id = str(uuid.uuid4())
        try:
            await self.redis.set(self.key(script_id), content, ex=self.ttl)
        except RedisError as e:
            logger.error(f"Failed to stage script: {e}")
            raise StoreUnavailableError(str(e)) from e

        logger.debug(f"Staged script {script_id} (ttl={self.ttl}s)")
        return script_id

    async def get(self, script_id: str) -> Optional[str]:
        """
        Fetch a staged script.

        Returns:
            Script text, or None if the id is unknown, malformed or expired
        """
        try:
            uuid.UUID(script_id)
        except ValueError:
            return None

        if self.redis is None:
            raise StoreUnavailableError("Script store not started")

        try:
            value = await self.redis.get(self.key(script_id))
        except RedisError as e:
            logger.error(f"Failed to read staged script: {e}")
            raise StoreUnavailableError(str(e)) from e

        if isinstance(value, bytes):
            value = value.decode("utf-8")
        return value
