"""
Shared fixtures for evaluator tests.
"""

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from evaluator.store import ScriptStore


class FakeRedis:
    """In-memory stand-in for the redis.asyncio client with a manual clock."""

    def __init__(self):
        self.data = {}
        self.now = 0.0
        self.fail = False
        self.closed = False

    def advance(self, seconds: float):
        self.now += seconds

    async def set(self, key, value, ex=None):
        if self.fail:
            raise RedisConnectionError("Connection refused")
        expires = self.now + ex if ex else None
        self.data[key] = (value, expires)
        return True

    async def get(self, key):
        if self.fail:
            raise RedisConnectionError("Connection refused")
        item = self.data.get(key)
        if item is None:
            return None
        value, expires = item
        if expires is not None and self.now >= expires:
            del self.data[key]
            return None
        return value

    def ttl_of(self, key):
        value, expires = self.data[key]
        return None if expires is None else expires - self.now

    async def aclose(self):
        self.closed = True


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def store(fake_redis):
    return ScriptStore(ttl=30, client=fake_redis)
