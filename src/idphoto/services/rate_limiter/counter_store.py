"""Counter store backing the rate-limit windows.

Any KV store with atomic increment-with-TTL satisfies the CounterStore
protocol; RedisCounterStore is the production implementation.
"""

from dataclasses import dataclass
from typing import Protocol, Sequence

import redis.asyncio as redis


@dataclass(frozen=True)
class CounterIncrement:
    """One counter bump: add ``amount`` to ``key`` and (re)set its expiry."""

    key: str
    amount: int
    ttl_seconds: int


class CounterStore(Protocol):
    async def get(self, key: str) -> int: ...

    async def increment(self, increments: Sequence[CounterIncrement]) -> None: ...

    async def ttl(self, key: str) -> int: ...


class RedisCounterStore:
    """Redis-backed counters shared by every worker process."""

    def __init__(self, client: redis.Redis):
        """Initialize counter store.

        Args:
            client: Redis client created with decode_responses=True
        """
        self.client = client

    async def get(self, key: str) -> int:
        """Return the counter value, 0 when the key is missing or expired."""
        value = await self.client.get(key)
        if value is None:
            return 0
        return max(0, int(value))

    async def increment(self, increments: Sequence[CounterIncrement]) -> None:
        """Apply all increments in a single MULTI/EXEC transaction.

        INCRBY and EXPIRE for every counter execute atomically, so concurrent
        workers in separate processes never lose an update.
        """
        if not increments:
            return

        async with self.client.pipeline(transaction=True) as pipe:
            for increment in increments:
                pipe.incrby(increment.key, increment.amount)
                pipe.expire(increment.key, increment.ttl_seconds)
            await pipe.execute()

    async def ttl(self, key: str) -> int:
        """Seconds until the key expires; 0 if missing or without expiry."""
        remaining = await self.client.ttl(key)
        return max(0, remaining)
