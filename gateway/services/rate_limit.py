"""
Sliding-window rate limiting

Every admitted request is recorded with its timestamp. A new request is
admitted while fewer than ``limit`` admitted requests fall inside the window
that ends now. The counting itself happens in the store so that concurrent
checks for the same user stay correct without any in-process locking.
"""

from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Deque, Dict, Optional
from motor.motor_asyncio import AsyncIOMotorCollection
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError
import logging
import time

from gateway.core.exceptions import RateLimiterUnavailable

logger = logging.getLogger(__name__)


def now_ms() -> int:
    return int(time.time() * 1000)


def format_reset_message(reset: int) -> str:
    """Human readable retry notice for a rejected request"""
    reset_at = datetime.fromtimestamp(reset / 1000, tz=timezone.utc)
    return (
        "Your rate limit has been exceeded. "
        f"You can chat again from {reset_at.strftime('%m/%d/%Y, %I:%M:%S %p')} GMT"
    )


@dataclass(frozen=True)
class RateLimitResult:
    success: bool
    limit: int
    remaining: int
    reset: int  # ms since epoch when the oldest counted request leaves the window


class RateLimitStore:
    """Atomic increment-and-check backend used by :class:`RateLimiter`"""

    async def increment_and_check(self, key: str, limit: int, window_ms: int, now: int) -> RateLimitResult:
        raise NotImplementedError


class MemoryRateLimitStore(RateLimitStore):
    """In-process store for development and tests (single event loop only)"""

    def __init__(self):
        self._hits: Dict[str, Deque[int]] = {}

    async def increment_and_check(self, key: str, limit: int, window_ms: int, now: int) -> RateLimitResult:
        # No await between reading and writing the window, so this is atomic per loop
        hits = self._hits.get(key, deque())
        while hits and hits[0] <= now - window_ms:
            hits.popleft()
        if not hits:
            self._hits.pop(key, None)

        if len(hits) >= limit:
            reset = hits[0] + window_ms if hits else now + window_ms
            return RateLimitResult(success=False, limit=limit, remaining=0, reset=reset)

        hits.append(now)
        self._hits[key] = hits
        return RateLimitResult(
            success=True,
            limit=limit,
            remaining=limit - len(hits),
            reset=hits[0] + window_ms
        )


class MongoRateLimitStore(RateLimitStore):
    """
    Rate limit windows stored as one document per key: ``{_id, hits, expire_at}``.

    Expired hits are pulled first, then a single conditional
    ``find_one_and_update`` appends the new hit only if the ``hits`` array is
    still shorter than the limit. When the window is full the filter does not
    match and the upsert collides with the existing ``_id``.
    """

    def __init__(self, collection: AsyncIOMotorCollection):
        self.collection = collection

    async def increment_and_check(self, key: str, limit: int, window_ms: int, now: int) -> RateLimitResult:
        try:
            await self.collection.update_one(
                {"_id": key},
                {"$pull": {"hits": {"$lte": now - window_ms}}}
            )

            window_filter = {"_id": key, f"hits.{limit - 1}": {"$exists": False}}
            update = {
                "$push": {"hits": now},
                "$set": {"expire_at": datetime.fromtimestamp((now + window_ms) / 1000, tz=timezone.utc)}
            }
            try:
                doc = await self.collection.find_one_and_update(
                    window_filter,
                    update,
                    upsert=True,
                    return_document=ReturnDocument.AFTER
                )
            except DuplicateKeyError:
                # Either the window is full or a concurrent request created the document first
                doc = await self.collection.find_one_and_update(
                    window_filter,
                    update,
                    return_document=ReturnDocument.AFTER
                )

            if doc is None:
                current = await self.collection.find_one({"_id": key})
                hits = current.get("hits", []) if current else []
                reset = min(hits) + window_ms if hits else now + window_ms
                return RateLimitResult(success=False, limit=limit, remaining=0, reset=reset)
        except PyMongoError as e:
            logger.error(f"Rate limit store error for {key}: {e}")
            raise RateLimiterUnavailable() from e

        hits = doc.get("hits", [])
        return RateLimitResult(
            success=True,
            limit=limit,
            remaining=max(limit - len(hits), 0),
            reset=min(hits) + window_ms
        )

    async def ensure_indexes(self):
        await self.collection.create_index("expire_at", expireAfterSeconds=0)


class RateLimiter:
    """Per-user admission control over a rolling window"""

    def __init__(
        self,
        store: RateLimitStore,
        limit: int = 15,
        window: timedelta = timedelta(days=1),
        prefix: str = "ratelimit",
        clock: Optional[Callable[[], int]] = None
    ):
        self.store = store
        self.limit = limit
        self.window_ms = int(window.total_seconds() * 1000)
        self.prefix = prefix
        self.clock = clock or now_ms

    async def admit(self, user_id: str) -> RateLimitResult:
        """
        Record a request for ``user_id`` and report whether it is allowed.

        Raises:
            RateLimiterUnavailable: If the backing store cannot be reached
        """
        result = await self.store.increment_and_check(
            f"{self.prefix}:{user_id}",
            self.limit,
            self.window_ms,
            self.clock()
        )
        if not result.success:
            logger.warning(f"Rate limit exceeded for user {user_id}, reset at {result.reset}")
        return result
