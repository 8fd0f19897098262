"""
Push invalidation for contest and progress rows.

A signal only says "this contest (and maybe this user) changed, refetch".
It never carries field values, so consumers stay correct when Redis is
down and polling is the only transport.
"""

import asyncio
import json
import logging
import time
import uuid
from dataclasses import dataclass, asdict
from typing import Awaitable, Callable, Dict, List, Optional

from redis.exceptions import RedisError

from arena.config import Config
from arena.constants import CacheConstants

logger = logging.getLogger(__name__)

Handler = Callable[['InvalidationSignal'], Awaitable[None]]


@dataclass(frozen=True)
class InvalidationSignal:
    table: str                   # 'contests' | 'user_contests' | 'player_game_progress' | 'wallet_transactions'
    contest_id: Optional[int] = None
    user_id: Optional[int] = None

    def to_json(self, origin: str) -> str:
        return json.dumps({'origin': origin, **asdict(self)})

    @classmethod
    def from_json(cls, payload: str) -> 'InvalidationSignal':
        data = json.loads(payload)
        return cls(table=data['table'], contest_id=data.get('contest_id'), user_id=data.get('user_id'))


class UpdateThrottler:
    """Per-key minimum spacing so a burst of signals triggers one refetch."""

    def __init__(self, min_interval: float = CacheConstants.INVALIDATION_MIN_INTERVAL,
                 clock: Callable[[], float] = time.monotonic):
        self.min_interval = min_interval
        self.clock = clock
        self._last_processed: Dict[str, float] = {}

    def should_process(self, key: str) -> bool:
        now = self.clock()
        last = self._last_processed.get(key)
        if last is not None and now - last < self.min_interval:
            return False
        self._last_processed[key] = now
        return True

    def cleanup(self, max_age: float = CacheConstants.INVALIDATION_MAX_INTERVAL):
        cutoff = self.clock() - max_age
        self._last_processed = {
            key: timestamp for key, timestamp in self._last_processed.items() if timestamp >= cutoff
        }


class InvalidationBus:
    """In-process subscribers with optional Redis pub/sub fan-out between processes."""

    def __init__(self, redis_client=None, channel: str = None):
        self.redis_client = redis_client
        self.channel = channel or Config.INVALIDATION_CHANNEL
        self.origin = uuid.uuid4().hex
        self._handlers: List[Handler] = []
        self._listener: Optional[asyncio.Task] = None

    def subscribe(self, handler: Handler):
        if handler not in self._handlers:
            self._handlers.append(handler)

    def unsubscribe(self, handler: Handler):
        if handler in self._handlers:
            self._handlers.remove(handler)

    async def publish(self, signal: InvalidationSignal):
        """Notify local subscribers, then other processes through Redis."""
        await self._dispatch(signal)

        if self.redis_client is None:
            return
        try:
            await self.redis_client.publish(self.channel, signal.to_json(self.origin))
        except (RedisError, OSError) as e:
            # Polling still converges; the remote refetch just happens later
            logger.warning(f"Failed to publish invalidation for contest {signal.contest_id}: {e}")

    async def _dispatch(self, signal: InvalidationSignal):
        for handler in list(self._handlers):
            try:
                await handler(signal)
            except Exception as e:
                logger.error(
                    f"Invalidation handler {getattr(handler, '__qualname__', handler)} failed for "
                    f"{signal.table} contest={signal.contest_id} user={signal.user_id}: {e}",
                    exc_info=True
                )

    async def listen(self):
        """Relay signals published by other processes until cancelled."""
        pubsub = self.redis_client.pubsub()
        await pubsub.subscribe(self.channel)
        logger.info(f"Listening for invalidation signals on {self.channel}")
        try:
            async for message in pubsub.listen():
                if message.get('type') != 'message':
                    continue
                await self._handle_message(message.get('data'))
        finally:
            await pubsub.unsubscribe(self.channel)
            await pubsub.close()

    async def _handle_message(self, payload):
        if isinstance(payload, bytes):
            payload = payload.decode('utf-8')
        try:
            data = json.loads(payload)
            if data.get('origin') == self.origin:
                return
            signal = InvalidationSignal.from_json(payload)
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Ignoring malformed invalidation payload {payload!r}: {e}")
            return
        await self._dispatch(signal)

    def start(self):
        if self.redis_client is None or self._listener is not None:
            return
        self._listener = asyncio.create_task(self.listen())

    async def stop(self):
        if self._listener is not None:
            self._listener.cancel()
            try:
                await self._listener
            except asyncio.CancelledError:
                pass
            self._listener = None
        if self.redis_client is not None:
            await self.redis_client.aclose()
