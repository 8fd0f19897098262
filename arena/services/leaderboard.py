"""
Leaderboard service for contest standings.

Provides ranked standings with a short TTL cache. The ranking itself is
computed by the database; settlement always bypasses the cache.
"""

from typing import Callable, List, Optional
import asyncio
import time
import logging

from arena.constants import CacheConstants
from arena.data_models.leaderboard import LeaderboardEntry
from arena.services.base import BaseService
from arena.utils.ranking import RankingUtility

logger = logging.getLogger(__name__)


class LeaderboardService(BaseService):
    """Service for contest standings with caching."""

    def __init__(self, session_factory, ttl: float = CacheConstants.LEADERBOARD_CACHE_TTL,
                 max_retries: int = 3, clock: Callable[[], float] = time.monotonic):
        super().__init__(session_factory)
        self.max_retries = max_retries
        self.clock = clock
        # TTL cache of standings per contest
        self._cache = {}
        self._cache_timestamps = {}
        self.ttl = ttl
        self._cache_max_size = CacheConstants.LEADERBOARD_MAX_CACHE_SIZE
        self._cache_lock = asyncio.Lock()

    async def _cached(self, contest_id: int) -> Optional[List[LeaderboardEntry]]:
        async with self._cache_lock:
            timestamp = self._cache_timestamps.get(contest_id)
            if timestamp is None or self.clock() - timestamp >= self.ttl:
                return None
            return self._cache[contest_id]

    async def _store(self, contest_id: int, entries: List[LeaderboardEntry]):
        async with self._cache_lock:
            self._cache[contest_id] = entries
            self._cache_timestamps[contest_id] = self.clock()

            # Enforce size limit by removing oldest entries
            if len(self._cache) > self._cache_max_size:
                oldest = sorted(self._cache_timestamps.items(), key=lambda item: item[1])
                for key, _ in oldest[:len(self._cache) - self._cache_max_size]:
                    self._cache.pop(key, None)
                    self._cache_timestamps.pop(key, None)

    async def get_leaderboard(self, contest_id: int, use_cache: bool = True) -> List[LeaderboardEntry]:
        """
        Ranked standings for a contest, highest score first.

        Args:
            contest_id: Contest to rank
            use_cache: Serve a recent result when available

        Returns:
            Entries with competition rank and completion order; empty only when
            the contest has no participants. Query errors propagate.
        """
        if use_cache:
            cached = await self._cached(contest_id)
            if cached is not None:
                return cached

        async def fetch():
            async with self.get_session() as session:
                result = await session.execute(RankingUtility.create_contest_ranking_query(contest_id))
                return result.all()

        rows = await self.execute_with_retry(fetch, max_retries=self.max_retries)

        entries = [
            LeaderboardEntry(
                user_id=row.user_id,
                total_score=row.total_score or 0,
                rank=row.rank,
                completion_rank=row.completion_rank,
                username=row.username or f"Player {row.user_id}",
                games_completed=row.games_completed or 0,
                average_time=float(row.average_time) if row.average_time is not None else None,
            )
            for row in rows
        ]

        await self._store(contest_id, entries)
        return entries

    async def invalidate(self, contest_id: Optional[int] = None):
        """Drop one contest's standings, or everything when no id is given."""
        async with self._cache_lock:
            if contest_id is None:
                self._cache.clear()
                self._cache_timestamps.clear()
                logger.info("Leaderboard cache cleared.")
                return
            self._cache.pop(contest_id, None)
            self._cache_timestamps.pop(contest_id, None)

    async def handle_invalidation(self, signal):
        """Push-invalidation subscriber: progress or contest changes drop cached standings."""
        if signal.contest_id is not None:
            await self.invalidate(signal.contest_id)
