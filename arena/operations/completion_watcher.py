"""
Contest Completion Watcher - passive end-of-contest notifier

Polls the contest for its end (past end_time or status completed) and tells
the session where to go next. It never changes contest state; the optional
results prefetch may trigger settlement through the normal settlement path.
"""

from datetime import datetime
from typing import Awaitable, Callable, Optional

from discord.ext import tasks
from sqlalchemy import select, func

from arena.config import Config
from arena.data_models.progress import CompletionNotice
from arena.database.database import Database
from arena.database.models import Contest, ContestStatus, PlayerGameProgress, UserContest, UserContestStatus
from arena.services.base import execute_with_retry
from arena.utils.exceptions import ContestNotFoundError
from arena.utils.logger import setup_logger
from arena.utils.time_utils import utcnow_naive

logger = setup_logger(__name__)

NoticeCallback = Callable[[CompletionNotice], Awaitable[None]]


def leaderboard_destination(contest_id: int) -> str:
    return f"/contest/{contest_id}/leaderboard"


class ContestCompletionWatcher:
    """Detects contest end for one (user, contest) session."""

    def __init__(self, db: Database, user_id: int, contest_id: int,
                 clock: Callable[[], datetime] = utcnow_naive,
                 poll_interval: float = None,
                 on_completed: Optional[NoticeCallback] = None,
                 settlement=None, max_retries: int = None):
        self.db = db
        self.user_id = user_id
        self.contest_id = contest_id
        self.clock = clock
        self.on_completed = on_completed
        self.settlement = settlement  # SettlementOperations, for the results prefetch
        self.max_retries = max_retries or Config.READ_MAX_RETRIES
        self.notified = False
        self.logger = logger

        self._poller = tasks.loop(seconds=poll_interval or Config.POLL_INTERVAL_SECONDS)(self._tick)

    def start(self):
        if not self._poller.is_running() and not self.notified:
            self._poller.start()

    def stop(self):
        if self._poller.is_running():
            self._poller.cancel()

    async def _tick(self):
        try:
            await self.check()
        except Exception as e:
            self.logger.error(
                f"Completion check failed for user {self.user_id} contest {self.contest_id}: {e}", exc_info=True
            )

    async def on_visibility_regained(self) -> Optional[CompletionNotice]:
        return await self.check()

    async def _fetch(self):
        async with self.db.get_session() as session:
            contest = await session.get(Contest, self.contest_id)
            if contest is None:
                return None, None, 0
            user_contest = (await session.execute(
                select(UserContest).where(
                    UserContest.user_id == self.user_id,
                    UserContest.contest_id == self.contest_id
                )
            )).scalar_one_or_none()
            rounds_played = await session.scalar(
                select(func.count(PlayerGameProgress.id)).where(
                    PlayerGameProgress.user_id == self.user_id,
                    PlayerGameProgress.contest_id == self.contest_id
                )
            )
            return contest, user_contest, rounds_played or 0

    async def check(self) -> Optional[CompletionNotice]:
        """
        Returns:
            A notice once the contest has ended, otherwise None. The callback
            fires on the first detection only.
        """
        contest, user_contest, rounds_played = await execute_with_retry(self._fetch, max_retries=self.max_retries)
        if contest is None:
            raise ContestNotFoundError(self.contest_id)

        ended = self.clock() > contest.end_time or contest.status == ContestStatus.COMPLETED
        if not ended:
            return None

        completed_all = user_contest is not None and (
            user_contest.status == UserContestStatus.COMPLETED or rounds_played >= contest.series_count
        )

        if completed_all:
            notice = CompletionNotice(
                contest_id=self.contest_id,
                destination=leaderboard_destination(self.contest_id),
                title="Contest Complete!",
                message="You've completed all games. View the final results!",
                completed_all_rounds=True
            )
        else:
            notice = CompletionNotice(
                contest_id=self.contest_id,
                destination=leaderboard_destination(self.contest_id),
                title="Contest Ended",
                message="This contest has ended. Check out the final results!",
                completed_all_rounds=False
            )

        if not self.notified:
            self.notified = True
            if self._poller.is_running():
                self._poller.stop()
            await self._prefetch_results()
            if self.on_completed:
                await self.on_completed(notice)

        return notice

    async def _prefetch_results(self):
        if self.settlement is None:
            return
        try:
            await self.settlement.get_results(self.contest_id)
        except Exception as e:
            self.logger.warning(f"Results prefetch failed for contest {self.contest_id}: {e}")
