"""
Contest Progress Coordinator - per-session round state machine

Keeps a player's locally held (current_game_index, game_start_time) in step
with the authoritative user_contests row. The server always wins: local
state is overwritten on disagreement, never the reverse.

States per user contest:
    no active round   current_game_start_time is NULL
    round in progress start time set, less than one round duration ago
    round expired     elapsed >= round duration, waiting to be advanced
    contest completed contest or user contest status is completed

All writes are conditional updates guarded on the state the coordinator
read; losing such an update is the normal path and ends in a reread.
"""

import math
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional, Tuple

from discord.ext import tasks
from sqlalchemy import select, update

from arena.config import Config
from arena.data_models.progress import OperationLocks, ProgressSnapshot, RoundState
from arena.database.database import Database
from arena.database.models import Contest, ContestStatus, UserContest, UserContestStatus
from arena.services.base import execute_with_retry
from arena.services.invalidation import InvalidationBus, InvalidationSignal, UpdateThrottler
from arena.utils.exceptions import ContestNotFoundError, UserContestNotFoundError
from arena.utils.logger import setup_logger
from arena.utils.time_utils import utcnow_naive

logger = setup_logger(__name__)

CompletedCallback = Callable[[int, int], Awaitable[None]]


def appropriate_game_index(contest_start: datetime, now: datetime, series_count: int,
                           game_duration: int, server_index: int = 0) -> int:
    """
    Round a player should be on given global contest time.

    floor(elapsed / duration), clamped to [0, series_count - 1] and never
    below the index the server already holds.
    """
    elapsed = (now - contest_start).total_seconds()
    index = math.floor(elapsed / game_duration) if elapsed > 0 else 0
    index = max(0, min(index, series_count - 1))
    return max(index, server_index)


class ContestProgressCoordinator:
    """Reconciliation loop for one (user, contest) session."""

    def __init__(self, db: Database, user_id: int, contest_id: int,
                 clock: Callable[[], datetime] = utcnow_naive,
                 game_duration: int = None, poll_interval: float = None,
                 on_contest_completed: Optional[CompletedCallback] = None,
                 bus: Optional[InvalidationBus] = None,
                 throttler: Optional[UpdateThrottler] = None,
                 max_retries: int = None):
        self.db = db
        self.user_id = user_id
        self.contest_id = contest_id
        self.clock = clock
        self.game_duration = game_duration or Config.GAME_DURATION_SECONDS
        self.poll_interval = poll_interval or Config.POLL_INTERVAL_SECONDS
        self.on_contest_completed = on_contest_completed
        self.bus = bus
        self.throttler = throttler or UpdateThrottler()
        self.max_retries = max_retries or Config.READ_MAX_RETRIES
        self.logger = logger

        # Local, advisory state
        self.current_game_index = 0
        self.game_start_time: Optional[datetime] = None
        self.locks = OperationLocks()

        self._poller = tasks.loop(seconds=self.poll_interval)(self._tick)

    # Lifecycle

    def start(self):
        """Begin polling; the first reconcile runs immediately."""
        if not self._poller.is_running():
            self._poller.start()
            if self.bus:
                self.bus.subscribe(self.handle_invalidation)

    def stop(self):
        """Teardown: cancel the poller and drop the invalidation subscription."""
        if self._poller.is_running():
            self._poller.cancel()
        if self.bus:
            self.bus.unsubscribe(self.handle_invalidation)

    @property
    def is_polling(self) -> bool:
        return self._poller.is_running()

    async def _tick(self):
        await self.reconcile()

    async def on_visibility_regained(self) -> Optional[ProgressSnapshot]:
        return await self.reconcile()

    async def handle_invalidation(self, signal: InvalidationSignal):
        """A push signal only prompts a refetch; its payload is never applied."""
        if signal.contest_id != self.contest_id:
            return
        if signal.user_id is not None and signal.user_id != self.user_id:
            return
        if self.throttler.should_process(f"{signal.table}:{self.contest_id}:{self.user_id}"):
            await self.reconcile()

    # Server state

    async def fetch_state(self) -> Tuple[Contest, UserContest]:
        """Authoritative contest and user contest rows, retried on transient errors."""
        async def fetch():
            async with self.db.get_session() as session:
                contest = await session.get(Contest, self.contest_id)
                result = await session.execute(
                    select(UserContest).where(
                        UserContest.user_id == self.user_id,
                        UserContest.contest_id == self.contest_id
                    )
                )
                return contest, result.scalar_one_or_none()

        contest, user_contest = await execute_with_retry(fetch, max_retries=self.max_retries)
        if contest is None:
            raise ContestNotFoundError(self.contest_id)
        if user_contest is None:
            raise UserContestNotFoundError(self.contest_id, self.user_id)
        return contest, user_contest

    async def _reread(self) -> UserContest:
        _, user_contest = await self.fetch_state()
        return user_contest

    def adopt(self, user_contest: UserContest):
        """Overwrite local state with the server's."""
        if (self.current_game_index != user_contest.current_game_index
                or self.game_start_time != user_contest.current_game_start_time):
            self.logger.debug(
                f"User {self.user_id} contest {self.contest_id}: adopting server round "
                f"{user_contest.current_game_index} (local {self.current_game_index})"
            )
        self.current_game_index = user_contest.current_game_index
        self.game_start_time = user_contest.current_game_start_time
        if self.game_start_time is not None:
            self.locks.timer_initialized = True

    async def _publish(self):
        if self.bus:
            await self.bus.publish(
                InvalidationSignal('user_contests', contest_id=self.contest_id, user_id=self.user_id)
            )

    # Reconciliation

    async def reconcile(self) -> Optional[ProgressSnapshot]:
        """
        One reconciliation pass.

        Returns:
            Snapshot of the adopted state, or None when skipped because another
            pass or a round completion holds the lock, or when the pass failed
            (failures are logged; the next tick retries).
        """
        if self.locks.update or self.locks.game_end:
            return None

        self.locks.update = True
        try:
            return await self._reconcile()
        except Exception as e:
            self.logger.error(
                f"Reconcile failed for user {self.user_id} contest {self.contest_id}: {e}", exc_info=True
            )
            return None
        finally:
            self.locks.update = False

    async def _reconcile(self) -> ProgressSnapshot:
        contest, user_contest = await self.fetch_state()

        if self._is_finished(contest, user_contest):
            return await self._finish(user_contest)

        now = self.clock()

        if user_contest.current_game_start_time is None:
            if now < contest.start_time:
                self.adopt(user_contest)
                return self.snapshot(RoundState.NO_ACTIVE_ROUND)
            user_contest = await self._start_round(contest, user_contest, now)
            if user_contest.status == UserContestStatus.COMPLETED:
                return await self._finish(user_contest)

        self.adopt(user_contest)

        if self.game_start_time is not None and self._elapsed(now) >= self.game_duration:
            user_contest = await self._advance_expired(contest, user_contest, now)
            if user_contest.status == UserContestStatus.COMPLETED:
                return await self._finish(user_contest)
            self.adopt(user_contest)

        return self.snapshot(self.round_state(now))

    @staticmethod
    def _is_finished(contest: Contest, user_contest: UserContest) -> bool:
        return (contest.status == ContestStatus.COMPLETED
                or user_contest.status == UserContestStatus.COMPLETED)

    def _elapsed(self, now: datetime) -> float:
        return (now - self.game_start_time).total_seconds()

    async def _start_round(self, contest: Contest, user_contest: UserContest, now: datetime) -> UserContest:
        """Open the round a player should be on; a late joiner lands on the current global round."""
        target = appropriate_game_index(
            contest.start_time, now, contest.series_count, self.game_duration,
            server_index=user_contest.current_game_index
        )

        async with self.db.transaction() as session:
            result = await session.execute(
                update(UserContest)
                .where(
                    UserContest.id == user_contest.id,
                    UserContest.status == UserContestStatus.ACTIVE,
                    UserContest.current_game_index == user_contest.current_game_index,
                    UserContest.current_game_start_time.is_(None)
                )
                .values(current_game_index=target, current_game_start_time=now)
            )
            won = result.rowcount == 1

        if won:
            self.logger.info(f"User {self.user_id} contest {self.contest_id}: started round {target}")
            await self._publish()
        else:
            self.logger.debug(f"User {self.user_id} contest {self.contest_id}: round start lost race, rereading")
        return await self._reread()

    async def _advance_expired(self, contest: Contest, user_contest: UserContest, now: datetime) -> UserContest:
        """Forced timeout: next round, or completion after the last one."""
        index = user_contest.current_game_index
        is_last = index >= contest.series_count - 1

        if is_last:
            values = dict(
                status=UserContestStatus.COMPLETED,
                completed_at=now,
                current_game_start_time=None
            )
        else:
            values = dict(
                current_game_index=index + 1,
                current_game_start_time=now,
                current_game_score=0
            )

        async with self.db.transaction() as session:
            result = await session.execute(
                update(UserContest)
                .where(
                    UserContest.id == user_contest.id,
                    UserContest.status == UserContestStatus.ACTIVE,
                    UserContest.current_game_index == index
                )
                .values(**values)
            )
            won = result.rowcount == 1

        if won:
            action = "completed contest" if is_last else f"advanced to round {index + 1}"
            self.logger.info(f"User {self.user_id} contest {self.contest_id}: round {index} timed out, {action}")
            await self._publish()
        return await self._reread()

    async def _finish(self, user_contest: UserContest) -> ProgressSnapshot:
        self.current_game_index = user_contest.current_game_index
        self.game_start_time = None
        await self.finish()
        return self.snapshot(RoundState.CONTEST_COMPLETED)

    async def finish(self):
        """Contest over for this player: notify once and stop polling."""
        if self.locks.has_redirected:
            return
        self.locks.has_redirected = True

        if self._poller.is_running():
            self._poller.stop()

        if self.on_contest_completed:
            try:
                await self.on_contest_completed(self.contest_id, self.user_id)
            except Exception as e:
                self.logger.error(
                    f"Completion callback failed for user {self.user_id} contest {self.contest_id}: {e}",
                    exc_info=True
                )

    # Countdown

    def round_state(self, now: datetime = None) -> RoundState:
        if self.locks.has_redirected:
            return RoundState.CONTEST_COMPLETED
        if self.game_start_time is None:
            return RoundState.NO_ACTIVE_ROUND
        if self._elapsed(now or self.clock()) >= self.game_duration:
            return RoundState.ROUND_EXPIRED
        return RoundState.ROUND_IN_PROGRESS

    def snapshot(self, state: RoundState) -> ProgressSnapshot:
        return ProgressSnapshot(
            state=state,
            current_game_index=self.current_game_index,
            game_start_time=self.game_start_time
        )

    def get_game_end_time(self) -> Optional[datetime]:
        """End of the current round by server start time, None when no round is running or it has ended."""
        if self.game_start_time is None:
            return None
        end_time = self.game_start_time + timedelta(seconds=self.game_duration)
        if end_time <= self.clock():
            return None
        return end_time

    def remaining_time(self) -> float:
        end_time = self.get_game_end_time()
        if end_time is None:
            return 0.0
        return max(0.0, (end_time - self.clock()).total_seconds())
