"""
Game Session Handler - completion of a single round

Validates a round result against the server, writes the aggregate score and
the append-only progress row, and advances the player. Shares the
coordinator's locks so a reconcile pass and a round completion never overlap.
"""

from datetime import datetime
from typing import Any, Awaitable, Callable, Mapping, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from arena.data_models.progress import RoundResult
from arena.database.database import Database
from arena.database.models import (
    ContestGame, ContestStatus, PlayerGameProgress, UserContest, UserContestStatus
)
from arena.operations.progress_coordinator import ContestProgressCoordinator
from arena.services.invalidation import InvalidationBus, InvalidationSignal
from arena.services.scoring import ScoringService
from arena.utils.exceptions import ArenaException, ProgressSaveError, RoundClosedError, StaleRoundError
from arena.utils.logger import setup_logger

logger = setup_logger(__name__)

RoundCallback = Callable[[RoundResult], Awaitable[None]]


class GameSessionHandler:
    """Round completion for one (user, contest) session."""

    def __init__(self, db: Database, coordinator: ContestProgressCoordinator,
                 scoring_service: Optional[ScoringService] = None,
                 bus: Optional[InvalidationBus] = None,
                 on_round_complete: Optional[RoundCallback] = None):
        self.db = db
        self.coordinator = coordinator
        self.scoring_service = scoring_service
        self.bus = bus
        self.on_round_complete = on_round_complete
        self.logger = logger

    @property
    def user_id(self) -> int:
        return self.coordinator.user_id

    @property
    def contest_id(self) -> int:
        return self.coordinator.contest_id

    async def complete_round(self, score: int, time_taken: Optional[float] = None,
                             is_correct: Optional[bool] = None) -> Optional[RoundResult]:
        """
        Record the current round's score and advance.

        Args:
            score: Points earned this round (0 for a timeout)
            time_taken: Seconds used; measured from the server start time when omitted
            is_correct: Stored on the progress row; defaults to score > 0

        Returns:
            RoundResult, or None when the submission was ignored (a completion is
            already in flight, or the local round was stale and has been resynced)

        Raises:
            RoundClosedError: contest or the player's run already completed
            ContestNotFoundError / UserContestNotFoundError: rows are missing
            ProgressSaveError: anything unexpected; local state is unchanged
        """
        locks = self.coordinator.locks
        if locks.game_end:
            self.logger.debug(f"User {self.user_id} contest {self.contest_id}: completion already in progress")
            return None

        locks.game_end = True
        try:
            return await self._complete_round(score, time_taken, is_correct)
        except ArenaException:
            raise
        except Exception as e:
            self.logger.error(
                f"Failed to save round for user {self.user_id} contest {self.contest_id} "
                f"at round {self.coordinator.current_game_index}: {e}",
                exc_info=True
            )
            raise ProgressSaveError(self.contest_id, self.user_id, str(e)) from e
        finally:
            locks.game_end = False

    async def _complete_round(self, score: int, time_taken: Optional[float],
                              is_correct: Optional[bool]) -> Optional[RoundResult]:
        contest, user_contest = await self.coordinator.fetch_state()

        if contest.status == ContestStatus.COMPLETED:
            raise RoundClosedError(self.contest_id, self.user_id, "contest completed")
        if user_contest.status == UserContestStatus.COMPLETED:
            raise RoundClosedError(self.contest_id, self.user_id, "all rounds completed")

        index = user_contest.current_game_index
        if index != self.coordinator.current_game_index:
            self.logger.info(
                f"User {self.user_id} contest {self.contest_id}: stale submission for round "
                f"{self.coordinator.current_game_index}, server is at {index}"
            )
            self.coordinator.adopt(user_contest)
            return None

        is_final_game = index == contest.series_count - 1
        game = await self._get_round_game(index)
        if game is None:
            raise ProgressSaveError(self.contest_id, self.user_id, f"no game configured for round {index}")

        now = self.coordinator.clock()
        started_at = user_contest.current_game_start_time
        if time_taken is None and started_at is not None:
            time_taken = max(0.0, (now - started_at).total_seconds())

        try:
            total_score = await self._advance(user_contest, score, is_final_game, now)
        except StaleRoundError as e:
            self.logger.info(f"User {self.user_id} contest {self.contest_id}: {e}, resyncing")
            _, user_contest = await self.coordinator.fetch_state()
            self.coordinator.adopt(user_contest)
            return None

        await self._record_progress(
            game.game_content_id, score, time_taken,
            is_correct if is_correct is not None else score > 0,
            started_at, now
        )

        if is_final_game:
            self.coordinator.current_game_index = index
            self.coordinator.game_start_time = None
        else:
            self.coordinator.current_game_index = index + 1
            self.coordinator.game_start_time = now

        if self.bus:
            await self.bus.publish(
                InvalidationSignal('player_game_progress', contest_id=self.contest_id, user_id=self.user_id)
            )

        result = RoundResult(
            score=score,
            is_final_game=is_final_game,
            total_score=total_score,
            game_index=index
        )
        self.logger.info(
            f"User {self.user_id} contest {self.contest_id}: round {index} scored {score} "
            f"(total {total_score}{', final' if is_final_game else ''})"
        )

        if self.on_round_complete:
            try:
                await self.on_round_complete(result)
            except Exception as e:
                self.logger.error(f"Round callback failed for user {self.user_id} contest {self.contest_id}: {e}",
                                  exc_info=True)
        if is_final_game:
            await self.coordinator.finish()
        return result

    async def _get_round_game(self, index: int) -> Optional[ContestGame]:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(ContestGame).where(
                    ContestGame.contest_id == self.contest_id,
                    ContestGame.game_index == index
                )
            )
            return result.scalar_one_or_none()

    async def _advance(self, user_contest: UserContest, score: int, is_final_game: bool,
                       now: datetime) -> int:
        """Add the score and move on, guarded on the index that was validated."""
        index = user_contest.current_game_index
        values = dict(score=UserContest.score + score, current_game_score=score)
        if is_final_game:
            values.update(status=UserContestStatus.COMPLETED, completed_at=now, current_game_start_time=None)
        else:
            values.update(current_game_index=index + 1, current_game_start_time=now)

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
            if result.rowcount != 1:
                raise StaleRoundError(index, -1)

            total_score = await session.scalar(
                select(UserContest.score).where(UserContest.id == user_contest.id)
            )
        return total_score

    async def _record_progress(self, game_content_id: int, score: int, time_taken: Optional[float],
                               is_correct: bool, started_at: Optional[datetime], completed_at: datetime):
        try:
            async with self.db.transaction() as session:
                session.add(PlayerGameProgress(
                    user_id=self.user_id,
                    contest_id=self.contest_id,
                    game_content_id=game_content_id,
                    score=score,
                    time_taken=int(round(time_taken)) if time_taken is not None else None,
                    is_correct=is_correct,
                    started_at=started_at,
                    completed_at=completed_at
                ))
        except IntegrityError:
            # A retried request already recorded this round
            self.logger.info(
                f"User {self.user_id} contest {self.contest_id}: progress for game {game_content_id} "
                f"already recorded"
            )

    async def submit_answer(self, category: str, is_correct: bool,
                            additional_data: Optional[Mapping[str, Any]] = None) -> Optional[RoundResult]:
        """Score an answer against the rule set and complete the round with it."""
        if self.scoring_service is None:
            raise RuntimeError("GameSessionHandler needs a ScoringService to score answers")

        time_taken = None
        start_time = self.coordinator.game_start_time
        if start_time is not None:
            elapsed = (self.coordinator.clock() - start_time).total_seconds()
            time_taken = min(max(0.0, elapsed), float(self.coordinator.game_duration))

        score = await self.scoring_service.calculate_score(category, is_correct, time_taken, additional_data)
        return await self.complete_round(score, time_taken=time_taken, is_correct=is_correct)
