"""
Contest Operations - joining and schedule-driven status changes

Join is a single transaction: the capacity-guarded participant increment and
the balance-guarded fee debit are conditional updates, so concurrent joins
can neither overfill a contest nor overdraw a wallet.
"""

from datetime import datetime
from decimal import Decimal
from typing import Callable, Dict, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from arena.database.database import Database
from arena.database.models import (
    Contest, ContestStatus, Profile, UserContest, UserContestStatus,
    WalletTransaction, TransactionType, TransactionStatus
)
from arena.services.invalidation import InvalidationBus, InvalidationSignal
from arena.utils.exceptions import (
    AlreadyJoinedError, ContestClosedError, ContestFullError, ContestNotFoundError, InsufficientBalanceError
)
from arena.utils.logger import setup_logger
from arena.utils.time_utils import utcnow_naive

logger = setup_logger(__name__)

OPEN_STATUSES = (ContestStatus.UPCOMING, ContestStatus.WAITING_FOR_PLAYERS)


class ContestOperations:
    """Contest entry and lifecycle transitions."""

    def __init__(self, db: Database, bus: Optional[InvalidationBus] = None,
                 clock: Callable[[], datetime] = utcnow_naive):
        self.db = db
        self.bus = bus
        self.clock = clock
        self.logger = logger

    async def join_contest(self, user_id: int, contest_id: int) -> UserContest:
        """
        Enter a user into a contest and charge the entry fee.

        Raises:
            ContestNotFoundError: no such contest
            ContestClosedError: contest already ended
            AlreadyJoinedError: user has a row for this contest
            ContestFullError: no capacity left
            InsufficientBalanceError: wallet cannot cover the entry fee
        """
        now = self.clock()

        async with self.db.transaction() as session:
            contest = await session.get(Contest, contest_id)
            if contest is None:
                raise ContestNotFoundError(contest_id)
            if contest.status == ContestStatus.COMPLETED or contest.end_time <= now:
                raise ContestClosedError(contest_id)

            existing = await session.scalar(
                select(UserContest.id).where(
                    UserContest.user_id == user_id,
                    UserContest.contest_id == contest_id
                )
            )
            if existing:
                raise AlreadyJoinedError(contest_id, user_id)

            # Capacity guard
            result = await session.execute(
                update(Contest)
                .where(
                    Contest.id == contest_id,
                    Contest.status != ContestStatus.COMPLETED,
                    Contest.current_participants < Contest.max_participants
                )
                .values(current_participants=Contest.current_participants + 1)
            )
            if result.rowcount != 1:
                raise ContestFullError(contest_id)

            entry_fee = contest.entry_fee or Decimal('0.00')
            if entry_fee > 0:
                # Balance guard
                result = await session.execute(
                    update(Profile)
                    .where(Profile.id == user_id, Profile.wallet_balance >= entry_fee)
                    .values(wallet_balance=Profile.wallet_balance - entry_fee)
                )
                if result.rowcount != 1:
                    balance = await session.scalar(select(Profile.wallet_balance).where(Profile.id == user_id))
                    raise InsufficientBalanceError(user_id, entry_fee, balance or Decimal('0.00'))

                session.add(WalletTransaction(
                    user_id=user_id,
                    amount=-entry_fee,
                    type=TransactionType.ENTRY_FEE,
                    reference_id=contest_id,
                    status=TransactionStatus.COMPLETED
                ))

            user_contest = UserContest(
                user_id=user_id,
                contest_id=contest_id,
                status=UserContestStatus.ACTIVE,
                current_game_index=0,
                joined_at=now
            )
            session.add(user_contest)
            try:
                await session.flush()
            except IntegrityError as e:
                # Concurrent join by the same user
                raise AlreadyJoinedError(contest_id, user_id) from e

        self.logger.info(f"User {user_id} joined contest {contest_id} (fee {entry_fee})")
        if self.bus:
            await self.bus.publish(InvalidationSignal('contests', contest_id=contest_id, user_id=user_id))
        return user_contest

    async def update_contest_statuses(self, now: datetime = None) -> Dict[str, int]:
        """
        Move contests along their schedule.

        upcoming/waiting_for_players -> in_progress once start_time passes,
        any non-completed -> completed once end_time passes.

        Returns:
            Counts of contests started and completed
        """
        now = now or self.clock()

        async with self.db.transaction() as session:
            ended_ids = list((await session.execute(
                select(Contest.id).where(
                    Contest.status != ContestStatus.COMPLETED,
                    Contest.end_time <= now
                )
            )).scalars().all())

            completed = 0
            if ended_ids:
                result = await session.execute(
                    update(Contest)
                    .where(Contest.id.in_(ended_ids), Contest.status != ContestStatus.COMPLETED)
                    .values(status=ContestStatus.COMPLETED)
                )
                completed = result.rowcount

            result = await session.execute(
                update(Contest)
                .where(
                    Contest.status.in_(OPEN_STATUSES),
                    Contest.start_time <= now,
                    Contest.end_time > now
                )
                .values(status=ContestStatus.IN_PROGRESS)
            )
            started = result.rowcount

        if started or completed:
            self.logger.info(f"Contest status sweep: {started} started, {completed} completed")
        if self.bus:
            for contest_id in ended_ids:
                await self.bus.publish(InvalidationSignal('contests', contest_id=contest_id))

        return {'started': started, 'completed': completed}
