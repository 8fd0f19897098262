import os
import tempfile

# Keep test log files out of the working tree; must run before arena.config is imported
os.environ.setdefault('LOG_DIR', os.path.join(tempfile.gettempdir(), 'contest_arena_test_logs'))

import json
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select, func

from arena.database.database import Database
from arena.database.models import (
    ContestStatus, PlayerGameProgress, PrizeDistributionModel, Profile, UserContest,
    UserContestStatus, WalletTransaction
)

CONTEST_START = datetime(2025, 3, 1, 12, 0, 0)


class FakeClock:
    """Naive UTC wall clock that only moves when told to."""

    def __init__(self, now: datetime = CONTEST_START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float):
        self.now += timedelta(seconds=seconds)


class FakeMonotonic:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class Factory:
    """Row builders for scenario setup."""

    def __init__(self, db: Database):
        self.db = db

    async def profile(self, username: str, balance=Decimal('0.00'), profile_id: int = None) -> Profile:
        async with self.db.transaction() as session:
            profile = Profile(id=profile_id, username=username, wallet_balance=balance)
            session.add(profile)
            await session.flush()
            return profile

    async def contest(self, series_count: int = 3, status: ContestStatus = ContestStatus.IN_PROGRESS,
                      start_time: datetime = CONTEST_START, minutes: int = 10,
                      prize_pool=Decimal('1000.00'), entry_fee=Decimal('0.00'),
                      distribution_type: str = 'top_3', max_participants: int = 100):
        return await self.db.create_contest(
            title='Weekend Brain Rush',
            start_time=start_time,
            end_time=start_time + timedelta(minutes=minutes),
            series_count=series_count,
            prize_distribution_type=distribution_type,
            prize_pool=prize_pool,
            entry_fee=entry_fee,
            max_participants=max_participants,
            status=status
        )

    async def entry(self, user_id: int, contest_id: int, score: int = 0, index: int = 0,
                    start_time: datetime = None, status: UserContestStatus = UserContestStatus.ACTIVE,
                    completed_at: datetime = None) -> UserContest:
        async with self.db.transaction() as session:
            user_contest = UserContest(
                user_id=user_id,
                contest_id=contest_id,
                score=score,
                current_game_index=index,
                current_game_start_time=start_time,
                status=status,
                completed_at=completed_at
            )
            session.add(user_contest)
            await session.flush()
            return user_contest

    async def prize_model(self, name: str, rules, active: bool = True):
        async with self.db.transaction() as session:
            session.add(PrizeDistributionModel(
                name=name,
                min_participants=1,
                distribution_rules=rules if isinstance(rules, str) else json.dumps(rules),
                is_active=active
            ))

    async def count(self, model, *criteria) -> int:
        async with self.db.get_session() as session:
            return await session.scalar(select(func.count()).select_from(model).where(*criteria))

    async def user_contest(self, user_id: int, contest_id: int) -> UserContest:
        return await self.db.get_user_contest(user_id, contest_id)

    async def balance(self, user_id: int) -> Decimal:
        profile = await self.db.get_profile(user_id)
        return profile.wallet_balance

    async def progress_rows(self, user_id: int, contest_id: int):
        async with self.db.get_session() as session:
            result = await session.execute(
                select(PlayerGameProgress).where(
                    PlayerGameProgress.user_id == user_id,
                    PlayerGameProgress.contest_id == contest_id
                )
            )
            return list(result.scalars().all())

    async def transactions(self, contest_id: int):
        async with self.db.get_session() as session:
            result = await session.execute(
                select(WalletTransaction).where(WalletTransaction.reference_id == contest_id)
            )
            return list(result.scalars().all())


@pytest.fixture
def db_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'arena_test.db'}"


@pytest.fixture
def open_db(db_url):
    """Async context manager giving an initialized, seeded database with a Factory."""
    @asynccontextmanager
    async def _open():
        db = Database(db_url)
        await db.initialize()
        try:
            yield db, Factory(db)
        finally:
            await db.close()
    return _open


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def monotonic():
    return FakeMonotonic()
