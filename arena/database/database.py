import json
from datetime import datetime
from decimal import Decimal
from typing import Optional, List, Sequence
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy import select, func
from contextlib import asynccontextmanager

from arena.config import Config
from arena.database.models import (
    Base, Profile, Contest, UserContest, GameContent, ContestGame,
    PrizeDistributionModel, ScoringRule, SpeedBonusRule,
    ContestStatus, GameCategory
)
from arena.utils.logger import setup_logger

DEFAULT_PRIZE_MODELS = [
    {'name': 'winner_takes_all', 'min_participants': 2, 'max_participants': None,
     'distribution_rules': {"1": 100}},
    {'name': 'top_3', 'min_participants': 3, 'max_participants': None,
     'distribution_rules': {"1": 50, "2": 30, "3": 20}},
    {'name': 'top_5', 'min_participants': 5, 'max_participants': None,
     'distribution_rules': {"1": 40, "2": 25, "3": 15, "4": 10, "5": 10}},
]

DEFAULT_SCORING_RULES = [
    {'game_category': GameCategory.ARRANGE_SORT, 'base_points': 100, 'additional_points': 50,
     'conditions': {'type': 'perfect_score'}},
    {'game_category': GameCategory.TRIVIA, 'base_points': 100, 'additional_points': None,
     'conditions': None},
    {'game_category': GameCategory.SPOT_DIFFERENCE, 'base_points': 100, 'additional_points': 50,
     'conditions': {'type': 'all_spots_found'}},
]

DEFAULT_SPEED_BONUS_RULES = [
    {'time_threshold': 20, 'bonus_points': 50},
    {'time_threshold': 10, 'bonus_points': 20},
]


def to_async_url(database_url: str) -> str:
    """Convert a sync sqlite URL to the aiosqlite driver"""
    if database_url.startswith('sqlite:///'):
        return database_url.replace('sqlite:///', 'sqlite+aiosqlite:///')
    return database_url


class Database:
    def __init__(self, database_url: str = None):
        self.logger = setup_logger(__name__)
        self.database_url = database_url or Config.DATABASE_URL
        self.engine = None
        self.async_session = None
        self.session_factory = None

    async def initialize(self, seed_defaults: bool = True):
        """Initialize the database connection and create tables"""
        self.logger.info("Initializing database...")

        self.engine = create_async_engine(
            to_async_url(self.database_url),
            echo=Config.DEBUG,
            future=True
        )

        self.async_session = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False
        )
        # Services take the factory directly
        self.session_factory = self.async_session

        # Create all tables
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        self.logger.info("Database initialized successfully")

        if seed_defaults:
            await self.initialize_default_data()

    async def initialize_default_data(self):
        """Seed prize models and scoring rules when the rules store is empty"""
        async with self.transaction() as session:
            model_count = await session.scalar(select(func.count(PrizeDistributionModel.id)))
            if model_count == 0:
                self.logger.info("Initializing default prize distribution models...")
                for model in DEFAULT_PRIZE_MODELS:
                    session.add(PrizeDistributionModel(
                        name=model['name'],
                        min_participants=model['min_participants'],
                        max_participants=model['max_participants'],
                        distribution_rules=json.dumps(model['distribution_rules']),
                        is_active=True
                    ))
                self.logger.info(f"Added {len(DEFAULT_PRIZE_MODELS)} default prize models")

            rule_count = await session.scalar(select(func.count(ScoringRule.id)))
            if rule_count == 0:
                self.logger.info("Initializing default scoring rules...")
                for rule in DEFAULT_SCORING_RULES:
                    session.add(ScoringRule(
                        game_category=rule['game_category'],
                        base_points=rule['base_points'],
                        additional_points=rule['additional_points'],
                        conditions=json.dumps(rule['conditions']) if rule['conditions'] else None,
                        is_active=True
                    ))

            speed_count = await session.scalar(select(func.count(SpeedBonusRule.id)))
            if speed_count == 0:
                for rule in DEFAULT_SPEED_BONUS_RULES:
                    session.add(SpeedBonusRule(is_active=True, **rule))

    @asynccontextmanager
    async def get_session(self):
        """Get a database session"""
        async with self.async_session() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise
            finally:
                await session.close()

    @asynccontextmanager
    async def transaction(self):
        """
        Create a transaction boundary for atomic operations.

        All operations within the context are committed together on success,
        or rolled back together on failure. Exceptions must be allowed to
        propagate out of the context for rollback to occur.

        Usage:
            async with db.transaction() as session:
                await session.execute(update(Contest)...)
                session.add(UserContest(...))
        """
        async with self.async_session() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise
            finally:
                await session.close()

    async def close(self):
        """Close the database connection"""
        if self.engine:
            await self.engine.dispose()
            self.logger.info("Database connection closed")

    # Profile operations
    async def get_profile(self, user_id: int) -> Optional[Profile]:
        async with self.get_session() as session:
            return await session.get(Profile, user_id)

    async def get_profile_by_discord_id(self, discord_id: int) -> Optional[Profile]:
        """Get a profile by Discord ID"""
        async with self.get_session() as session:
            result = await session.execute(
                select(Profile).where(Profile.discord_id == discord_id)
            )
            return result.scalar_one_or_none()

    async def create_profile(self, username: str, wallet_balance=Decimal('0.00'),
                             discord_id: int = None) -> Profile:
        """Create a new profile"""
        async with self.transaction() as session:
            profile = Profile(
                username=username,
                discord_id=discord_id,
                wallet_balance=wallet_balance
            )
            session.add(profile)
            await session.flush()
            await session.refresh(profile)
            return profile

    # Contest operations
    async def get_contest(self, contest_id: int) -> Optional[Contest]:
        async with self.get_session() as session:
            return await session.get(Contest, contest_id)

    async def create_contest(self, title: str, start_time: datetime, end_time: datetime,
                             series_count: int, prize_distribution_type: str,
                             prize_pool=Decimal('0.00'), entry_fee=Decimal('0.00'),
                             max_participants: int = 100,
                             status: ContestStatus = ContestStatus.UPCOMING,
                             game_content_ids: Sequence[int] = None) -> Contest:
        """
        Create a contest and its round lineup.

        When no game content ids are given, one trivia round is generated per
        series slot so every round has content to record progress against.

        Raises:
            ValueError: the lineup repeats a game or does not have exactly
                one game per round
        """
        if game_content_ids is not None:
            game_content_ids = list(game_content_ids)
            if len(set(game_content_ids)) != len(game_content_ids):
                raise ValueError(f"Contest lineup repeats a game: {game_content_ids}")
            if len(game_content_ids) != series_count:
                raise ValueError(
                    f"Contest lineup has {len(game_content_ids)} games for {series_count} rounds"
                )

        async with self.transaction() as session:
            contest = Contest(
                title=title,
                start_time=start_time,
                end_time=end_time,
                series_count=series_count,
                prize_distribution_type=prize_distribution_type,
                prize_pool=prize_pool,
                entry_fee=entry_fee,
                max_participants=max_participants,
                status=status
            )
            session.add(contest)
            await session.flush()

            if game_content_ids is None:
                contents = [GameContent(category=GameCategory.TRIVIA, content='{}') for _ in range(series_count)]
                session.add_all(contents)
                await session.flush()
                game_content_ids = [content.id for content in contents]

            for index, content_id in enumerate(game_content_ids):
                session.add(ContestGame(contest_id=contest.id, game_content_id=content_id, game_index=index))

            await session.flush()
            await session.refresh(contest)
            return contest

    async def get_contest_games(self, contest_id: int) -> List[ContestGame]:
        async with self.get_session() as session:
            result = await session.execute(
                select(ContestGame)
                .where(ContestGame.contest_id == contest_id)
                .order_by(ContestGame.game_index)
            )
            return list(result.scalars().all())

    async def get_round_category(self, contest_id: int, game_index: int) -> Optional[GameCategory]:
        """Category of the game played in one round, None when the lineup has no such round"""
        async with self.get_session() as session:
            return await session.scalar(
                select(GameContent.category)
                .join(ContestGame, ContestGame.game_content_id == GameContent.id)
                .where(ContestGame.contest_id == contest_id, ContestGame.game_index == game_index)
            )

    async def get_user_contest(self, user_id: int, contest_id: int) -> Optional[UserContest]:
        async with self.get_session() as session:
            result = await session.execute(
                select(UserContest).where(
                    UserContest.user_id == user_id,
                    UserContest.contest_id == contest_id
                )
            )
            return result.scalar_one_or_none()
