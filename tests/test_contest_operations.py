import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest

from arena.database.models import (
    Contest, ContestGame, ContestStatus, GameCategory, GameContent, TransactionType, UserContest,
    UserContestStatus, WalletTransaction
)
from arena.operations.contest_operations import ContestOperations
from arena.services.invalidation import InvalidationBus
from arena.utils.exceptions import (
    AlreadyJoinedError, ContestClosedError, ContestFullError, ContestNotFoundError,
    InsufficientBalanceError, JoinContestError
)
from conftest import CONTEST_START

LATER = CONTEST_START + timedelta(hours=1)


async def open_contest(factory, **kwargs):
    kwargs.setdefault('status', ContestStatus.UPCOMING)
    kwargs.setdefault('start_time', LATER)
    return await factory.contest(**kwargs)


async def participants(db, contest_id):
    return (await db.get_contest(contest_id)).current_participants


def test_join_free_contest(open_db, clock):
    async def scenario():
        async with open_db() as (db, factory):
            contest = await open_contest(factory)
            player = await factory.profile('joiner', Decimal('5.00'))

            entry = await ContestOperations(db, clock=clock).join_contest(player.id, contest.id)

            assert entry.current_game_index == 0
            assert entry.status == UserContestStatus.ACTIVE
            assert entry.joined_at == CONTEST_START
            assert await participants(db, contest.id) == 1
            assert await factory.balance(player.id) == Decimal('5.00')
            assert await factory.transactions(contest.id) == []

    asyncio.run(scenario())


def test_join_charges_entry_fee(open_db, clock):
    async def scenario():
        async with open_db() as (db, factory):
            contest = await open_contest(factory, entry_fee=Decimal('25.00'))
            player = await factory.profile('payer', Decimal('100.00'))

            await ContestOperations(db, clock=clock).join_contest(player.id, contest.id)

            assert await factory.balance(player.id) == Decimal('75.00')
            [fee] = await factory.transactions(contest.id)
            assert fee.type == TransactionType.ENTRY_FEE
            assert fee.amount == Decimal('-25.00')

    asyncio.run(scenario())


def test_insufficient_balance_leaves_no_trace(open_db, clock):
    async def scenario():
        async with open_db() as (db, factory):
            contest = await open_contest(factory, entry_fee=Decimal('25.00'))
            player = await factory.profile('broke', Decimal('10.00'))

            with pytest.raises(InsufficientBalanceError):
                await ContestOperations(db, clock=clock).join_contest(player.id, contest.id)

            assert await participants(db, contest.id) == 0
            assert await factory.balance(player.id) == Decimal('10.00')
            assert await factory.user_contest(player.id, contest.id) is None

    asyncio.run(scenario())


def test_second_join_is_rejected(open_db, clock):
    async def scenario():
        async with open_db() as (db, factory):
            contest = await open_contest(factory)
            player = await factory.profile('eager')
            operations = ContestOperations(db, clock=clock)

            await operations.join_contest(player.id, contest.id)
            with pytest.raises(AlreadyJoinedError):
                await operations.join_contest(player.id, contest.id)
            assert await participants(db, contest.id) == 1

    asyncio.run(scenario())


def test_full_contest_rejects_join(open_db, clock):
    async def scenario():
        async with open_db() as (db, factory):
            contest = await open_contest(factory, max_participants=1)
            first = await factory.profile('first')
            second = await factory.profile('second')
            operations = ContestOperations(db, clock=clock)

            await operations.join_contest(first.id, contest.id)
            with pytest.raises(ContestFullError):
                await operations.join_contest(second.id, contest.id)

    asyncio.run(scenario())


def test_closed_or_missing_contest_rejects_join(open_db, clock):
    async def scenario():
        async with open_db() as (db, factory):
            finished = await open_contest(factory, status=ContestStatus.COMPLETED)
            expired = await open_contest(factory, start_time=CONTEST_START - timedelta(hours=2), minutes=30)
            player = await factory.profile('late')
            operations = ContestOperations(db, clock=clock)

            with pytest.raises(ContestClosedError):
                await operations.join_contest(player.id, finished.id)
            with pytest.raises(ContestClosedError):
                await operations.join_contest(player.id, expired.id)
            with pytest.raises(ContestNotFoundError):
                await operations.join_contest(player.id, 9999)

    asyncio.run(scenario())


def test_concurrent_joins_never_overfill(open_db, clock):
    async def scenario():
        async with open_db() as (db, factory):
            contest = await open_contest(factory, max_participants=2)
            players = [await factory.profile(f"rush{i}") for i in range(4)]
            operations = ContestOperations(db, clock=clock)

            results = await asyncio.gather(
                *(operations.join_contest(player.id, contest.id) for player in players),
                return_exceptions=True
            )

            joined = [result for result in results if isinstance(result, UserContest)]
            rejected = [result for result in results if isinstance(result, JoinContestError)]
            assert len(joined) == 2
            assert len(rejected) == 2
            assert all(isinstance(error, ContestFullError) for error in rejected)
            assert await participants(db, contest.id) == 2
            assert await factory.count(UserContest, UserContest.contest_id == contest.id) == 2

    asyncio.run(scenario())


def test_status_sweep_follows_schedule(open_db, clock):
    async def scenario():
        async with open_db() as (db, factory):
            starting = await factory.contest(status=ContestStatus.UPCOMING, minutes=10)
            overdue = await factory.contest(
                status=ContestStatus.IN_PROGRESS, start_time=CONTEST_START - timedelta(hours=1), minutes=30
            )
            future = await factory.contest(status=ContestStatus.WAITING_FOR_PLAYERS, start_time=LATER)

            bus = InvalidationBus()
            signals = []

            async def handler(signal):
                signals.append(signal.contest_id)

            bus.subscribe(handler)
            operations = ContestOperations(db, bus=bus, clock=clock)

            counts = await operations.update_contest_statuses(CONTEST_START + timedelta(minutes=5))
            assert counts == {'started': 1, 'completed': 1}
            assert (await db.get_contest(starting.id)).status == ContestStatus.IN_PROGRESS
            assert (await db.get_contest(overdue.id)).status == ContestStatus.COMPLETED
            assert (await db.get_contest(future.id)).status == ContestStatus.WAITING_FOR_PLAYERS
            assert signals == [overdue.id]

            counts = await operations.update_contest_statuses(CONTEST_START + timedelta(minutes=10))
            assert counts == {'started': 0, 'completed': 1}
            assert (await db.get_contest(starting.id)).status == ContestStatus.COMPLETED
            assert await factory.count(Contest, Contest.status == ContestStatus.COMPLETED) == 2
            assert await factory.count(WalletTransaction) == 0

    asyncio.run(scenario())


def test_contest_lineup_needs_one_distinct_game_per_round(open_db):
    async def scenario():
        async with open_db() as (db, factory):
            async with db.transaction() as session:
                games = [GameContent(category=GameCategory.TRIVIA, content='{}') for _ in range(3)]
                session.add_all(games)
                await session.flush()
                first, second, third = (game.id for game in games)

            def create(lineup, series_count):
                return db.create_contest(
                    title='Lineup Check', start_time=LATER, end_time=LATER + timedelta(minutes=5),
                    series_count=series_count, prize_distribution_type='top_3',
                    game_content_ids=lineup
                )

            with pytest.raises(ValueError):
                await create([first, first], 2)
            with pytest.raises(ValueError):
                await create([first, second], 3)
            with pytest.raises(ValueError):
                await create([first, second, third], 2)
            assert await factory.count(Contest) == 0
            assert await factory.count(ContestGame) == 0

            contest = await create([third, first, second], 3)
            lineup = await db.get_contest_games(contest.id)
            assert [(game.game_index, game.game_content_id) for game in lineup] == [
                (0, third), (1, first), (2, second)
            ]
            assert await db.get_round_category(contest.id, 0) == GameCategory.TRIVIA
            assert await db.get_round_category(contest.id, 3) is None

    asyncio.run(scenario())
