import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import update

from arena.database.models import Contest, ContestStatus, UserContestStatus
from arena.operations.completion_watcher import ContestCompletionWatcher, leaderboard_destination
from arena.utils.exceptions import ContestNotFoundError
from conftest import CONTEST_START


class RecordingSettlement:
    def __init__(self, error=None):
        self.error = error
        self.calls = []

    async def get_results(self, contest_id):
        self.calls.append(contest_id)
        if self.error:
            raise self.error
        return []


async def watched(db, factory, clock, settlement=None, poll_interval=None, **entry_kwargs):
    contest = await factory.contest(minutes=10)
    player = await factory.profile('watcher')
    await factory.entry(player.id, contest.id, **entry_kwargs)
    notices = []

    async def on_completed(notice):
        notices.append(notice)

    watcher = ContestCompletionWatcher(
        db, player.id, contest.id, clock=clock, poll_interval=poll_interval,
        on_completed=on_completed, settlement=settlement
    )
    return contest, player, watcher, notices


def test_running_contest_gives_no_notice(open_db, clock):
    async def scenario():
        async with open_db() as (db, factory):
            contest, _, watcher, notices = await watched(db, factory, clock)
            clock.now = CONTEST_START + timedelta(minutes=10)

            assert await watcher.check() is None
            assert notices == []
            assert not watcher.notified

    asyncio.run(scenario())


def test_contest_past_end_time_notifies_once(open_db, clock):
    async def scenario():
        async with open_db() as (db, factory):
            settlement = RecordingSettlement()
            contest, _, watcher, notices = await watched(db, factory, clock, settlement=settlement)
            clock.now = CONTEST_START + timedelta(minutes=10, seconds=1)

            notice = await watcher.check()

            assert notice.title == "Contest Ended"
            assert notice.message == "This contest has ended. Check out the final results!"
            assert not notice.completed_all_rounds
            assert notice.destination == f"/contest/{contest.id}/leaderboard"
            assert notices == [notice]
            assert settlement.calls == [contest.id]

            assert await watcher.on_visibility_regained() == notice
            assert notices == [notice]
            assert settlement.calls == [contest.id]

    asyncio.run(scenario())


def test_player_who_finished_every_round_is_congratulated(open_db, clock):
    async def scenario():
        async with open_db() as (db, factory):
            contest, _, watcher, notices = await watched(
                db, factory, clock, status=UserContestStatus.COMPLETED, completed_at=CONTEST_START
            )
            async with db.transaction() as session:
                await session.execute(
                    update(Contest).where(Contest.id == contest.id).values(status=ContestStatus.COMPLETED)
                )
            clock.now = CONTEST_START + timedelta(minutes=2)

            notice = await watcher.check()

            assert notice.title == "Contest Complete!"
            assert notice.message == "You've completed all games. View the final results!"
            assert notice.completed_all_rounds

    asyncio.run(scenario())


def test_unknown_contest_raises(open_db, clock):
    async def scenario():
        async with open_db() as (db, _):
            watcher = ContestCompletionWatcher(db, 1, 31337, clock=clock)
            with pytest.raises(ContestNotFoundError):
                await watcher.check()

    asyncio.run(scenario())


def test_failed_prefetch_still_notifies(open_db, clock):
    async def scenario():
        async with open_db() as (db, factory):
            settlement = RecordingSettlement(error=RuntimeError("leaderboard down"))
            contest, _, watcher, notices = await watched(db, factory, clock, settlement=settlement)
            clock.now = CONTEST_START + timedelta(hours=1)

            notice = await watcher.check()

            assert notices == [notice]
            assert settlement.calls == [contest.id]

    asyncio.run(scenario())


def test_poller_stops_after_detecting_the_end(open_db, clock):
    async def scenario():
        async with open_db() as (db, factory):
            contest, _, watcher, notices = await watched(db, factory, clock, poll_interval=0.01)
            clock.now = CONTEST_START + timedelta(hours=1)

            watcher.start()
            await asyncio.sleep(0.2)

            assert watcher.notified
            assert len(notices) == 1
            assert not watcher._poller.is_running()

            # Already notified: starting again is a no-op
            watcher.start()
            assert not watcher._poller.is_running()

    asyncio.run(scenario())


def test_leaderboard_destination():
    assert leaderboard_destination(12) == "/contest/12/leaderboard"
