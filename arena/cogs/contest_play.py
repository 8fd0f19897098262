"""
Contest Play Cog - live contest sessions

One session per (player, contest): the progress coordinator keeps the
player's round in step with the server, the round handler records answers
and the completion watcher announces the end of the contest. Sessions are
opened by /contest-play and end on /contest-leave, once the contest has
ended, or when the cog unloads.
"""

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Tuple

import discord
from discord import app_commands
from discord.ext import commands

from arena.data_models.progress import CompletionNotice, ProgressSnapshot, RoundResult
from arena.operations.completion_watcher import ContestCompletionWatcher
from arena.operations.game_session import GameSessionHandler
from arena.operations.progress_coordinator import ContestProgressCoordinator
from arena.utils.embeds import ContestEmbeds
from arena.utils.exceptions import (
    ArenaException, ContestNotFoundError, SessionNotFoundError, UserContestNotFoundError
)
from arena.utils.logger import setup_logger

logger = setup_logger(__name__)

Notify = Callable[[discord.Embed], Awaitable[None]]


@dataclass
class PlaySession:
    coordinator: ContestProgressCoordinator
    handler: GameSessionHandler
    watcher: ContestCompletionWatcher
    series_count: int
    notify: Notify


class ContestPlayCog(commands.Cog):
    """Play rounds of a joined contest"""

    def __init__(self, bot):
        self.bot = bot
        self.sessions: Dict[Tuple[int, int], PlaySession] = {}
        self.logger = logger

    def cog_unload(self):
        for user_id, contest_id in list(self.sessions):
            self.end_session(user_id, contest_id)
        self.logger.info("ContestPlayCog: All play sessions stopped")

    # Session management

    async def open_session(self, user_id: int, contest_id: int, notify: Notify) -> Tuple[PlaySession, ProgressSnapshot]:
        """
        Open (or resume) a player's session and reconcile it with the server.

        Resuming counts as the player coming back: both the coordinator and
        the watcher re-check immediately.
        """
        self.reap_finished()
        key = (user_id, contest_id)
        session = self.sessions.get(key)

        if session is not None:
            session.notify = notify
            snapshot = await session.coordinator.on_visibility_regained()
            await session.watcher.on_visibility_regained()
        else:
            contest = await self.bot.db.get_contest(contest_id)
            if contest is None:
                raise ContestNotFoundError(contest_id)
            if await self.bot.db.get_user_contest(user_id, contest_id) is None:
                raise UserContestNotFoundError(contest_id, user_id)

            session = self._build_session(user_id, contest_id, contest.series_count, notify)
            self.sessions[key] = session
            snapshot = await session.coordinator.reconcile()
            session.coordinator.start()
            session.watcher.start()
            self.logger.info(f"Play session opened for user {user_id} contest {contest_id}")

        if snapshot is None:
            # Reconcile skipped or failed; report the local view, the poller retries
            coordinator = session.coordinator
            snapshot = coordinator.snapshot(coordinator.round_state())
        return session, snapshot

    def _build_session(self, user_id: int, contest_id: int, series_count: int, notify: Notify) -> PlaySession:
        session: Optional[PlaySession] = None

        async def on_contest_completed(contest_id: int, user_id: int):
            await session.notify(discord.Embed(
                title="🏁 All Rounds Complete",
                description="Your score is locked in. You'll be told when the contest ends.",
                color=discord.Color.green()
            ))

        async def on_notice(notice: CompletionNotice):
            await session.notify(ContestEmbeds.notice(notice))

        coordinator, handler, watcher = self.bot.open_contest_session(
            user_id, contest_id,
            on_contest_completed=on_contest_completed,
            on_notice=on_notice
        )
        session = PlaySession(coordinator, handler, watcher, series_count, notify)
        return session

    async def answer(self, user_id: int, contest_id: int, is_correct: bool,
                     additional_data: Optional[Mapping[str, Any]] = None) -> Optional[RoundResult]:
        """Score the current round's answer; None when the round moved on before it landed."""
        session = self.sessions.get((user_id, contest_id))
        if session is None:
            raise SessionNotFoundError(contest_id, user_id)

        category = await self.bot.db.get_round_category(contest_id, session.coordinator.current_game_index)
        return await session.handler.submit_answer(
            category.value if category else '', is_correct, additional_data
        )

    def end_session(self, user_id: int, contest_id: int) -> bool:
        session = self.sessions.pop((user_id, contest_id), None)
        if session is None:
            return False
        session.coordinator.stop()
        session.watcher.stop()
        self.logger.info(f"Play session closed for user {user_id} contest {contest_id}")
        return True

    def reap_finished(self) -> int:
        """Close sessions whose contest has ended and been announced."""
        finished = [key for key, session in self.sessions.items() if session.watcher.notified]
        for user_id, contest_id in finished:
            self.end_session(user_id, contest_id)
        return len(finished)

    async def _player_id(self, interaction: discord.Interaction, contest_id: int) -> int:
        profile = await self.bot.db.get_profile_by_discord_id(interaction.user.id)
        if profile is None:
            raise UserContestNotFoundError(contest_id, interaction.user.id)
        return profile.id

    def _dm_notifier(self, user: discord.abc.User) -> Notify:
        async def notify(embed: discord.Embed):
            try:
                await user.send(embed=embed)
            except discord.HTTPException as e:
                self.logger.warning(f"Could not DM contest update to {user.id}: {e}")
        return notify

    # Commands

    @app_commands.command(name="contest-play", description="Start or resume playing a contest you joined")
    @app_commands.describe(contest_id="Contest to play")
    async def contest_play(self, interaction: discord.Interaction, contest_id: int):
        await interaction.response.defer(ephemeral=True)

        try:
            user_id = await self._player_id(interaction, contest_id)
            session, snapshot = await self.open_session(user_id, contest_id, self._dm_notifier(interaction.user))
            await interaction.followup.send(embed=ContestEmbeds.round_status(
                contest_id, snapshot, session.series_count, session.coordinator.remaining_time()
            ))
        except ArenaException as e:
            await interaction.followup.send(embed=ContestEmbeds.error(e))
        except Exception as e:
            self.logger.error(f"Error opening contest {contest_id} for {interaction.user.id}: {e}", exc_info=True)
            await interaction.followup.send(embed=ContestEmbeds.error(e))

    @app_commands.command(name="contest-answer", description="Submit your answer for the current round")
    @app_commands.describe(
        contest_id="Contest you are playing",
        correct="Whether your answer was correct",
        score="Arrange/sort result out of 100",
        spots_found="Differences found",
        total_spots="Differences in the picture"
    )
    async def contest_answer(self, interaction: discord.Interaction, contest_id: int, correct: bool,
                             score: Optional[int] = None, spots_found: Optional[int] = None,
                             total_spots: Optional[int] = None):
        await interaction.response.defer(ephemeral=True)

        additional_data = {}
        if score is not None:
            additional_data['score'] = score
        if spots_found is not None:
            additional_data['found'] = spots_found
        if total_spots is not None:
            additional_data['total'] = total_spots

        try:
            user_id = await self._player_id(interaction, contest_id)
            result = await self.answer(user_id, contest_id, correct, additional_data)
            session = self.sessions[(user_id, contest_id)]

            if result is None:
                coordinator = session.coordinator
                embed = ContestEmbeds.round_status(
                    contest_id, coordinator.snapshot(coordinator.round_state()),
                    session.series_count, coordinator.remaining_time()
                )
            else:
                embed = ContestEmbeds.round_result(result, session.series_count)
            await interaction.followup.send(embed=embed)
        except ArenaException as e:
            await interaction.followup.send(embed=ContestEmbeds.error(e))
        except Exception as e:
            self.logger.error(f"Error answering contest {contest_id} for {interaction.user.id}: {e}", exc_info=True)
            await interaction.followup.send(embed=ContestEmbeds.error(e))

    @app_commands.command(name="contest-leave", description="Stop following a contest you are playing")
    @app_commands.describe(contest_id="Contest to stop playing")
    async def contest_leave(self, interaction: discord.Interaction, contest_id: int):
        profile = await self.bot.db.get_profile_by_discord_id(interaction.user.id)
        closed = profile is not None and self.end_session(profile.id, contest_id)
        message = (
            "👋 Stopped following this contest. Your progress is saved."
            if closed else "ℹ️ You have no open session for this contest."
        )
        await interaction.response.send_message(message, ephemeral=True)


async def setup(bot):
    await bot.add_cog(ContestPlayCog(bot))
