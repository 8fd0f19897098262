"""
Shared embed builders for contest commands.

Keeps result, round and error presentation consistent between the contest
cogs.
"""

import discord
from decimal import Decimal
from typing import Dict, List, Optional

from arena.constants import UIConstants
from arena.data_models.leaderboard import LeaderboardEntry
from arena.data_models.progress import CompletionNotice, ProgressSnapshot, RoundResult, RoundState
from arena.database.models import Contest, ContestStatus, PrizeCalculationStatus
from arena.utils.exceptions import ArenaException

RANK_MEDALS = {1: "🥇", 2: "🥈", 3: "🥉"}


def format_amount(amount: Optional[Decimal]) -> str:
    if amount is None:
        return "-"
    return f"{UIConstants.COIN_EMOJI} {amount:,.2f}"


class ContestEmbeds:
    """Embed factory for contest results and errors."""

    @staticmethod
    def results(contest: Contest, entries: List[LeaderboardEntry],
                limit: int = UIConstants.LEADERBOARD_DISPLAY_LIMIT) -> discord.Embed:
        """
        Standings embed; prizes are shown once the contest has ended.

        Tied players share a rank number, so the rank column can repeat.
        """
        finished = contest.status == ContestStatus.COMPLETED
        embed = discord.Embed(
            title=f"{UIConstants.TROPHY_EMOJI} {contest.title}",
            description="Final results" if finished else "Live standings",
            color=UIConstants.GOLD_RANK_COLOR if finished else UIConstants.DEFAULT_EMBED_COLOR
        )

        if not entries:
            embed.add_field(name="Standings", value="No players have joined this contest yet.", inline=False)
            return embed

        lines = []
        for entry in entries[:limit]:
            marker = RANK_MEDALS.get(entry.rank, f"`#{entry.rank:>2}`")
            line = f"{marker} **{entry.username}** - {entry.total_score:,} pts"
            if entry.prize is not None:
                line += f" - {format_amount(entry.prize)}"
            lines.append(line)

        embed.add_field(name="Standings", value="\n".join(lines), inline=False)
        if len(entries) > limit:
            embed.set_footer(text=f"Showing top {limit} of {len(entries)} players")
        else:
            embed.set_footer(text=f"Prize pool: {contest.prize_pool:,.2f} | {contest.prize_distribution_type}")
        return embed

    @staticmethod
    def settlement(contest_id: int, payouts: Dict[int, Decimal],
                   status: Optional[PrizeCalculationStatus]) -> discord.Embed:
        total = sum(payouts.values(), Decimal('0.00'))
        embed = discord.Embed(
            title="✅ Settlement" if status == PrizeCalculationStatus.COMPLETED else "ℹ️ Settlement",
            description=(
                f"Contest **{contest_id}** is **{status.value if status else 'unknown'}**.\n"
                f"{len(payouts)} winners, {format_amount(total)} total."
            ),
            color=UIConstants.SUCCESS_COLOR if status == PrizeCalculationStatus.COMPLETED
            else UIConstants.DEFAULT_EMBED_COLOR
        )
        if payouts:
            embed.add_field(
                name="Payouts",
                value="\n".join(
                    f"User {user_id}: {format_amount(amount)}"
                    for user_id, amount in sorted(payouts.items(), key=lambda item: item[1], reverse=True)[:20]
                ),
                inline=False
            )
        return embed

    @staticmethod
    def round_status(contest_id: int, snapshot: ProgressSnapshot, series_count: int,
                     remaining: float) -> discord.Embed:
        if snapshot.state == RoundState.CONTEST_COMPLETED:
            description = "You've finished every round. Results are posted when the contest ends."
        elif snapshot.state == RoundState.NO_ACTIVE_ROUND:
            description = "The first round hasn't started yet."
        else:
            description = (
                f"Round **{snapshot.current_game_index + 1}/{series_count}** - "
                f"{int(remaining)}s left. Answer with /contest-answer."
            )
        return discord.Embed(
            title=f"🎮 Contest {contest_id}",
            description=description,
            color=UIConstants.DEFAULT_EMBED_COLOR
        )

    @staticmethod
    def round_result(result: RoundResult, series_count: int) -> discord.Embed:
        if result.is_final_game:
            description = f"Final round done! **{result.score}** pts, **{result.total_score}** total."
        else:
            description = (
                f"Round {result.game_index + 1}/{series_count}: **{result.score}** pts, "
                f"**{result.total_score}** total. Next round has started."
            )
        return discord.Embed(title="✅ Answer Recorded", description=description, color=UIConstants.SUCCESS_COLOR)

    @staticmethod
    def notice(notice: CompletionNotice) -> discord.Embed:
        embed = discord.Embed(
            title=f"{UIConstants.TROPHY_EMOJI} {notice.title}",
            description=notice.message,
            color=UIConstants.GOLD_RANK_COLOR
        )
        embed.set_footer(text=f"/contest-results contest_id:{notice.contest_id}")
        return embed

    @staticmethod
    def error(error: Exception) -> discord.Embed:
        """User-facing error; internal details stay in the logs."""
        if isinstance(error, ArenaException):
            description = error.user_message
        else:
            description = "❌ An unexpected error occurred. Please try again later."
        return discord.Embed(title="Command Error", description=description, color=UIConstants.ERROR_COLOR)
