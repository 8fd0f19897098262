import discord
from discord import app_commands
from discord.ext import commands
from arena.utils.embeds import ContestEmbeds
from arena.utils.exceptions import ArenaException, ContestNotFoundError
import logging

logger = logging.getLogger(__name__)

class LeaderboardCog(commands.Cog):
    """Contest standings and final results"""

    def __init__(self, bot):
        self.bot = bot
        self.settlement_ops = bot.settlement_ops

    @app_commands.command(name="contest-results", description="View a contest's standings and prizes")
    @app_commands.describe(contest_id="Contest to show")
    async def contest_results(self, interaction: discord.Interaction, contest_id: int):
        """Show standings; viewing a finished contest settles it if nobody has yet."""
        await interaction.response.defer()

        try:
            contest = await self.bot.db.get_contest(contest_id)
            if contest is None:
                raise ContestNotFoundError(contest_id)

            entries = await self.settlement_ops.get_results(contest_id)
            await interaction.followup.send(embed=ContestEmbeds.results(contest, entries))

        except ArenaException as e:
            logger.warning(f"contest-results for {contest_id} failed: {e}")
            await interaction.followup.send(embed=ContestEmbeds.error(e))
        except Exception as e:
            logger.error(f"Error in contest-results command for contest {contest_id}: {e}", exc_info=True)
            await interaction.followup.send(embed=ContestEmbeds.error(e))

    @app_commands.command(name="contest-join", description="Join a contest and pay its entry fee")
    @app_commands.describe(contest_id="Contest to join")
    async def contest_join(self, interaction: discord.Interaction, contest_id: int):
        await interaction.response.defer(ephemeral=True)

        try:
            profile = await self.bot.db.get_profile_by_discord_id(interaction.user.id)
            if profile is None:
                profile = await self.bot.db.create_profile(
                    username=interaction.user.display_name, discord_id=interaction.user.id
                )

            await self.bot.contest_ops.join_contest(profile.id, contest_id)
            await interaction.followup.send(
                embed=discord.Embed(
                    title="✅ Joined",
                    description=f"You're in contest **{contest_id}**. Good luck!",
                    color=discord.Color.green()
                )
            )
        except ArenaException as e:
            await interaction.followup.send(embed=ContestEmbeds.error(e))
        except Exception as e:
            logger.error(f"Error joining contest {contest_id} for {interaction.user.id}: {e}", exc_info=True)
            await interaction.followup.send(embed=ContestEmbeds.error(e))


async def setup(bot):
    await bot.add_cog(LeaderboardCog(bot))
