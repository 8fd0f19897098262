"""
Housekeeping Cog - Background sweeps & owner commands

Runs the schedule-driven contest status sweep, the settlement sweep for
contests that ended unsettled, and the payout reconciliation sweep. Also
gives the owner manual settlement controls and runtime configuration
overrides.
"""

import json
from typing import Any, Dict, Optional

import discord
from discord import app_commands
from discord.ext import commands, tasks

from arena.config import Config
from arena.services.configuration import (
    LEADERBOARD_TTL_KEY, PRIZE_MODELS_TTL_KEY, SCORING_RULES_TTL_KEY, SETTLEMENT_SWEEP_KEY
)
from arena.utils.embeds import ContestEmbeds
from arena.utils.exceptions import ArenaException
from arena.utils.logger import setup_logger

logger = setup_logger(__name__)


class HousekeepingCog(commands.Cog):
    """Background settlement and status maintenance"""

    def __init__(self, bot):
        self.bot = bot
        self.logger = logger

    @commands.Cog.listener()
    async def on_ready(self):
        """Start background tasks once the bot is ready"""
        if not self.bot.db:
            self.logger.error("HousekeepingCog: Database not available")
            return

        self.apply_runtime_config()

        for loop in (self.update_contest_statuses, self.settlement_sweep, self.repair_failed_payouts):
            if not loop.is_running():
                loop.start()
        self.logger.info("HousekeepingCog: Background tasks started")

    def cog_unload(self):
        """Stop background tasks when cog is unloaded"""
        self.update_contest_statuses.cancel()
        self.settlement_sweep.cancel()
        self.repair_failed_payouts.cancel()
        self.logger.info("HousekeepingCog: Background tasks stopped")

    @tasks.loop(seconds=Config.STATUS_SWEEP_SECONDS)
    async def update_contest_statuses(self):
        try:
            await self.bot.contest_ops.update_contest_statuses()
        except Exception as e:
            self.logger.error(f"Error in contest status sweep: {e}", exc_info=True)

    @tasks.loop(minutes=Config.SETTLEMENT_SWEEP_MINUTES)
    async def settlement_sweep(self):
        """Settle contests that ended without anyone viewing their results"""
        try:
            outcomes = await self.bot.settlement_ops.settle_completed_contests()
            failed = [contest_id for contest_id, ok in outcomes.items() if not ok]
            if failed:
                self.logger.warning(f"Settlement sweep left contests failed: {failed}")
        except Exception as e:
            self.logger.error(f"Error in settlement sweep: {e}", exc_info=True)

    @tasks.loop(hours=1)
    async def repair_failed_payouts(self):
        try:
            repaired = await self.bot.distributor.retry_failed_payouts()
            if repaired:
                self.logger.info(f"Repaired {repaired} failed payouts")
        except Exception as e:
            self.logger.error(f"Error in payout reconciliation: {e}", exc_info=True)

    @update_contest_statuses.before_loop
    @settlement_sweep.before_loop
    @repair_failed_payouts.before_loop
    async def before_sweeps(self):
        """Wait for bot to be ready before starting sweeps"""
        await self.bot.wait_until_ready()

    # Runtime configuration

    def apply_runtime_config(self) -> Dict[str, float]:
        """Push configuration overrides into the running caches and the settlement sweep."""
        config = self.bot.config_service
        applied = {
            PRIZE_MODELS_TTL_KEY: config.get_number(PRIZE_MODELS_TTL_KEY, Config.PRIZE_MODEL_CACHE_TTL),
            SCORING_RULES_TTL_KEY: config.get_number(SCORING_RULES_TTL_KEY, Config.SCORING_RULES_CACHE_TTL),
            LEADERBOARD_TTL_KEY: config.get_number(LEADERBOARD_TTL_KEY, Config.LEADERBOARD_CACHE_TTL),
            SETTLEMENT_SWEEP_KEY: config.get_number(SETTLEMENT_SWEEP_KEY, Config.SETTLEMENT_SWEEP_MINUTES),
        }

        self.bot.prize_cache.ttl = applied[PRIZE_MODELS_TTL_KEY]
        self.bot.scoring_rules_cache.ttl = applied[SCORING_RULES_TTL_KEY]
        self.bot.leaderboard_service.ttl = applied[LEADERBOARD_TTL_KEY]

        sweep_minutes = applied[SETTLEMENT_SWEEP_KEY]
        if sweep_minutes <= 0:
            self.logger.warning(f"Ignoring non-positive settlement sweep interval {sweep_minutes}")
        elif sweep_minutes != self.settlement_sweep.minutes:
            self.settlement_sweep.change_interval(minutes=sweep_minutes)

        return applied

    async def set_config(self, key: str, raw_value: str, user_id: int) -> Any:
        """Store an override (JSON when it parses, else a plain string) and apply it."""
        try:
            value = json.loads(raw_value)
        except json.JSONDecodeError:
            value = raw_value

        await self.bot.config_service.set(key, value, user_id)
        self.apply_runtime_config()
        self.logger.info(f"Config {key} set to {value!r} by {user_id}")
        return value

    async def unset_config(self, key: str, user_id: int) -> bool:
        removed = await self.bot.config_service.unset(key, user_id)
        if removed:
            self.apply_runtime_config()
            self.logger.info(f"Config {key} unset by {user_id}")
        return removed

    @commands.command(name="settle")
    @commands.is_owner()
    async def manual_settle(self, ctx, contest_id: int):
        """Settle one contest now (owner only)"""
        try:
            payouts = await self.bot.settlement_ops.calculate_prize_distribution(contest_id)
            status = await self.bot.settlement_ops.get_prize_status(contest_id)
            await ctx.send(embed=ContestEmbeds.settlement(contest_id, payouts, status))
        except ArenaException as e:
            await ctx.send(embed=ContestEmbeds.error(e))
        except Exception as e:
            self.logger.error(f"Manual settlement error for contest {contest_id}: {e}", exc_info=True)
            await ctx.send(embed=ContestEmbeds.error(e))

    async def _owner_only(self, interaction: discord.Interaction) -> bool:
        if interaction.user.id != Config.OWNER_DISCORD_ID:
            await interaction.response.send_message(
                "❌ **Access Denied**\nThis command is restricted to the bot owner.",
                ephemeral=True
            )
            return False
        return True

    @app_commands.command(
        name="admin-retry-settlement",
        description="Retry a failed contest settlement (Owner only)"
    )
    @app_commands.describe(contest_id="Contest to settle again")
    async def admin_retry_settlement(self, interaction: discord.Interaction, contest_id: int):
        if not await self._owner_only(interaction):
            return

        await interaction.response.defer(ephemeral=True)
        try:
            payouts = await self.bot.settlement_ops.retry_failed_settlement(contest_id)
            repaired = await self.bot.distributor.retry_failed_payouts(contest_id)
            status = await self.bot.settlement_ops.get_prize_status(contest_id)

            embed = ContestEmbeds.settlement(contest_id, payouts, status)
            if repaired:
                embed.add_field(name="Repaired payouts", value=str(repaired), inline=False)
            await interaction.followup.send(embed=embed)

            self.logger.info(
                f"Settlement retry for contest {contest_id} by {interaction.user.id} ({interaction.user.name}): "
                f"{status.value if status else 'unknown'}"
            )
        except ArenaException as e:
            self.logger.warning(f"Settlement retry for contest {contest_id} refused: {e}")
            await interaction.followup.send(embed=ContestEmbeds.error(e))
        except Exception as e:
            self.logger.error(f"Settlement retry error for contest {contest_id}: {e}", exc_info=True)
            await interaction.followup.send(embed=ContestEmbeds.error(e))

    @app_commands.command(
        name="admin-reload-rules",
        description="Reload prize models and scoring rules (Owner only)"
    )
    async def admin_reload_rules(self, interaction: discord.Interaction):
        if not await self._owner_only(interaction):
            return

        self.bot.prize_cache.invalidate()
        self.bot.scoring_rules_cache.invalidate()
        await self.bot.leaderboard_service.invalidate()
        await self.bot.config_service.load_all()
        self.apply_runtime_config()

        await interaction.response.send_message(
            embed=discord.Embed(
                title="✅ Rules Reloaded",
                description="Prize models, scoring rules and configuration will be re-read on next use.",
                color=discord.Color.green()
            ),
            ephemeral=True
        )

    @app_commands.command(name="admin-config-list", description="List configuration overrides (Owner only)")
    @app_commands.describe(category="Category to filter by (e.g., 'cache', 'settlement')")
    async def admin_config_list(self, interaction: discord.Interaction, category: Optional[str] = None):
        if not await self._owner_only(interaction):
            return

        config_service = self.bot.config_service
        configs = config_service.get_by_category(category) if category else config_service.list_all()
        if not configs:
            await interaction.response.send_message(
                f"No configuration found for category '{category}'." if category else "No configuration found.",
                ephemeral=True
            )
            return

        output = f"**Configuration{': ' + category if category else ''}:**\n```json\n"
        for key, value in sorted(configs.items()):
            line = f"{key}: {json.dumps(value)}\n"
            if len(output) + len(line) > 1900:
                output += "... (truncated)\n"
                break
            output += line
        output += "```"
        await interaction.response.send_message(output, ephemeral=True)

    @app_commands.command(name="admin-config-set", description="Override a configuration value (Owner only)")
    @app_commands.describe(
        key="Configuration key (e.g., 'cache.leaderboard_ttl')",
        value="Value (JSON for numbers, booleans and objects)"
    )
    async def admin_config_set(self, interaction: discord.Interaction, key: str, value: str):
        if not await self._owner_only(interaction):
            return

        if len(key) > 100:
            await interaction.response.send_message("❌ Configuration key cannot exceed 100 characters.", ephemeral=True)
            return
        if len(value) > 10000:
            await interaction.response.send_message(
                "❌ Configuration value too large (max 10,000 characters).", ephemeral=True
            )
            return

        try:
            parsed = await self.set_config(key, value, interaction.user.id)
            await interaction.response.send_message(
                f"✅ Configuration updated: **{key}** = `{json.dumps(parsed)}`", ephemeral=True
            )
        except Exception as e:
            self.logger.error(f"Error setting config {key}: {e}", exc_info=True)
            await interaction.response.send_message(embed=ContestEmbeds.error(e), ephemeral=True)

    @app_commands.command(name="admin-config-unset", description="Remove a configuration override (Owner only)")
    @app_commands.describe(key="Configuration key to reset to its default")
    async def admin_config_unset(self, interaction: discord.Interaction, key: str):
        if not await self._owner_only(interaction):
            return

        try:
            removed = await self.unset_config(key, interaction.user.id)
            await interaction.response.send_message(
                f"✅ **{key}** reset to its default." if removed else f"ℹ️ **{key}** has no override.",
                ephemeral=True
            )
        except Exception as e:
            self.logger.error(f"Error unsetting config {key}: {e}", exc_info=True)
            await interaction.response.send_message(embed=ContestEmbeds.error(e), ephemeral=True)


async def setup(bot):
    await bot.add_cog(HousekeepingCog(bot))
