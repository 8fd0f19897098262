import asyncio
import logging
import traceback
from typing import Optional

import discord
from discord.ext import commands
from discord import app_commands

from arena.config import Config
from arena.database.database import Database
from arena.operations.completion_watcher import ContestCompletionWatcher
from arena.operations.contest_operations import ContestOperations
from arena.operations.game_session import GameSessionHandler
from arena.operations.prize_distributor import PrizeDistributor
from arena.operations.progress_coordinator import ContestProgressCoordinator
from arena.operations.settlement_operations import SettlementOperations
from arena.services.configuration import (
    ConfigurationService, LEADERBOARD_TTL_KEY, PRIZE_MODELS_TTL_KEY, SCORING_RULES_TTL_KEY
)
from arena.services.invalidation import InvalidationBus
from arena.services.leaderboard import LeaderboardService
from arena.services.rules_cache import PrizeModelCache, ScoringRulesCache
from arena.services.scoring import ScoringService
from arena.utils.embeds import ContestEmbeds
from arena.utils.logger import quiet_libraries, setup_logger
from arena.utils.redis_utils import RedisUtils
from arena.utils.time_utils import utcnow_naive

class ArenaBot(commands.Bot):
    def __init__(self):
        intents = discord.Intents.default()
        intents.guilds = True

        super().__init__(
            command_prefix=Config.COMMAND_PREFIX,
            intents=intents,
            help_command=None
        )

        # Attach app command error handler
        self.tree.on_error = self.on_app_command_error

        self.db: Optional[Database] = None
        self.config_service: Optional[ConfigurationService] = None
        self.bus: Optional[InvalidationBus] = None
        self.prize_cache: Optional[PrizeModelCache] = None
        self.scoring_rules_cache: Optional[ScoringRulesCache] = None
        self.scoring_service: Optional[ScoringService] = None
        self.leaderboard_service: Optional[LeaderboardService] = None
        self.distributor: Optional[PrizeDistributor] = None
        self.settlement_ops: Optional[SettlementOperations] = None
        self.contest_ops: Optional[ContestOperations] = None
        self.clock = utcnow_naive
        self.logger = setup_logger(__name__)

    async def setup_hook(self):
        """Called when the bot is starting up"""
        self.logger.info("Setting up Contest Arena...")

        self.db = Database()
        await self.db.initialize()

        self.config_service = ConfigurationService(self.db.session_factory)
        await self.config_service.load_all()
        self.logger.info("Configuration service initialized")

        redis_client = await RedisUtils.create_redis_client()
        self.bus = InvalidationBus(redis_client)
        self.bus.start()

        # Process-scoped caches, constructed once and shared
        self.prize_cache = PrizeModelCache(
            self.db.session_factory,
            ttl=self.config_service.get_number(PRIZE_MODELS_TTL_KEY, Config.PRIZE_MODEL_CACHE_TTL),
            max_retries=Config.READ_MAX_RETRIES
        )
        self.scoring_rules_cache = ScoringRulesCache(
            self.db.session_factory,
            ttl=self.config_service.get_number(SCORING_RULES_TTL_KEY, Config.SCORING_RULES_CACHE_TTL),
            max_retries=Config.READ_MAX_RETRIES
        )
        self.leaderboard_service = LeaderboardService(
            self.db.session_factory,
            ttl=self.config_service.get_number(LEADERBOARD_TTL_KEY, Config.LEADERBOARD_CACHE_TTL),
            max_retries=Config.READ_MAX_RETRIES
        )
        self.bus.subscribe(self.leaderboard_service.handle_invalidation)
        self.scoring_service = ScoringService(self.scoring_rules_cache, Config.GAME_DURATION_SECONDS)

        self.distributor = PrizeDistributor(self.db, self.bus)
        self.settlement_ops = SettlementOperations(
            self.db, self.prize_cache, self.leaderboard_service, self.distributor
        )
        self.contest_ops = ContestOperations(self.db, self.bus)

        await self.load_cogs()
        await self._sync_commands()

        self.logger.info("Contest Arena setup complete!")

    def open_contest_session(self, user_id: int, contest_id: int, on_contest_completed=None,
                             on_round_complete=None, on_notice=None):
        """
        Wire the per-session components for one player in one contest.

        Called by the contest play cog, which owns the returned objects and
        stop()s the coordinator and watcher when the session ends.
        """
        coordinator = ContestProgressCoordinator(
            self.db, user_id, contest_id,
            clock=self.clock,
            on_contest_completed=on_contest_completed,
            bus=self.bus
        )
        handler = GameSessionHandler(
            self.db, coordinator,
            scoring_service=self.scoring_service,
            bus=self.bus,
            on_round_complete=on_round_complete
        )
        watcher = ContestCompletionWatcher(
            self.db, user_id, contest_id,
            clock=self.clock,
            on_completed=on_notice,
            settlement=self.settlement_ops
        )
        return coordinator, handler, watcher

    async def load_cogs(self):
        """Load all cogs"""
        cogs_to_load = [
            'arena.cogs.housekeeping',
            'arena.cogs.leaderboard',
            'arena.cogs.contest_play',
        ]

        for cog in cogs_to_load:
            try:
                await self.load_extension(cog)
                self.logger.info(f"Loaded cog: {cog}")
            except Exception as e:
                self.logger.error(f"Failed to load cog {cog}: {e}", exc_info=True)

    async def _sync_commands(self):
        """Sync slash commands with Discord"""
        if not self.tree.get_commands():
            self.logger.warning("No application commands found to sync. Check for cog loading errors.")
            return

        try:
            guild_ids = Config.get_guild_ids()

            if guild_ids:
                for guild_id in guild_ids:
                    try:
                        guild = discord.Object(id=guild_id)
                        self.tree.copy_global_to(guild=guild)
                        synced = await self.tree.sync(guild=guild)
                        self.logger.info(f"Synced {len(synced)} command(s) to guild {guild_id}")
                    except discord.errors.HTTPException as e:
                        self.logger.error(f"HTTP error syncing to guild {guild_id}. Status: {e.status}", exc_info=True)
            else:
                self.logger.info("Syncing commands globally (can take up to an hour to propagate)")
                synced = await self.tree.sync()
                self.logger.info(f"Synced {len(synced)} command(s) globally")
        except Exception as e:
            self.logger.error(f"Failed to sync commands: {e}", exc_info=True)
            # Prefix commands keep working

    async def on_ready(self):
        self.logger.info(f'{self.user} has connected to Discord!')
        self.logger.info(f'Bot is in {len(self.guilds)} guilds')

        await self.change_presence(activity=discord.Game(name="Contest Arena | /contest-results"))

    async def on_app_command_error(self, interaction: discord.Interaction, error: app_commands.AppCommandError):
        """Global error handler for slash commands"""
        command_name = interaction.command.name if interaction.command else 'Unknown'
        if isinstance(error, app_commands.CheckFailure):
            self.logger.info(f"Permission denied for command '{command_name}' by user {interaction.user}")
            error_embed = discord.Embed(
                title="❌ Permission Denied",
                description="You don't have the required permissions to use this command.",
                color=discord.Color.red()
            )
        else:
            self.logger.error(f"Error in app command '{command_name}': {error}", exc_info=True)
            original = getattr(error, 'original', error)
            error_embed = ContestEmbeds.error(original)

        try:
            if interaction.response.is_done():
                await interaction.followup.send(embed=error_embed, ephemeral=True)
            else:
                await interaction.response.send_message(embed=error_embed, ephemeral=True)
        except discord.errors.HTTPException as e:
            self.logger.error(f"Failed to send error response: {e}")

    async def on_command_error(self, ctx: commands.Context, error: Exception):
        """Global error handler for prefix commands"""
        if isinstance(error, commands.CommandNotFound):
            return

        if isinstance(error, commands.CheckFailure):
            self.logger.info(f"Permission denied for command '{ctx.command.name if ctx.command else 'Unknown'}' by user {ctx.author}")
            await ctx.send("❌ You don't have permission to use this command.")
            return

        if isinstance(error, commands.MissingRequiredArgument):
            await ctx.send(f"❌ Missing required argument: `{error.param.name}`")
            return

        if isinstance(error, commands.BadArgument):
            await ctx.send(f"❌ Invalid argument: {error}")
            return

        self.logger.error(f"Unexpected error in command {ctx.command}: {error}", exc_info=error)
        await ctx.send(embed=ContestEmbeds.error(getattr(error, 'original', error)))

    async def close(self):
        """Cleanup when bot is shutting down"""
        self.logger.info("Shutting down Contest Arena...")

        if self.bus:
            await self.bus.stop()
        if self.db:
            await self.db.close()

        await super().close()

async def main():
    """Main entry point"""
    Config.validate()
    quiet_libraries()

    bot = ArenaBot()

    try:
        await bot.start(Config.DISCORD_TOKEN)
    except KeyboardInterrupt:
        await bot.close()
    except Exception as e:
        logging.error(f"Fatal error: {e}")
        traceback.print_exc()
    finally:
        await bot.close()

def run():
    asyncio.run(main())

if __name__ == "__main__":
    run()
