import asyncio
from types import SimpleNamespace

from arena.cogs.housekeeping import HousekeepingCog
from arena.config import Config
from arena.database.models import AuditLog
from arena.services.configuration import (
    ConfigurationService, LEADERBOARD_TTL_KEY, PRIZE_MODELS_TTL_KEY, SETTLEMENT_SWEEP_KEY
)
from arena.services.leaderboard import LeaderboardService
from arena.services.rules_cache import PrizeModelCache, ScoringRulesCache


async def build_cog(db, monotonic):
    config_service = ConfigurationService(db.session_factory)
    await config_service.load_all()
    bot = SimpleNamespace(
        db=db,
        config_service=config_service,
        prize_cache=PrizeModelCache(db.session_factory, clock=monotonic),
        scoring_rules_cache=ScoringRulesCache(db.session_factory, clock=monotonic),
        leaderboard_service=LeaderboardService(db.session_factory, clock=monotonic),
    )
    return HousekeepingCog(bot), bot


def test_defaults_apply_without_overrides(open_db, monotonic):
    async def scenario():
        async with open_db() as (db, factory):
            cog, bot = await build_cog(db, monotonic)

            applied = cog.apply_runtime_config()

            assert applied[PRIZE_MODELS_TTL_KEY] == Config.PRIZE_MODEL_CACHE_TTL
            assert bot.prize_cache.ttl == Config.PRIZE_MODEL_CACHE_TTL
            assert bot.scoring_rules_cache.ttl == Config.SCORING_RULES_CACHE_TTL
            assert bot.leaderboard_service.ttl == Config.LEADERBOARD_CACHE_TTL
            assert cog.settlement_sweep.minutes == Config.SETTLEMENT_SWEEP_MINUTES

    asyncio.run(scenario())


def test_owner_overrides_reach_running_components(open_db, monotonic):
    async def scenario():
        async with open_db() as (db, factory):
            cog, bot = await build_cog(db, monotonic)

            assert await cog.set_config(LEADERBOARD_TTL_KEY, '60', 4242) == 60
            assert bot.leaderboard_service.ttl == 60

            assert await cog.set_config(SETTLEMENT_SWEEP_KEY, '2', 4242) == 2
            assert cog.settlement_sweep.minutes == 2

            # Non-numeric values are stored but the component keeps its default
            assert await cog.set_config(PRIZE_MODELS_TTL_KEY, 'fast', 4242) == 'fast'
            assert bot.prize_cache.ttl == Config.PRIZE_MODEL_CACHE_TTL

            # A non-positive sweep interval is ignored
            await cog.set_config(SETTLEMENT_SWEEP_KEY, '0', 4242)
            assert cog.settlement_sweep.minutes == 2

            assert await cog.unset_config(LEADERBOARD_TTL_KEY, 4242)
            assert bot.leaderboard_service.ttl == Config.LEADERBOARD_CACHE_TTL
            assert not await cog.unset_config(LEADERBOARD_TTL_KEY, 4242)

            assert await factory.count(AuditLog, AuditLog.action == 'config_set') == 4
            assert await factory.count(AuditLog, AuditLog.action == 'config_unset') == 1

    asyncio.run(scenario())
