import asyncio
from decimal import Decimal

import pytest
from sqlalchemy import update

from arena.database.models import PrizeDistributionModel, SpeedBonusRule
from arena.services.rules_cache import PrizeModelCache, ScoringRulesCache, parse_conditions


def test_parse_conditions():
    assert parse_conditions(None) is None
    assert parse_conditions('') is None
    assert parse_conditions('{"type": "perfect_score"}') == {'type': 'perfect_score'}
    assert parse_conditions([{'type': 'perfect_score'}]) == [{'type': 'perfect_score'}]


def test_seeded_prize_models_are_loaded(open_db, monotonic):
    async def scenario():
        async with open_db() as (db, _):
            cache = PrizeModelCache(db.session_factory, clock=monotonic)
            models = await cache.get_models()

            assert set(models) == {'winner_takes_all', 'top_3', 'top_5'}
            top_3 = await cache.get_model('top_3')
            assert top_3.distribution_rules == {"1": Decimal('50'), "2": Decimal('30'), "3": Decimal('20')}
            assert top_3.min_participants == 3
            assert await cache.get_model('no_such_model') is None

    asyncio.run(scenario())


def test_inactive_and_invalid_models_are_skipped(open_db, monotonic):
    async def scenario():
        async with open_db() as (db, factory):
            await factory.prize_model('retired', {"1": 100}, active=False)
            await factory.prize_model('broken', '["not", "a", "mapping"]')

            models = await PrizeModelCache(db.session_factory, clock=monotonic).get_models()
            assert 'retired' not in models
            assert 'broken' not in models
            assert 'top_3' in models

    asyncio.run(scenario())


def test_models_refresh_after_ttl(open_db, monotonic):
    async def scenario():
        async with open_db() as (db, factory):
            cache = PrizeModelCache(db.session_factory, ttl=300, clock=monotonic)
            assert 'podium' not in await cache.get_models()

            await factory.prize_model('podium', {"1": 70, "2": 30})
            monotonic.advance(299)
            assert 'podium' not in await cache.get_models()

            monotonic.advance(1)
            assert 'podium' in await cache.get_models()

    asyncio.run(scenario())


def test_invalidate_forces_reload(open_db, monotonic):
    async def scenario():
        async with open_db() as (db, factory):
            cache = PrizeModelCache(db.session_factory, clock=monotonic)
            await cache.get_models()
            assert cache.is_fresh()

            async with db.transaction() as session:
                await session.execute(
                    update(PrizeDistributionModel)
                    .where(PrizeDistributionModel.name == 'top_3')
                    .values(is_active=False)
                )
            cache.invalidate()
            assert not cache.is_fresh()
            assert await cache.get_model('top_3') is None

    asyncio.run(scenario())


def test_failed_refresh_serves_stale_models(open_db, monotonic, monkeypatch):
    async def scenario():
        async with open_db() as (db, _):
            cache = PrizeModelCache(db.session_factory, clock=monotonic)
            loaded = await cache.get_models()

            async def unavailable():
                raise RuntimeError("rules store unavailable")

            monkeypatch.setattr(cache, '_fetch', unavailable)
            monotonic.advance(301)
            assert await cache.get_models() == loaded

    asyncio.run(scenario())


def test_failed_first_load_raises(open_db, monotonic, monkeypatch):
    async def scenario():
        async with open_db() as (db, _):
            cache = PrizeModelCache(db.session_factory, clock=monotonic)

            async def unavailable():
                raise RuntimeError("rules store unavailable")

            monkeypatch.setattr(cache, '_fetch', unavailable)
            with pytest.raises(RuntimeError):
                await cache.get_models()

    asyncio.run(scenario())


def test_scoring_rules_keyed_by_category_and_speed_rules_descending(open_db, monotonic):
    async def scenario():
        async with open_db() as (db, _):
            async with db.transaction() as session:
                session.add(SpeedBonusRule(time_threshold=5, bonus_points=5, is_active=False))

            rules, speed_rules = await ScoringRulesCache(db.session_factory, clock=monotonic).get_rules()

            assert set(rules) == {'trivia', 'arrange_sort', 'spot_difference'}
            assert rules['spot_difference'].conditions == {'type': 'all_spots_found'}
            assert rules['trivia'].conditions is None
            assert [rule.time_threshold for rule in speed_rules] == [20, 10]

    asyncio.run(scenario())
