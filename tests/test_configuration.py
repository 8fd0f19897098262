import asyncio
import json

from sqlalchemy import select

from arena.database.models import AuditLog, Configuration
from arena.services.configuration import (
    ConfigurationService, LEADERBOARD_TTL_KEY, PRIZE_MODELS_TTL_KEY, SETTLEMENT_SWEEP_KEY
)


async def audit_entries(db):
    async with db.get_session() as session:
        result = await session.execute(select(AuditLog).order_by(AuditLog.id))
        return [(row.action, json.loads(row.details)) for row in result.scalars().all()]


def test_set_and_read_back_with_audit(open_db):
    async def scenario():
        async with open_db() as (db, _):
            service = ConfigurationService(db.session_factory)
            await service.load_all()
            assert service.get(LEADERBOARD_TTL_KEY) is None

            await service.set(LEADERBOARD_TTL_KEY, 60, user_id=42)
            await service.set(LEADERBOARD_TTL_KEY, 90, user_id=42)

            assert service.get(LEADERBOARD_TTL_KEY) == 90
            assert await audit_entries(db) == [
                ('config_set', {'key': LEADERBOARD_TTL_KEY, 'old_value': None, 'new_value': 60}),
                ('config_set', {'key': LEADERBOARD_TTL_KEY, 'old_value': 60, 'new_value': 90}),
            ]

            # A fresh service sees the persisted value
            reloaded = ConfigurationService(db.session_factory)
            await reloaded.load_all()
            assert reloaded.get(LEADERBOARD_TTL_KEY) == 90

    asyncio.run(scenario())


def test_unset_removes_override(open_db):
    async def scenario():
        async with open_db() as (db, _):
            service = ConfigurationService(db.session_factory)
            await service.set(SETTLEMENT_SWEEP_KEY, 15, user_id=7)

            assert await service.unset(SETTLEMENT_SWEEP_KEY, user_id=7) is True
            assert service.get(SETTLEMENT_SWEEP_KEY, 5) == 5
            assert await service.unset(SETTLEMENT_SWEEP_KEY, user_id=7) is False
            assert (await audit_entries(db))[-1] == (
                'config_unset', {'key': SETTLEMENT_SWEEP_KEY, 'old_value': 15}
            )

    asyncio.run(scenario())


def test_numeric_lookup_falls_back_on_bad_values(open_db):
    async def scenario():
        async with open_db() as (db, _):
            service = ConfigurationService(db.session_factory)
            await service.set(PRIZE_MODELS_TTL_KEY, "soon", user_id=1)
            await service.set(LEADERBOARD_TTL_KEY, True, user_id=1)
            await service.set(SETTLEMENT_SWEEP_KEY, 2.5, user_id=1)

            assert service.get_number(PRIZE_MODELS_TTL_KEY, 300) == 300
            assert service.get_number(LEADERBOARD_TTL_KEY, 180) == 180
            assert service.get_number(SETTLEMENT_SWEEP_KEY, 5) == 2.5
            assert service.get_number('cache.unknown', 10) == 10

    asyncio.run(scenario())


def test_invalid_json_rows_are_skipped(open_db):
    async def scenario():
        async with open_db() as (db, _):
            async with db.transaction() as session:
                session.add(Configuration(key='cache.broken', value='{not json'))
                session.add(Configuration(key='cache.scoring_rules_ttl', value='120'))

            service = ConfigurationService(db.session_factory)
            await service.load_all()

            assert service.list_all() == {'cache.scoring_rules_ttl': 120}
            assert service.get_by_category('cache') == {'scoring_rules_ttl': 120}
            assert service.get_by_category('settlement') == {}

    asyncio.run(scenario())
