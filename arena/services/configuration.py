"""
Runtime configuration service for the contest engine.

Operators can override cache TTLs and sweep intervals without a redeploy.
Values are JSON-encoded in the configurations table, cached in memory, and
every change leaves an audit log entry.
"""

import json
import logging
from typing import Any, Dict
from sqlalchemy import select, delete
from arena.services.base import BaseService
from arena.database.models import Configuration, AuditLog

logger = logging.getLogger(__name__)

# Keys read at startup
PRIZE_MODELS_TTL_KEY = 'cache.prize_models_ttl'
SCORING_RULES_TTL_KEY = 'cache.scoring_rules_ttl'
LEADERBOARD_TTL_KEY = 'cache.leaderboard_ttl'
SETTLEMENT_SWEEP_KEY = 'settlement.sweep_minutes'


class ConfigurationService(BaseService):
    """Runtime overrides with an in-memory cache and audit trail."""

    def __init__(self, session_factory):
        super().__init__(session_factory)
        self._cache: Dict[str, Any] = {}

    async def load_all(self):
        """Reload every configuration row; rows with invalid JSON are skipped."""
        new_cache = {}
        async with self.get_session() as session:
            result = await session.execute(select(Configuration))
            for config in result.scalars().all():
                try:
                    new_cache[config.key] = json.loads(config.value)
                except json.JSONDecodeError:
                    logger.warning(f"Invalid JSON for config key '{config.key}', skipping")

        self._cache = new_cache
        logger.info(f"Loaded {len(self._cache)} configuration parameters")

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get configuration value by key.

        Args:
            key: Configuration key (e.g., 'cache.leaderboard_ttl')
            default: Default value if key not found

        Returns:
            Configuration value or default
        """
        return self._cache.get(key, default)

    def get_number(self, key: str, default: float) -> float:
        """Numeric lookup that falls back to the default on a non-numeric override."""
        value = self._cache.get(key, default)
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            logger.warning(f"Config key '{key}' is not numeric ({value!r}), using default {default}")
            return default
        return value

    async def set(self, key: str, value: Any, user_id: int):
        """
        Persist a configuration value and record who changed it.

        Args:
            key: Configuration key
            value: Configuration value (will be JSON-encoded)
            user_id: Discord user ID for audit trail
        """
        async with self.get_session() as session:
            config = await session.get(Configuration, key)

            old_value = None
            if config:
                old_value = config.value
                config.value = json.dumps(value)
            else:
                session.add(Configuration(key=key, value=json.dumps(value)))

            session.add(AuditLog(
                user_id=user_id,
                action='config_set',
                details=json.dumps({
                    'key': key,
                    'old_value': self._parse_audit_value(old_value),
                    'new_value': value
                })
            ))

        await self.load_all()

    async def unset(self, key: str, user_id: int) -> bool:
        """Remove an override; returns False when the key was not set."""
        async with self.get_session() as session:
            config = await session.get(Configuration, key)
            if config is None:
                return False

            old_value = config.value
            await session.execute(delete(Configuration).where(Configuration.key == key))
            session.add(AuditLog(
                user_id=user_id,
                action='config_unset',
                details=json.dumps({'key': key, 'old_value': self._parse_audit_value(old_value)})
            ))

        await self.load_all()
        return True

    @staticmethod
    def _parse_audit_value(raw):
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            return {"error": "invalid JSON", "raw": raw}

    def list_all(self) -> Dict[str, Any]:
        return self._cache.copy()

    def get_by_category(self, category: str) -> Dict[str, Any]:
        """
        Get all configuration values for a category prefix.

        Args:
            category: Configuration category (e.g., 'cache', 'settlement')

        Returns:
            Dictionary of configuration values for the category, prefix stripped
        """
        prefix = f"{category}."
        return {
            key[len(prefix):]: value
            for key, value in self._cache.items()
            if key.startswith(prefix)
        }
