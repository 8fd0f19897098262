"""
TTL caches over the rules store.

Prize distribution models and scoring rules change rarely and are read on
every settlement and every round, so each is held by an explicit cache object
with a single freshness timestamp. The cache is constructed once by the host
process and passed to its consumers; the clock is injected so expiry is
testable.
"""

import asyncio
import json
import logging
import time
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from sqlalchemy import select

from arena.constants import CacheConstants
from arena.data_models.scoring import PrizeModel, ScoringRuleData, SpeedBonusRuleData
from arena.database.models import PrizeDistributionModel, ScoringRule, SpeedBonusRule
from arena.services.base import BaseService

logger = logging.getLogger(__name__)


def parse_distribution_rules(raw: Any) -> Dict[str, Decimal]:
    """
    Normalize distribution rules to {"rank": Decimal percentage}.

    Accepts a JSON-encoded string or an already-parsed mapping.
    """
    if isinstance(raw, (str, bytes)):
        raw = json.loads(raw)
    if not isinstance(raw, Mapping):
        raise ValueError(f"distribution rules must be a mapping, got {type(raw).__name__}")
    return {str(rank): Decimal(str(percentage)) for rank, percentage in raw.items()}


def parse_conditions(raw: Any) -> Any:
    if raw is None or raw == '':
        return None
    if isinstance(raw, (str, bytes)):
        return json.loads(raw)
    return raw


class TimedRulesCache(BaseService):
    """Whole-table cache refreshed when older than the TTL."""

    name = 'rules'

    def __init__(self, session_factory, ttl: float = CacheConstants.RULES_CACHE_TTL,
                 clock: Callable[[], float] = time.monotonic, max_retries: int = 3):
        super().__init__(session_factory)
        self.ttl = ttl
        self.clock = clock
        self.max_retries = max_retries
        self._data = None
        self._loaded_at: Optional[float] = None
        self._lock = asyncio.Lock()

    def is_fresh(self) -> bool:
        return self._loaded_at is not None and self.clock() - self._loaded_at < self.ttl

    async def _get(self):
        if self.is_fresh():
            return self._data

        async with self._lock:
            # Another caller may have refreshed while we waited
            if self.is_fresh():
                return self._data

            try:
                data = await self.execute_with_retry(self._fetch, max_retries=self.max_retries)
            except Exception as e:
                if self._data is not None:
                    logger.warning(f"Failed to refresh {self.name} cache, serving stale data: {e}")
                    return self._data
                logger.error(f"Failed to load {self.name} cache: {e}", exc_info=True)
                raise

            self._data = data
            self._loaded_at = self.clock()
            return data

    async def _fetch(self):
        raise NotImplementedError

    def invalidate(self):
        """Force the next read to hit the rules store."""
        logger.info(f"Invalidating {self.name} cache")
        self._loaded_at = None


class PrizeModelCache(TimedRulesCache):
    """Active prize distribution models keyed by name."""

    name = 'prize model'

    async def get_models(self) -> Dict[str, PrizeModel]:
        return await self._get()

    async def get_model(self, name: str) -> Optional[PrizeModel]:
        models = await self.get_models()
        return models.get(name)

    async def _fetch(self) -> Dict[str, PrizeModel]:
        async with self.get_session() as session:
            result = await session.execute(
                select(PrizeDistributionModel).where(PrizeDistributionModel.is_active == True)
            )
            rows = result.scalars().all()

        models = {}
        for row in rows:
            try:
                rules = parse_distribution_rules(row.distribution_rules)
            except (ValueError, InvalidOperation) as e:
                logger.error(f"Skipping prize model '{row.name}' with invalid distribution rules: {e}")
                continue
            models[row.name] = PrizeModel(
                name=row.name,
                distribution_rules=rules,
                min_participants=row.min_participants,
                max_participants=row.max_participants
            )

        logger.debug(f"Loaded {len(models)} prize distribution models")
        return models


class ScoringRulesCache(TimedRulesCache):
    """Active scoring rules keyed by category, plus speed bonus thresholds."""

    name = 'scoring rules'

    async def get_rules(self) -> Tuple[Dict[str, ScoringRuleData], List[SpeedBonusRuleData]]:
        return await self._get()

    async def _fetch(self) -> Tuple[Dict[str, ScoringRuleData], List[SpeedBonusRuleData]]:
        async with self.get_session() as session:
            result = await session.execute(select(ScoringRule).where(ScoringRule.is_active == True))
            rule_rows = result.scalars().all()
            result = await session.execute(
                select(SpeedBonusRule)
                .where(SpeedBonusRule.is_active == True)
                .order_by(SpeedBonusRule.time_threshold.desc())
            )
            speed_rows = result.scalars().all()

        rules = {}
        for row in rule_rows:
            try:
                conditions = parse_conditions(row.conditions)
            except ValueError as e:
                logger.error(f"Ignoring invalid conditions on {row.game_category.value} rule: {e}")
                conditions = None
            rules[row.game_category.value] = ScoringRuleData(
                base_points=row.base_points,
                additional_points=row.additional_points,
                conditions=conditions
            )

        speed_rules = [
            SpeedBonusRuleData(time_threshold=row.time_threshold, bonus_points=row.bonus_points)
            for row in speed_rows
        ]
        return rules, speed_rules
