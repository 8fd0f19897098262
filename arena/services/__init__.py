"""
Services package for the contest engine.

Long-lived, process-scoped services: rule caches, leaderboard provider,
runtime configuration and push invalidation.
"""

from .base import BaseService
from .configuration import ConfigurationService
from .invalidation import InvalidationBus, InvalidationSignal
from .leaderboard import LeaderboardService
from .rules_cache import PrizeModelCache, ScoringRulesCache
from .scoring import ScoringService

__all__ = [
    'BaseService',
    'ConfigurationService',
    'InvalidationBus',
    'InvalidationSignal',
    'LeaderboardService',
    'PrizeModelCache',
    'ScoringRulesCache',
    'ScoringService',
]
