import logging
from typing import Any, Mapping, Optional

from arena.constants import GameConstants
from arena.services.rules_cache import ScoringRulesCache
from arena.utils.scoring import ScoreCalculator

logger = logging.getLogger(__name__)


class ScoringService:
    """Scores a round against the cached rule set."""

    def __init__(self, rules_cache: ScoringRulesCache,
                 game_duration: int = GameConstants.GAME_DURATION_SECONDS):
        self.rules_cache = rules_cache
        self.game_duration = game_duration

    async def calculate_score(self, category: str, is_correct: bool, time_taken: Optional[float],
                              additional_data: Optional[Mapping[str, Any]] = None) -> int:
        if not is_correct:
            return 0

        rules, speed_rules = await self.rules_cache.get_rules()
        score = ScoreCalculator.score(
            category, is_correct, time_taken, additional_data,
            rules, speed_rules, self.game_duration
        )
        logger.debug(f"Scored {category} round: correct={is_correct}, time={time_taken}, score={score}")
        return score
