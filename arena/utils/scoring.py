import logging
from typing import Any, Dict, Iterable, Mapping, Optional

from arena.constants import GameConstants
from arena.data_models.scoring import ScoringRuleData, SpeedBonusRuleData

logger = logging.getLogger(__name__)


def _all_spots_found(additional_data: Mapping[str, Any], time_taken: Optional[float], condition: Mapping) -> bool:
    found = additional_data.get('found')
    total = additional_data.get('total')
    return found is not None and total is not None and found == total


def _perfect_score(additional_data: Mapping[str, Any], time_taken: Optional[float], condition: Mapping) -> bool:
    return additional_data.get('score') == GameConstants.PERFECT_SCORE


def _quick_completion(additional_data: Mapping[str, Any], time_taken: Optional[float], condition: Mapping) -> bool:
    threshold = condition.get('threshold')
    if threshold is None or time_taken is None:
        return False
    return time_taken < threshold


CONDITION_CHECKS = {
    'all_spots_found': _all_spots_found,
    'perfect_score': _perfect_score,
    'quick_completion': _quick_completion,
}


class ScoreCalculator:
    """Handles round score calculations for contest mini-games"""

    @staticmethod
    def evaluate_condition(condition: Any, additional_data: Optional[Mapping[str, Any]],
                           time_taken: Optional[float]) -> bool:
        """
        Evaluate a single rule condition

        Args:
            condition: Condition mapping with a "type" key, or a bare condition name
            additional_data: Game-specific result data (spots found, arrange score, ...)
            time_taken: Seconds the player needed for the round

        Returns:
            True if the condition holds; unknown condition kinds are False
        """
        if isinstance(condition, str):
            condition = {'type': condition}
        if not isinstance(condition, Mapping):
            return False

        check = CONDITION_CHECKS.get(condition.get('type'))
        if check is None:
            return False
        return check(additional_data or {}, time_taken, condition)

    @staticmethod
    def conditions_hold(conditions: Any, additional_data: Optional[Mapping[str, Any]],
                        time_taken: Optional[float]) -> bool:
        """A rule may carry one condition or a list; every listed condition must hold."""
        if not conditions:
            return False
        if isinstance(conditions, (list, tuple)):
            return all(
                ScoreCalculator.evaluate_condition(condition, additional_data, time_taken)
                for condition in conditions
            )
        return ScoreCalculator.evaluate_condition(conditions, additional_data, time_taken)

    @staticmethod
    def speed_bonus(time_taken: Optional[float], speed_bonus_rules: Iterable[SpeedBonusRuleData],
                    game_duration: int = GameConstants.GAME_DURATION_SECONDS) -> int:
        """
        Bonus for finishing early

        The first rule (by descending threshold) whose threshold is covered by the
        remaining time wins; no match means no bonus.
        """
        if time_taken is None:
            return 0

        remaining = game_duration - time_taken
        for rule in sorted(speed_bonus_rules, key=lambda r: r.time_threshold, reverse=True):
            if rule.time_threshold <= remaining:
                return rule.bonus_points
        return 0

    @staticmethod
    def score(category: str, is_correct: bool, time_taken: Optional[float],
              additional_data: Optional[Mapping[str, Any]],
              rules: Mapping[str, ScoringRuleData],
              speed_bonus_rules: Iterable[SpeedBonusRuleData],
              game_duration: int = GameConstants.GAME_DURATION_SECONDS) -> int:
        """
        Calculate the score for one round

        Args:
            category: Game category key (e.g. "trivia")
            is_correct: Whether the player solved the round
            time_taken: Seconds used, or None when unknown
            additional_data: Game-specific result data for rule conditions
            rules: Scoring rules keyed by category
            speed_bonus_rules: Speed bonus thresholds
            game_duration: Round length in seconds

        Returns:
            Non-negative integer score; 0 when incorrect or when no rule exists
        """
        if not is_correct:
            return 0

        rule = rules.get(category)
        if rule is None:
            logger.error(f"No scoring rule found for category: {category}")
            return 0

        points = rule.base_points
        if rule.additional_points and ScoreCalculator.conditions_hold(rule.conditions, additional_data, time_taken):
            points += rule.additional_points

        points += ScoreCalculator.speed_bonus(time_taken, speed_bonus_rules, game_duration)
        return max(0, int(points))
