import asyncio

from arena.data_models.scoring import ScoringRuleData, SpeedBonusRuleData
from arena.services.rules_cache import ScoringRulesCache
from arena.services.scoring import ScoringService
from arena.utils.scoring import ScoreCalculator

RULES = {
    'trivia': ScoringRuleData(base_points=100),
    'spot_difference': ScoringRuleData(
        base_points=100, additional_points=50, conditions={'type': 'all_spots_found'}
    ),
    'arrange_sort': ScoringRuleData(
        base_points=80, additional_points=40,
        conditions=[{'type': 'perfect_score'}, {'type': 'quick_completion', 'threshold': 10}]
    ),
}
SPEED_RULES = [
    SpeedBonusRuleData(time_threshold=20, bonus_points=50),
    SpeedBonusRuleData(time_threshold=10, bonus_points=20),
]


def score(category, is_correct, time_taken, additional_data=None, speed_rules=SPEED_RULES):
    return ScoreCalculator.score(category, is_correct, time_taken, additional_data, RULES, speed_rules)


def test_incorrect_answer_scores_zero():
    assert score('trivia', False, 1) == 0
    assert score('spot_difference', False, 1, {'found': 5, 'total': 5}) == 0


def test_fast_trivia_gets_top_speed_bonus():
    # 30s round, 5s used -> 25s remaining -> threshold 20 matches
    assert score('trivia', True, 5) == 150


def test_speed_bonus_uses_first_matching_threshold():
    assert score('trivia', True, 15) == 120   # 15s remaining
    assert score('trivia', True, 25) == 100   # 5s remaining, no bonus
    assert score('trivia', True, 10) == 150   # exactly 20s remaining


def test_speed_rule_order_does_not_matter():
    assert score('trivia', True, 5, speed_rules=list(reversed(SPEED_RULES))) == 150


def test_unknown_time_gets_no_speed_bonus():
    assert score('trivia', True, None) == 100


def test_missing_rule_scores_zero():
    assert score('memory_match', True, 5) == 0


def test_all_spots_found_adds_points():
    assert score('spot_difference', True, 25, {'found': 5, 'total': 5}) == 150
    assert score('spot_difference', True, 25, {'found': 4, 'total': 5}) == 100
    assert score('spot_difference', True, 25, None) == 100


def test_every_listed_condition_must_hold():
    assert score('arrange_sort', True, 8, {'score': 100}) == 80 + 40 + 50
    assert score('arrange_sort', True, 12, {'score': 100}) == 80 + 20   # too slow for the condition
    assert score('arrange_sort', True, 8, {'score': 90}) == 80 + 50


def test_unknown_condition_is_false():
    assert ScoreCalculator.evaluate_condition({'type': 'lucky_guess'}, {}, 5) is False
    assert ScoreCalculator.evaluate_condition('perfect_score', {'score': 100}, 5) is True
    assert ScoreCalculator.evaluate_condition({'type': 'quick_completion'}, {}, 5) is False


def test_scoring_service_uses_seeded_rules(open_db):
    async def scenario():
        async with open_db() as (db, _):
            service = ScoringService(ScoringRulesCache(db.session_factory))
            assert await service.calculate_score('trivia', True, 5) == 150
            assert await service.calculate_score('spot_difference', True, 25, {'found': 3, 'total': 3}) == 150
            assert await service.calculate_score('arrange_sort', True, 25, {'score': 100}) == 150
            assert await service.calculate_score('trivia', False, 5) == 0

    asyncio.run(scenario())
