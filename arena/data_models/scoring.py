"""
Scoring rule data models consumed by the score calculator.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class ScoringRuleData:
    base_points: int
    additional_points: Optional[int] = None
    conditions: Any = None  # dict or list of dicts with a "type" key


@dataclass(frozen=True)
class SpeedBonusRuleData:
    time_threshold: int
    bonus_points: int


@dataclass(frozen=True)
class PrizeModel:
    """Active prize distribution model with parsed percentages."""
    name: str
    distribution_rules: Dict[str, Decimal] = field(default_factory=dict)
    min_participants: int = 1
    max_participants: Optional[int] = None
