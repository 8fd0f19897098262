"""
Leaderboard data models.

Provides immutable data transfer objects for contest standings.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional


@dataclass(frozen=True)
class LeaderboardEntry:
    """Single standings row; ties share a rank."""
    user_id: int
    total_score: int
    rank: int
    completion_rank: int  # Display/audit tiebreaker only, never used for prize splitting
    username: str
    games_completed: int = 0
    average_time: Optional[float] = None
    prize: Optional[Decimal] = None
