"""
Progress data models shared by the round coordinator and round handler.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional


class RoundState(Enum):
    NO_ACTIVE_ROUND = "no_active_round"
    ROUND_IN_PROGRESS = "round_in_progress"
    ROUND_EXPIRED = "round_expired"
    CONTEST_COMPLETED = "contest_completed"


@dataclass
class OperationLocks:
    """Guards for one player's session; the poller and the round handler must not overlap."""
    update: bool = False
    game_end: bool = False
    timer_initialized: bool = False
    has_redirected: bool = False


@dataclass(frozen=True)
class ProgressSnapshot:
    state: RoundState
    current_game_index: int
    game_start_time: Optional[datetime]


@dataclass(frozen=True)
class RoundResult:
    score: int
    is_final_game: bool
    total_score: int
    game_index: int


@dataclass(frozen=True)
class CompletionNotice:
    contest_id: int
    destination: str
    title: str
    message: str
    completed_all_rounds: bool
