"""
Shared ranking utilities for contest standings.

Ranking is computed server-side with window functions so every consumer
(results command, settlement, completion prefetch) sees the same order.
"""

from typing import List, Sequence
from sqlalchemy import select, func, case
from sqlalchemy.sql import Select
from arena.database.models import UserContest, Profile, PlayerGameProgress


class RankingUtility:
    """Shared ranking logic for contest leaderboards."""

    @staticmethod
    def completion_order():
        """
        Tiebreak order for display: score, then earliest finisher, then user id.

        Players who never finished sort after everyone who did.
        """
        unfinished_last = case((UserContest.completed_at.is_(None), 1), else_=0)
        return (
            UserContest.score.desc(),
            unfinished_last,
            UserContest.completed_at.asc(),
            UserContest.user_id.asc(),
        )

    @staticmethod
    def create_contest_ranking_query(contest_id: int) -> Select:
        """
        Standings for one contest.

        rank is standard competition ranking over the cumulative score (ties
        share a rank, the next distinct score skips). completion_rank is a
        strict order used only for display and audit.
        """
        progress = (
            select(
                PlayerGameProgress.user_id,
                func.count(PlayerGameProgress.id).label('games_completed'),
                func.avg(PlayerGameProgress.time_taken).label('average_time'),
            )
            .where(PlayerGameProgress.contest_id == contest_id)
            .group_by(PlayerGameProgress.user_id)
            .subquery('contest_progress')
        )

        order = RankingUtility.completion_order()

        return (
            select(
                UserContest.user_id,
                UserContest.score.label('total_score'),
                UserContest.completed_at,
                Profile.username,
                func.coalesce(progress.c.games_completed, 0).label('games_completed'),
                progress.c.average_time,
                func.rank().over(order_by=UserContest.score.desc()).label('rank'),
                func.row_number().over(order_by=order).label('completion_rank'),
            )
            .select_from(UserContest)
            .outerjoin(Profile, Profile.id == UserContest.user_id)
            .outerjoin(progress, progress.c.user_id == UserContest.user_id)
            .where(UserContest.contest_id == contest_id)
            .order_by(*order)
        )

    @staticmethod
    def competition_ranks(scores: Sequence[int]) -> List[int]:
        """
        In-memory standard competition ranking, in input order.

        [100, 100, 90] -> [1, 1, 3]
        """
        ordered = sorted(scores, reverse=True)
        first_position = {}
        for position, score in enumerate(ordered, start=1):
            first_position.setdefault(score, position)
        return [first_position[score] for score in scores]
