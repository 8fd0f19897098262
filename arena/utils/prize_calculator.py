"""
Prize calculation for settled contests.

Pure computation shared by the results display and the authoritative payout run.
Tied players (identical total score) share one rank; that rank's prize is split
evenly between them and each share is floored to the cent. Cents lost to
flooring are not redistributed, so the amount paid can be marginally below the
nominal allocation.
"""

from collections import defaultdict
from decimal import Decimal, ROUND_DOWN
from typing import Dict, List, Optional, Sequence

from arena.constants import PayoutConstants
from arena.data_models.scoring import PrizeModel
from arena.utils.exceptions import DistributionModelMissingError


def floor_to_cent(amount: Decimal) -> Decimal:
    return amount.quantize(PayoutConstants.CENT, rounding=ROUND_DOWN)


def to_decimal(value) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


class PrizeCalculator:
    """Turns final standings into a per-user payout map."""

    @staticmethod
    def group_by_score(rankings: Sequence) -> Dict[int, List[int]]:
        """
        Group users into tie groups keyed by competition rank.

        The rank of a group is 1 + the number of users with a strictly higher score.
        """
        users_by_score = defaultdict(list)
        for ranking in rankings:
            users_by_score[ranking.total_score].append(ranking.user_id)

        groups = {}
        higher = 0
        for total_score in sorted(users_by_score, reverse=True):
            users = users_by_score[total_score]
            groups[higher + 1] = users
            higher += len(users)
        return groups

    @staticmethod
    def prize_for_rank(rank: int, total_prize_pool: Decimal, model: PrizeModel) -> Optional[Decimal]:
        percentage = model.distribution_rules.get(str(rank))
        if not percentage:
            return None
        return to_decimal(total_prize_pool) * to_decimal(percentage) / PayoutConstants.HUNDRED

    @staticmethod
    def compute_prizes(rankings: Sequence, total_prize_pool, model: Optional[PrizeModel],
                       distribution_type: str = None) -> Dict[int, Decimal]:
        """
        Compute payouts for final standings.

        Args:
            rankings: Rows with user_id and total_score
            total_prize_pool: Pool to distribute
            model: Active distribution model; None means the configuration is missing
            distribution_type: Name used in the error when the model is missing

        Returns:
            Mapping user_id -> amount (floored to the cent); ranks without a
            configured percentage are omitted
        """
        if model is None:
            raise DistributionModelMissingError(distribution_type or 'unknown')

        prizes: Dict[int, Decimal] = {}
        if not rankings:
            return prizes

        for rank, users in PrizeCalculator.group_by_score(rankings).items():
            prize = PrizeCalculator.prize_for_rank(rank, total_prize_pool, model)
            if prize is None:
                continue

            share = floor_to_cent(prize / len(users))
            if share <= 0:
                continue
            for user_id in users:
                prizes[user_id] = share

        return prizes
