"""
Settlement Operations - exactly-once prize settlement

Entry point for every surface that needs prize amounts: the results command,
the completion watcher prefetch, the scheduled sweep and owner commands. Any
number of callers may invoke calculate_prize_distribution concurrently; the
pending -> in_progress claim lets exactly one of them move money.
"""

from dataclasses import replace
from decimal import Decimal
from typing import Dict, List, Optional

from sqlalchemy import select

from arena.config import Config
from arena.data_models.leaderboard import LeaderboardEntry
from arena.database.database import Database
from arena.database.models import Contest, ContestStatus, PrizeCalculationStatus
from arena.operations.prize_distributor import PrizeDistributor
from arena.services.leaderboard import LeaderboardService
from arena.services.rules_cache import PrizeModelCache
from arena.utils.exceptions import (
    ArenaException, ContestNotFoundError, DistributionModelMissingError, SettlementInProgressError
)
from arena.utils.logger import setup_logger
from arena.utils.prize_calculator import PrizeCalculator

logger = setup_logger(__name__)


class SettlementOperations:
    """
    Orchestrates leaderboard, prize calculation and distribution.

    A caller that loses the claim never pays; it returns the computed map so
    a results view can still show expected prizes.
    """

    def __init__(self, db: Database, prize_cache: PrizeModelCache,
                 leaderboard_service: LeaderboardService, distributor: PrizeDistributor,
                 claim_timeout: int = Config.SETTLEMENT_CLAIM_TIMEOUT):
        self.db = db
        self.prize_cache = prize_cache
        self.leaderboard_service = leaderboard_service
        self.distributor = distributor
        self.claim_timeout = claim_timeout
        self.logger = logger

    async def _get_contest(self, contest_id: int) -> Contest:
        contest = await self.db.get_contest(contest_id)
        if contest is None:
            raise ContestNotFoundError(contest_id)
        return contest

    async def _compute(self, contest_id: int, prize_pool, distribution_type: str,
                       use_cache: bool = True) -> Dict[int, Decimal]:
        model = await self.prize_cache.get_model(distribution_type)
        if model is None:
            models = await self.prize_cache.get_models()
            raise DistributionModelMissingError(distribution_type, models.keys())

        rankings = await self.leaderboard_service.get_leaderboard(contest_id, use_cache=use_cache)
        return PrizeCalculator.compute_prizes(rankings, prize_pool, model, distribution_type)

    async def calculate_prize_distribution(self, contest_id: int, prize_pool=None,
                                           distribution_type: str = None) -> Dict[int, Decimal]:
        """
        Settle a contest if nobody has, and return the payout map.

        Args:
            contest_id: Contest to settle
            prize_pool: Pool override; defaults to the contest's prize_pool
            distribution_type: Model override; defaults to the contest's type

        Returns:
            user_id -> amount. The recorded ledger amounts once settled, {}
            while the contest is still running.

        Raises:
            ContestNotFoundError: contest row is missing
            DistributionModelMissingError: no active model for the type; the
                run is marked failed when this caller held the claim
        """
        contest = await self._get_contest(contest_id)
        pool = prize_pool if prize_pool is not None else contest.prize_pool
        distribution_type = distribution_type or contest.prize_distribution_type

        if contest.prize_calculation_status == PrizeCalculationStatus.COMPLETED:
            return await self.distributor.get_recorded_payouts(contest_id)

        if contest.status != ContestStatus.COMPLETED:
            return {}

        if await self.distributor.claim(contest_id):
            return await self._settle(contest_id, pool, distribution_type)

        # Lost the claim: another run holds it, finished it, or it failed earlier
        contest = await self._get_contest(contest_id)
        if contest.prize_calculation_status == PrizeCalculationStatus.COMPLETED:
            return await self.distributor.get_recorded_payouts(contest_id)

        self.logger.debug(
            f"Contest {contest_id} settlement is {contest.prize_calculation_status.value}, computing for display"
        )
        return await self._compute(contest_id, pool, distribution_type)

    async def _settle(self, contest_id: int, prize_pool, distribution_type: str) -> Dict[int, Decimal]:
        try:
            # Settlement always ranks from fresh data
            prizes = await self._compute(contest_id, prize_pool, distribution_type, use_cache=False)
            report = await self.distributor.distribute(contest_id, prizes)
        except Exception as e:
            self.logger.error(f"Settlement of contest {contest_id} aborted: {e}", exc_info=True)
            await self.distributor.mark_failed(contest_id, str(e))
            raise

        await self.distributor.mark_completed(contest_id)
        if not report.succeeded:
            self.logger.warning(
                f"Contest {contest_id} settled with {len(report.failed)} failed payouts: {report.failed}"
            )
        else:
            self.logger.info(f"Contest {contest_id} settled: {report.total_paid} paid to {len(report.paid)} users")
        return prizes

    async def settle_completed_contests(self) -> Dict[int, bool]:
        """
        Sweep contests that ended but were never settled.

        Runs whose claim outlived claim_timeout are marked failed first and
        reported as unsuccessful; retry_failed_settlement picks them up.

        Returns:
            contest_id -> whether settlement succeeded
        """
        outcomes = {}
        for contest_id in await self.distributor.fail_stale_claims(self.claim_timeout):
            outcomes[contest_id] = False

        async with self.db.get_session() as session:
            result = await session.execute(
                select(Contest.id).where(
                    Contest.status == ContestStatus.COMPLETED,
                    Contest.prize_calculation_status == PrizeCalculationStatus.PENDING
                ).order_by(Contest.end_time)
            )
            contest_ids = list(result.scalars().all())

        for contest_id in contest_ids:
            try:
                await self.calculate_prize_distribution(contest_id)
                outcomes[contest_id] = True
            except ArenaException as e:
                self.logger.error(f"Sweep could not settle contest {contest_id}: {e}")
                outcomes[contest_id] = False
            except Exception as e:
                self.logger.error(f"Unexpected error settling contest {contest_id}: {e}", exc_info=True)
                outcomes[contest_id] = False

        if contest_ids:
            self.logger.info(f"Settlement sweep processed {len(contest_ids)} contests")
        return outcomes

    async def retry_failed_settlement(self, contest_id: int) -> Dict[int, Decimal]:
        """
        Reset a failed settlement to pending and run it again.

        An in_progress run is only taken over once its claim is older than
        claim_timeout; a live run raises SettlementInProgressError.
        """
        contest = await self._get_contest(contest_id)
        status = contest.prize_calculation_status
        if status == PrizeCalculationStatus.IN_PROGRESS:
            if not await self.distributor.fail_stale_claims(self.claim_timeout, contest_id=contest_id):
                raise SettlementInProgressError(contest_id)
            status = PrizeCalculationStatus.FAILED

        if status == PrizeCalculationStatus.FAILED:
            if await self.distributor.reset_failed(contest_id):
                self.logger.info(f"Contest {contest_id} settlement reset to pending for retry")

        return await self.calculate_prize_distribution(contest_id)

    async def get_results(self, contest_id: int) -> List[LeaderboardEntry]:
        """Standings with prizes filled in once the contest has ended."""
        contest = await self._get_contest(contest_id)
        entries = await self.leaderboard_service.get_leaderboard(contest_id)
        if contest.status != ContestStatus.COMPLETED:
            return entries

        prizes = await self.calculate_prize_distribution(contest_id)
        return [replace(entry, prize=prizes.get(entry.user_id)) for entry in entries]

    async def get_prize_status(self, contest_id: int) -> Optional[PrizeCalculationStatus]:
        contest = await self.db.get_contest(contest_id)
        return contest.prize_calculation_status if contest else None
