"""
Prize Distributor - ledger mutation for contest settlement

Owns the contest prize_calculation_status state machine
(pending -> in_progress -> completed | failed, failed -> pending on retry)
and moves money into player wallets.

Every state change is a conditional UPDATE matched on the expected prior
state; its rowcount decides whether this caller won. Payouts are isolated
per user: each user's ledger row is committed before their balance is
touched, so a crash in between leaves a detectable row rather than a lost
payout.
"""

from datetime import timedelta
from decimal import Decimal
from typing import Callable, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from arena.data_models.settlement import PayoutOutcome, SettlementReport
from arena.database.database import Database
from arena.database.models import (
    Contest, PrizeCalculationStatus, Profile,
    WalletTransaction, TransactionType, TransactionStatus
)
from arena.services.invalidation import InvalidationBus, InvalidationSignal
from arena.utils.logger import setup_logger
from arena.utils.time_utils import utcnow_naive

logger = setup_logger(__name__)


class PrizeDistributor:
    """Idempotent prize payouts and settlement status transitions."""

    def __init__(self, db: Database, bus: Optional[InvalidationBus] = None,
                 clock: Callable = utcnow_naive):
        self.db = db
        self.bus = bus
        self.clock = clock
        self.logger = logger

    async def _transition(self, contest_id: int, expected: PrizeCalculationStatus,
                          target: PrizeCalculationStatus, **values) -> bool:
        async with self.db.transaction() as session:
            result = await session.execute(
                update(Contest)
                .where(
                    Contest.id == contest_id,
                    Contest.prize_calculation_status == expected
                )
                .values(prize_calculation_status=target, **values)
            )
            won = result.rowcount == 1

        if won:
            self.logger.info(f"Contest {contest_id} settlement: {expected.value} -> {target.value}")
        else:
            self.logger.debug(f"Contest {contest_id} settlement not in {expected.value}, {target.value} skipped")
        return won

    async def claim(self, contest_id: int) -> bool:
        """Compare-and-swap pending -> in_progress. Only the winner may pay out."""
        return await self._transition(
            contest_id, PrizeCalculationStatus.PENDING, PrizeCalculationStatus.IN_PROGRESS,
            prize_claimed_at=self.clock()
        )

    async def mark_completed(self, contest_id: int) -> bool:
        won = await self._transition(
            contest_id, PrizeCalculationStatus.IN_PROGRESS, PrizeCalculationStatus.COMPLETED
        )
        if won and self.bus:
            await self.bus.publish(InvalidationSignal('contests', contest_id=contest_id))
        return won

    async def mark_failed(self, contest_id: int, reason: str = None) -> bool:
        won = await self._transition(
            contest_id, PrizeCalculationStatus.IN_PROGRESS, PrizeCalculationStatus.FAILED
        )
        if won:
            self.logger.error(f"Contest {contest_id} settlement failed: {reason}")
        return won

    async def reset_failed(self, contest_id: int) -> bool:
        """Make a failed settlement eligible for another run."""
        return await self._transition(
            contest_id, PrizeCalculationStatus.FAILED, PrizeCalculationStatus.PENDING
        )

    async def fail_stale_claims(self, timeout_seconds: int, contest_id: int = None) -> List[int]:
        """
        Move settlements stuck in in_progress to failed.

        A run that dies between claim() and mark_completed()/mark_failed()
        never releases its claim. Once the claim is older than
        timeout_seconds it is failed here, which makes it eligible for
        retry_failed_settlement. Payouts already written by the dead run are
        skipped by the retry, so nobody is paid twice.

        Returns:
            Ids of the contests whose claim was released
        """
        cutoff = self.clock() - timedelta(seconds=timeout_seconds)
        stale_claim = (
            Contest.prize_calculation_status == PrizeCalculationStatus.IN_PROGRESS,
            Contest.prize_claimed_at < cutoff
        )

        async with self.db.get_session() as session:
            query = select(Contest.id).where(*stale_claim)
            if contest_id is not None:
                query = query.where(Contest.id == contest_id)
            candidates = list((await session.execute(query)).scalars().all())

        released = []
        for candidate in candidates:
            async with self.db.transaction() as session:
                result = await session.execute(
                    update(Contest)
                    .where(Contest.id == candidate, *stale_claim)
                    .values(prize_calculation_status=PrizeCalculationStatus.FAILED)
                )
                if result.rowcount == 1:
                    released.append(candidate)

        for candidate in released:
            self.logger.warning(
                f"Contest {candidate} settlement claim older than {timeout_seconds}s, marked failed"
            )
        return released

    async def get_payout_transaction(self, user_id: int, contest_id: int) -> Optional[WalletTransaction]:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(WalletTransaction).where(
                    WalletTransaction.user_id == user_id,
                    WalletTransaction.reference_id == contest_id,
                    WalletTransaction.type == TransactionType.PRIZE_PAYOUT
                )
            )
            return result.scalar_one_or_none()

    async def get_recorded_payouts(self, contest_id: int) -> Dict[int, Decimal]:
        """Payouts already written to the ledger for a contest, including failed credits."""
        async with self.db.get_session() as session:
            result = await session.execute(
                select(WalletTransaction.user_id, WalletTransaction.amount).where(
                    WalletTransaction.reference_id == contest_id,
                    WalletTransaction.type == TransactionType.PRIZE_PAYOUT
                )
            )
            return {row.user_id: row.amount for row in result.all()}

    async def pay_user(self, contest_id: int, user_id: int, amount: Decimal) -> PayoutOutcome:
        """
        Pay one user at most once.

        1. Existing prize_payout row for (user, contest): already paid, skip.
        2. Read the balance (audit log only; the credit below is additive).
        3. Insert the ledger row and commit. A unique collision means a
           concurrent run got there first: skip.
        4. Mark the row credited and credit the wallet in one commit. If that
           fails the ledger row is flipped to failed for the reconciliation
           sweep; a crash before this step leaves credited_at null, which the
           sweep also picks up.
        """
        if await self.get_payout_transaction(user_id, contest_id):
            self.logger.info(f"Contest {contest_id}: user {user_id} already paid, skipping")
            return PayoutOutcome.SKIPPED

        profile = await self.db.get_profile(user_id)
        if profile is None:
            self.logger.error(f"Contest {contest_id}: no profile for user {user_id}, payout of {amount} not made")
            return PayoutOutcome.FAILED
        balance_before = profile.wallet_balance

        try:
            async with self.db.transaction() as session:
                transaction = WalletTransaction(
                    user_id=user_id,
                    amount=amount,
                    type=TransactionType.PRIZE_PAYOUT,
                    reference_id=contest_id,
                    status=TransactionStatus.COMPLETED
                )
                session.add(transaction)
                await session.flush()
                transaction_id = transaction.id
        except IntegrityError:
            self.logger.info(f"Contest {contest_id}: payout row for user {user_id} already exists, skipping")
            return PayoutOutcome.SKIPPED

        try:
            async with self.db.transaction() as session:
                marked = await session.execute(
                    update(WalletTransaction)
                    .where(
                        WalletTransaction.id == transaction_id,
                        WalletTransaction.credited_at.is_(None)
                    )
                    .values(credited_at=self.clock())
                )
                credited_here = marked.rowcount == 1
                if credited_here:
                    result = await session.execute(
                        update(Profile)
                        .where(Profile.id == user_id)
                        .values(wallet_balance=Profile.wallet_balance + amount)
                    )
                    if result.rowcount != 1:
                        raise RuntimeError(f"profile {user_id} not updated")
        except Exception as e:
            self.logger.error(
                f"Contest {contest_id}: credit of {amount} to user {user_id} failed after ledger insert: {e}",
                exc_info=True
            )
            await self._mark_transaction_failed(transaction_id)
            return PayoutOutcome.FAILED

        if not credited_here:
            self.logger.info(f"Contest {contest_id}: payout to user {user_id} was credited by the repair sweep")
            return PayoutOutcome.PAID

        self.logger.info(
            f"Contest {contest_id}: paid {amount} to user {user_id} (balance before {balance_before})"
        )
        return PayoutOutcome.PAID

    async def _mark_transaction_failed(self, transaction_id: int):
        async with self.db.transaction() as session:
            await session.execute(
                update(WalletTransaction)
                .where(
                    WalletTransaction.id == transaction_id,
                    WalletTransaction.status == TransactionStatus.COMPLETED
                )
                .values(status=TransactionStatus.FAILED, updated_at=self.clock())
            )

    async def distribute(self, contest_id: int, payouts: Dict[int, Decimal]) -> SettlementReport:
        """
        Pay every user in the payout map.

        One user's failure never blocks or rolls back another's; failures end
        up as failed ledger rows and in the returned report.
        """
        report = SettlementReport(contest_id=contest_id)

        for user_id in sorted(payouts):
            amount = payouts[user_id]
            try:
                outcome = await self.pay_user(contest_id, user_id, amount)
            except Exception as e:
                self.logger.error(
                    f"Contest {contest_id}: payout stage failed for user {user_id}: {e}", exc_info=True
                )
                outcome = PayoutOutcome.FAILED
            report.record(user_id, amount, outcome)

        self.logger.info(
            f"Contest {contest_id} payouts: {len(report.paid)} paid ({report.total_paid}), "
            f"{len(report.skipped)} skipped, {len(report.failed)} failed"
        )
        return report

    async def retry_failed_payouts(self, contest_id: int = None) -> int:
        """
        Reconciliation sweep for payout rows that never reached the wallet.

        Picks up rows whose credit failed (status failed) and rows left
        uncredited by a process that died between the ledger insert and the
        credit (credited_at still null). Each row is marked credited and the
        wallet credited in a single transaction, matched on credited_at being
        null, so neither a concurrent sweep nor a late pay_user can credit it
        twice.

        Returns:
            Number of payouts repaired
        """
        async with self.db.get_session() as session:
            query = select(WalletTransaction.id, WalletTransaction.user_id, WalletTransaction.amount).where(
                WalletTransaction.type == TransactionType.PRIZE_PAYOUT,
                WalletTransaction.credited_at.is_(None)
            )
            if contest_id is not None:
                query = query.where(WalletTransaction.reference_id == contest_id)
            uncredited: List = (await session.execute(query)).all()

        repaired = 0
        for row in uncredited:
            try:
                async with self.db.transaction() as session:
                    now = self.clock()
                    claimed = await session.execute(
                        update(WalletTransaction)
                        .where(
                            WalletTransaction.id == row.id,
                            WalletTransaction.credited_at.is_(None)
                        )
                        .values(status=TransactionStatus.COMPLETED, credited_at=now, updated_at=now)
                    )
                    if claimed.rowcount != 1:
                        continue

                    credited = await session.execute(
                        update(Profile)
                        .where(Profile.id == row.user_id)
                        .values(wallet_balance=Profile.wallet_balance + row.amount)
                    )
                    if credited.rowcount != 1:
                        raise RuntimeError(f"profile {row.user_id} not updated")
                repaired += 1
                self.logger.info(f"Repaired payout transaction {row.id}: credited {row.amount} to user {row.user_id}")
            except Exception as e:
                self.logger.error(f"Failed to repair payout transaction {row.id} for user {row.user_id}: {e}",
                                  exc_info=True)

        return repaired
