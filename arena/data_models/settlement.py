"""
Settlement data models.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Dict, List


class PayoutOutcome(Enum):
    PAID = "paid"
    SKIPPED = "skipped"   # Already paid by an earlier or concurrent run
    FAILED = "failed"


@dataclass
class SettlementReport:
    contest_id: int
    paid: List[int] = field(default_factory=list)
    skipped: List[int] = field(default_factory=list)
    failed: List[int] = field(default_factory=list)
    amounts: Dict[int, Decimal] = field(default_factory=dict)

    @property
    def total_paid(self) -> Decimal:
        return sum((self.amounts[user_id] for user_id in self.paid), Decimal('0.00'))

    @property
    def succeeded(self) -> bool:
        return not self.failed

    def record(self, user_id: int, amount: Decimal, outcome: PayoutOutcome):
        self.amounts[user_id] = amount
        if outcome == PayoutOutcome.PAID:
            self.paid.append(user_id)
        elif outcome == PayoutOutcome.SKIPPED:
            self.skipped.append(user_id)
        else:
            self.failed.append(user_id)
