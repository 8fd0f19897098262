"""
Operations Layer

Business workflows composed from the database and service layers. Each
module owns one part of the contest lifecycle:

- ContestOperations: joining and schedule-driven status changes
- ContestProgressCoordinator: per-session round state reconciliation
- GameSessionHandler: recording a completed round
- ContestCompletionWatcher: end-of-contest detection
- PrizeDistributor / SettlementOperations: exactly-once prize settlement
"""
