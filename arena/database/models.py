from sqlalchemy import (
    Column, Integer, String, DateTime, Boolean, Text, Numeric,
    ForeignKey, BigInteger, Enum as SQLEnum, UniqueConstraint, CheckConstraint, Index
)
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func
from enum import Enum

Base = declarative_base()

class ContestStatus(Enum):
    UPCOMING = "upcoming"
    WAITING_FOR_PLAYERS = "waiting_for_players"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"

class PrizeCalculationStatus(Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"

class UserContestStatus(Enum):
    ACTIVE = "active"
    COMPLETED = "completed"

class TransactionType(Enum):
    PRIZE_PAYOUT = "prize_payout"
    ENTRY_FEE = "entry_fee"

class TransactionStatus(Enum):
    COMPLETED = "completed"
    FAILED = "failed"

class GameCategory(Enum):
    ARRANGE_SORT = "arrange_sort"
    TRIVIA = "trivia"
    SPOT_DIFFERENCE = "spot_difference"

class Profile(Base):
    __tablename__ = 'profiles'

    id = Column(Integer, primary_key=True)
    discord_id = Column(BigInteger, unique=True, nullable=True, index=True)
    username = Column(String(100), nullable=False)
    wallet_balance = Column(Numeric(12, 2), nullable=False, default=0)

    # Metadata
    created_at = Column(DateTime, default=func.now())

    # Relationships
    contests = relationship("UserContest", back_populates="profile")
    transactions = relationship("WalletTransaction", back_populates="profile")

    def __repr__(self):
        return f"<Profile(id={self.id}, username='{self.username}', balance={self.wallet_balance})>"

class Contest(Base):
    __tablename__ = 'contests'

    id = Column(Integer, primary_key=True)
    title = Column(String(200), nullable=False)

    # Schedule; end_time is immutable once set
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=False)
    series_count = Column(Integer, nullable=False)  # Number of game rounds

    # Participation
    max_participants = Column(Integer, nullable=False, default=100)
    current_participants = Column(Integer, nullable=False, default=0)

    # Money
    entry_fee = Column(Numeric(12, 2), nullable=False, default=0)
    prize_pool = Column(Numeric(12, 2), nullable=False, default=0)
    prize_distribution_type = Column(String(100), nullable=False)  # PrizeDistributionModel.name

    # State machines
    status = Column(SQLEnum(ContestStatus), nullable=False, default=ContestStatus.UPCOMING, index=True)
    prize_calculation_status = Column(
        SQLEnum(PrizeCalculationStatus), nullable=False, default=PrizeCalculationStatus.PENDING
    )
    prize_claimed_at = Column(DateTime, nullable=True)  # Set by the pending -> in_progress claim

    # Metadata
    created_at = Column(DateTime, default=func.now())

    # Relationships
    participants = relationship("UserContest", back_populates="contest")
    games = relationship("ContestGame", back_populates="contest", order_by="ContestGame.game_index")

    __table_args__ = (
        CheckConstraint('series_count > 0', name='ck_contest_series_count_positive'),
        CheckConstraint('current_participants <= max_participants', name='ck_contest_capacity'),
        Index('ix_contest_status_prize_status', 'status', 'prize_calculation_status'),
    )

    def __repr__(self):
        return f"<Contest(id={self.id}, title='{self.title}', status={self.status.value if self.status else None})>"

class UserContest(Base):
    """One row per user per contest; never deleted."""
    __tablename__ = 'user_contests'

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey('profiles.id'), nullable=False)
    contest_id = Column(Integer, ForeignKey('contests.id'), nullable=False)

    status = Column(SQLEnum(UserContestStatus), nullable=False, default=UserContestStatus.ACTIVE)
    current_game_index = Column(Integer, nullable=False, default=0)  # 0-based
    current_game_start_time = Column(DateTime, nullable=True)       # Null when no round is running
    current_game_score = Column(Integer, nullable=False, default=0)  # Last round's score
    score = Column(Integer, nullable=False, default=0)               # Cumulative total

    # Metadata
    joined_at = Column(DateTime, default=func.now())
    completed_at = Column(DateTime, nullable=True)

    # Relationships
    profile = relationship("Profile", back_populates="contests")
    contest = relationship("Contest", back_populates="participants")

    __table_args__ = (
        UniqueConstraint('user_id', 'contest_id', name='uq_user_contest'),
        CheckConstraint('current_game_index >= 0', name='ck_user_contest_index_non_negative'),
        Index('ix_user_contest_contest_score', 'contest_id', 'score'),
    )

    def __repr__(self):
        return (f"<UserContest(user_id={self.user_id}, contest_id={self.contest_id}, "
                f"index={self.current_game_index}, score={self.score})>")

class GameContent(Base):
    __tablename__ = 'game_content'

    id = Column(Integer, primary_key=True)
    category = Column(SQLEnum(GameCategory), nullable=False)
    content = Column(Text, nullable=True)  # JSON payload rendered by the game UI
    difficulty_level = Column(Integer, nullable=True)
    is_active = Column(Boolean, default=True)

    created_at = Column(DateTime, default=func.now())

    def __repr__(self):
        return f"<GameContent(id={self.id}, category={self.category.value if self.category else None})>"

class ContestGame(Base):
    """The game played in each round of a contest."""
    __tablename__ = 'contest_games'

    id = Column(Integer, primary_key=True)
    contest_id = Column(Integer, ForeignKey('contests.id'), nullable=False)
    game_content_id = Column(Integer, ForeignKey('game_content.id'), nullable=False)
    game_index = Column(Integer, nullable=False)

    contest = relationship("Contest", back_populates="games")
    game_content = relationship("GameContent")

    __table_args__ = (UniqueConstraint('contest_id', 'game_index', name='uq_contest_game_index'),)

    def __repr__(self):
        return f"<ContestGame(contest_id={self.contest_id}, index={self.game_index}, content={self.game_content_id})>"

class PlayerGameProgress(Base):
    """Append-only record of a completed round."""
    __tablename__ = 'player_game_progress'

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey('profiles.id'), nullable=False)
    contest_id = Column(Integer, ForeignKey('contests.id'), nullable=False)
    game_content_id = Column(Integer, ForeignKey('game_content.id'), nullable=False)

    score = Column(Integer, nullable=False, default=0)
    time_taken = Column(Integer, nullable=True)  # Seconds
    is_correct = Column(Boolean, nullable=False, default=False)

    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint('user_id', 'contest_id', 'game_content_id', name='uq_player_game_progress'),
        Index('ix_player_game_progress_contest_user', 'contest_id', 'user_id'),
    )

    def __repr__(self):
        return (f"<PlayerGameProgress(user_id={self.user_id}, contest_id={self.contest_id}, "
                f"game={self.game_content_id}, score={self.score})>")

class PrizeDistributionModel(Base):
    __tablename__ = 'prize_distribution_models'

    id = Column(Integer, primary_key=True)
    name = Column(String(100), nullable=False, unique=True)
    min_participants = Column(Integer, nullable=False, default=1)
    max_participants = Column(Integer, nullable=True)
    distribution_rules = Column(Text, nullable=False)  # JSON: {"1": 50, "2": 30, ...}
    is_active = Column(Boolean, default=True)

    created_at = Column(DateTime, default=func.now())

    def __repr__(self):
        return f"<PrizeDistributionModel(name='{self.name}', active={self.is_active})>"

class ScoringRule(Base):
    __tablename__ = 'scoring_rules'

    id = Column(Integer, primary_key=True)
    game_category = Column(SQLEnum(GameCategory), nullable=False, unique=True)
    base_points = Column(Integer, nullable=False)
    additional_points = Column(Integer, nullable=True)
    conditions = Column(Text, nullable=True)  # JSON condition or list of conditions
    is_active = Column(Boolean, default=True)

    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    def __repr__(self):
        return f"<ScoringRule(category={self.game_category.value if self.game_category else None}, base={self.base_points})>"

class SpeedBonusRule(Base):
    __tablename__ = 'speed_bonus_rules'

    id = Column(Integer, primary_key=True)
    time_threshold = Column(Integer, nullable=False)  # Seconds remaining in the round
    bonus_points = Column(Integer, nullable=False)
    is_active = Column(Boolean, default=True)

    def __repr__(self):
        return f"<SpeedBonusRule(threshold={self.time_threshold}, bonus={self.bonus_points})>"

class WalletTransaction(Base):
    """
    Append-only wallet ledger.

    The (user_id, reference_id, type) uniqueness is the idempotency guard for
    prize payouts: a contest can pay a user at most once.
    """
    __tablename__ = 'wallet_transactions'

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey('profiles.id'), nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)  # Signed
    type = Column(SQLEnum(TransactionType), nullable=False)
    reference_id = Column(Integer, nullable=True)    # contest id for payouts and entry fees
    status = Column(SQLEnum(TransactionStatus), nullable=False, default=TransactionStatus.COMPLETED)

    credited_at = Column(DateTime, nullable=True)   # Prize payouts: set in the same commit as the wallet credit

    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    profile = relationship("Profile", back_populates="transactions")

    __table_args__ = (
        UniqueConstraint('user_id', 'reference_id', 'type', name='uq_wallet_transaction_reference'),
        Index('ix_wallet_transaction_reference_type', 'reference_id', 'type'),
    )

    def __repr__(self):
        return (f"<WalletTransaction(user_id={self.user_id}, amount={self.amount}, "
                f"type={self.type.value if self.type else None}, status={self.status.value if self.status else None})>")

class Configuration(Base):
    __tablename__ = 'configurations'

    key = Column(String(100), primary_key=True)
    value = Column(Text, nullable=False)  # JSON-encoded
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

class AuditLog(Base):
    __tablename__ = 'audit_logs'

    id = Column(Integer, primary_key=True)
    user_id = Column(BigInteger, nullable=False)
    action = Column(String(50), nullable=False)
    details = Column(Text, nullable=True)  # JSON
    created_at = Column(DateTime, default=func.now())
