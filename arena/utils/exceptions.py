"""
Custom exceptions for the contest engine with user-friendly error messages.
"""

class ArenaException(Exception):
    """Base exception for contest engine errors."""
    def __init__(self, message: str, user_message: str = None):
        super().__init__(message)
        self.user_message = user_message or message

# Terminal errors: the precondition is structurally wrong, do not retry

class ContestNotFoundError(ArenaException):
    """Raised when a contest row is missing."""
    def __init__(self, contest_id: int):
        self.contest_id = contest_id
        super().__init__(
            f"Contest {contest_id} not found",
            "❌ This contest no longer exists."
        )

class UserContestNotFoundError(ArenaException):
    """Raised when the user has no progress row for a contest."""
    def __init__(self, contest_id: int, user_id: int):
        self.contest_id = contest_id
        self.user_id = user_id
        super().__init__(
            f"No progress for user {user_id} in contest {contest_id}",
            "❌ You are not entered in this contest."
        )

class RoundClosedError(ArenaException):
    """Raised when a round is submitted after the contest or the player's run finished."""
    def __init__(self, contest_id: int, user_id: int, reason: str):
        self.contest_id = contest_id
        self.user_id = user_id
        super().__init__(
            f"Round closed for user {user_id} in contest {contest_id}: {reason}",
            "❌ This round is already closed."
        )

class SessionNotFoundError(ArenaException):
    """Raised when a player answers without an open play session."""
    def __init__(self, contest_id: int, user_id: int):
        self.contest_id = contest_id
        self.user_id = user_id
        super().__init__(
            f"No play session for user {user_id} in contest {contest_id}",
            "❌ Start this contest with /contest-play first."
        )

# Configuration errors

class DistributionModelMissingError(ArenaException):
    """Raised when a contest references a prize distribution model that is not active."""
    def __init__(self, distribution_type: str, available=None):
        self.distribution_type = distribution_type
        available_names = ', '.join(sorted(available)) if available else 'none'
        super().__init__(
            f"No prize distribution model found for type: {distribution_type} (available: {available_names})",
            "❌ Prize configuration is missing for this contest. An administrator has been notified."
        )

# Conflict errors: the loser of a race rereads and adapts

class StaleRoundError(ArenaException):
    """Raised when local and server round indexes disagree."""
    def __init__(self, local_index: int, server_index: int):
        self.local_index = local_index
        self.server_index = server_index
        super().__init__(
            f"Stale round index {local_index}, server is at {server_index}",
            "🔄 Your game was out of sync and has been refreshed."
        )

class SettlementInProgressError(ArenaException):
    """Raised when an operator retries a settlement that another run currently holds."""
    def __init__(self, contest_id: int):
        self.contest_id = contest_id
        super().__init__(
            f"Settlement for contest {contest_id} is already in progress",
            "⏳ Prizes for this contest are being paid out right now."
        )

# User-visible, non-fatal write failures

class ProgressSaveError(ArenaException):
    """Raised when a round result could not be persisted."""
    def __init__(self, contest_id: int, user_id: int, details: str = None):
        super().__init__(
            f"Failed to save progress for user {user_id} in contest {contest_id}: {details}",
            "❌ Failed to save your progress. Please try again."
        )

# Join failures

class JoinContestError(ArenaException):
    """Base class for distinguishable join failures."""
    pass

class ContestFullError(JoinContestError):
    def __init__(self, contest_id: int):
        super().__init__(f"Contest {contest_id} is full", "❌ This contest is full.")

class AlreadyJoinedError(JoinContestError):
    def __init__(self, contest_id: int, user_id: int):
        super().__init__(
            f"User {user_id} already joined contest {contest_id}",
            "❌ You have already joined this contest."
        )

class InsufficientBalanceError(JoinContestError):
    def __init__(self, user_id: int, required, available):
        super().__init__(
            f"User {user_id} has {available}, needs {required}",
            f"❌ Insufficient balance. The entry fee is {required}."
        )

class ContestClosedError(JoinContestError):
    def __init__(self, contest_id: int):
        super().__init__(
            f"Contest {contest_id} is no longer open for entries",
            "❌ This contest is no longer accepting players."
        )
