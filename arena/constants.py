"""
Arena-wide constants for the contest engine.

This module contains the magic numbers and fixed values used throughout
the codebase to improve maintainability and clarity.
"""

from decimal import Decimal


class GameConstants:
    """Constants related to contest rounds."""

    # Nominal round length; elapsed time is always measured from the server start time
    GAME_DURATION_SECONDS = 30

    # A perfect arrange/sort result
    PERFECT_SCORE = 100


class PayoutConstants:
    """Constants for prize calculation and wallet movement."""

    # Money is kept to the cent
    CENT = Decimal('0.01')
    HUNDRED = Decimal('100')


class CacheConstants:
    """Constants for caching behavior."""

    # Prize distribution models and scoring rules (seconds)
    RULES_CACHE_TTL = 300  # 5 minutes

    # Leaderboard results (seconds)
    LEADERBOARD_CACHE_TTL = 180

    # Maximum cached leaderboards
    LEADERBOARD_MAX_CACHE_SIZE = 500

    # Minimum spacing between refetches triggered by push signals (seconds)
    INVALIDATION_MIN_INTERVAL = 0.2
    INVALIDATION_MAX_INTERVAL = 2.0


class UIConstants:
    """Constants for Discord UI elements."""

    DEFAULT_EMBED_COLOR = 0x3498db  # Blue
    GOLD_RANK_COLOR = 0xffd700     # Gold for contest winners
    ERROR_COLOR = 0xe74c3c         # Red for errors
    SUCCESS_COLOR = 0x2ecc71       # Green for success

    TROPHY_EMOJI = "🏆"
    COIN_EMOJI = "🪙"

    # Rows shown by the results command
    LEADERBOARD_DISPLAY_LIMIT = 15
