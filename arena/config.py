import os
from dotenv import load_dotenv

load_dotenv()

class Config:
    """Arena configuration settings"""

    # Discord settings
    DISCORD_TOKEN = os.getenv('DISCORD_TOKEN')
    DISCORD_GUILD_ID = int(os.getenv('DISCORD_GUILD_ID', 0))
    OWNER_DISCORD_ID = int(os.getenv('OWNER_DISCORD_ID', 0))

    # Database settings
    DATABASE_URL = os.getenv('DATABASE_URL', 'sqlite:///arena.db')

    # Redis settings (push invalidation fan-out)
    REDIS_URL = os.getenv('REDIS_URL')
    INVALIDATION_CHANNEL = os.getenv('INVALIDATION_CHANNEL', 'arena:invalidation')

    # Bot settings
    COMMAND_PREFIX = os.getenv('COMMAND_PREFIX', '!')
    DEBUG = os.getenv('DEBUG', 'False').lower() == 'true'
    LOG_DIR = os.getenv('LOG_DIR', 'logs')
    LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')

    # Contest progression
    GAME_DURATION_SECONDS = int(os.getenv('GAME_DURATION_SECONDS', 30))
    POLL_INTERVAL_SECONDS = float(os.getenv('POLL_INTERVAL_SECONDS', 5))

    # Caching
    PRIZE_MODEL_CACHE_TTL = int(os.getenv('PRIZE_MODEL_CACHE_TTL', 300))   # 5 minutes
    SCORING_RULES_CACHE_TTL = int(os.getenv('SCORING_RULES_CACHE_TTL', 300))
    LEADERBOARD_CACHE_TTL = int(os.getenv('LEADERBOARD_CACHE_TTL', 180))

    # Settlement
    SETTLEMENT_SWEEP_MINUTES = int(os.getenv('SETTLEMENT_SWEEP_MINUTES', 5))
    SETTLEMENT_CLAIM_TIMEOUT = int(os.getenv('SETTLEMENT_CLAIM_TIMEOUT', 900))  # Seconds before an unfinished claim is failed
    STATUS_SWEEP_SECONDS = int(os.getenv('STATUS_SWEEP_SECONDS', 60))

    # Read path retries (exponential backoff)
    READ_MAX_RETRIES = int(os.getenv('READ_MAX_RETRIES', 3))

    @classmethod
    def get_guild_ids(cls):
        """Get list of guild IDs for command syncing"""
        if cls.DISCORD_GUILD_ID:
            return [cls.DISCORD_GUILD_ID]
        return []

    @classmethod
    def validate(cls):
        """Validate that required configuration is present"""
        if not cls.DISCORD_TOKEN:
            raise ValueError("DISCORD_TOKEN is required")
        if not cls.OWNER_DISCORD_ID:
            raise ValueError("OWNER_DISCORD_ID is required")
        if cls.GAME_DURATION_SECONDS <= 0:
            raise ValueError("GAME_DURATION_SECONDS must be positive")
