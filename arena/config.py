import os
from dotenv import load_dotenv

from arena.constants import MatchmakingConstants

load_dotenv()

class Config:
    """Server configuration settings"""
    
    # Database settings
    DATABASE_URL = os.getenv('DATABASE_URL', 'sqlite:///arena.db')
    
    # Server settings
    API_HOST = os.getenv('API_HOST', '0.0.0.0')
    API_PORT = int(os.getenv('API_PORT', 8000))
    DEBUG = os.getenv('DEBUG', 'False').lower() == 'true'
    
    # Optional Redis for distributed locks (catalog refresh)
    REDIS_URL = os.getenv('REDIS_URL')
    
    # Logging settings
    LOG_DIR = os.getenv('LOG_DIR', 'logs')
    LOG_TO_FILE = os.getenv('LOG_TO_FILE', 'True').lower() == 'true'
    
    # Account settings
    STARTING_COINS = int(os.getenv('STARTING_COINS', 0))
    STARTING_GEMS = int(os.getenv('STARTING_GEMS', 0))
    
    # Economy settings
    INCOME_RATE = float(os.getenv('INCOME_RATE', 0.01))  # Reward multiplier per income level
    
    # Wager settings
    HOUSE_FEE_RATE = float(os.getenv('HOUSE_FEE_RATE', 0.10))
    MATCHMAKING_TIMEOUT_SECONDS = int(os.getenv('MATCHMAKING_TIMEOUT_SECONDS', MatchmakingConstants.QUEUE_TIMEOUT_SECONDS))
    POWER_TOLERANCE = float(os.getenv('POWER_TOLERANCE', MatchmakingConstants.POWER_TOLERANCE))
    
    # Rate limiting for run creation
    RUN_START_RATE_LIMIT = int(os.getenv('RUN_START_RATE_LIMIT', 30))
    RUN_START_RATE_WINDOW = int(os.getenv('RUN_START_RATE_WINDOW', 60))
    
    # Catalog refresh lock expiry
    CATALOG_LOCK_SECONDS = int(os.getenv('CATALOG_LOCK_SECONDS', 1800))
    
    # Removed gameplay effects that may be re-enabled (comma-separated)
    ENABLED_CAPABILITIES = os.getenv('ENABLED_CAPABILITIES', '')
    
    @classmethod
    def get_enabled_capabilities(cls):
        """Get the set of capability names switched on for this deployment"""
        return {name.strip() for name in cls.ENABLED_CAPABILITIES.split(',') if name.strip()}
    
    @classmethod
    def validate(cls):
        """Validate that configuration values are usable"""
        if not cls.DATABASE_URL:
            raise ValueError("DATABASE_URL is required")
        if not 0 <= cls.HOUSE_FEE_RATE < 1:
            raise ValueError("HOUSE_FEE_RATE must be in [0, 1)")
        if cls.POWER_TOLERANCE < 0:
            raise ValueError("POWER_TOLERANCE must be non-negative")
        if cls.INCOME_RATE < 0:
            raise ValueError("INCOME_RATE must be non-negative")
