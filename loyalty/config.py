"""
Configuration management for the loyalty points core.
"""
import os
from dotenv import load_dotenv

load_dotenv()


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value == '':
        return default
    return int(value)


class BaseConfig:
    """Base configuration."""
    SECRET_KEY = os.getenv('SECRET_KEY', 'dev-secret-key-change-in-production')
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Background jobs
    ENABLE_SCHEDULER = os.getenv('ENABLE_SCHEDULER') == 'true'
    LOYALTY_EXPIRY_CRON_HOUR = _env_int('LOYALTY_EXPIRY_CRON_HOUR', 1)

    # Per-user lock wait before an operation gives up (seconds)
    LOYALTY_LOCK_TIMEOUT = _env_int('LOYALTY_LOCK_TIMEOUT', 10)

    # Expiry
    LOYALTY_EXPIRY_DAYS = _env_int('LOYALTY_EXPIRY_DAYS', 365)
    LOYALTY_EXPIRY_WARNING_DAYS = 30

    # Spending
    LOYALTY_MIN_POINTS_TO_SPEND = _env_int('LOYALTY_MIN_POINTS_TO_SPEND', 100)
    LOYALTY_MAX_SPEND_PERCENT = 50  # Points may cover at most 50% of an order
    LOYALTY_POINT_VALUE = 1         # 1 point = 1 currency unit

    # Order earning
    LOYALTY_POINTS_PER_CURRENCY_UNIT = 100  # 1 point per 100 currency units
    LOYALTY_MIN_ORDER_AMOUNT = 5000
    LOYALTY_MAX_POINTS_PER_ORDER = 1000     # Cap on raw points, before multiplier

    # One-time bonuses
    LOYALTY_WELCOME_BONUS = 100
    LOYALTY_FIRST_ORDER_BONUS = 50
    LOYALTY_REFERRAL_BONUS = 200   # Referrer
    LOYALTY_REFERRED_BONUS = 100   # Invited user

    LOYALTY_STREAK_MILESTONES = [
        {'days': 3, 'bonus': 10, 'message': '3 days in a row!'},
        {'days': 5, 'bonus': 20, 'message': '5 days in a row!'},
        {'days': 7, 'bonus': 30, 'message': 'A whole week in a row!'},
        {'days': 14, 'bonus': 50, 'message': '2 weeks in a row!'},
        {'days': 30, 'bonus': 100, 'message': 'A whole month in a row!'},
    ]

    # None = use DEFAULT_TIERS from tier_service
    LOYALTY_TIERS = None


class DevelopmentConfig(BaseConfig):
    """Development configuration."""
    DEBUG = True
    SQLALCHEMY_DATABASE_URI = os.getenv(
        'DATABASE_URL',
        'sqlite:///loyalty_dev.db'  # SQLite fallback for local dev
    )


class ProductionConfig(BaseConfig):
    """Production configuration."""
    DEBUG = False

    _db_url = os.getenv('DATABASE_URL', '')
    if _db_url.startswith('postgres://'):
        # SQLAlchemy requires postgresql:// not postgres://
        _db_url = _db_url.replace('postgres://', 'postgresql://', 1)

    SQLALCHEMY_DATABASE_URI = _db_url

    SQLALCHEMY_ENGINE_OPTIONS = {
        'pool_size': 5,
        'pool_recycle': 300,
        'pool_pre_ping': True,  # Verify connections before using
    }

    # The daily sweep runs inside the production process unless disabled
    ENABLE_SCHEDULER = os.getenv('ENABLE_SCHEDULER', 'true') == 'true'

    @classmethod
    def validate(cls) -> None:
        """
        Validate production settings.

        Raises:
            RuntimeError: If the database URL is missing or a SQLite URL is used
        """
        if not cls.SQLALCHEMY_DATABASE_URI:
            raise RuntimeError(
                "CRITICAL: DATABASE_URL environment variable is not set!\n"
                "Production deployments need a PostgreSQL database so per-user "
                "row locks (SELECT ... FOR UPDATE) are honoured."
            )

        if cls.SQLALCHEMY_DATABASE_URI.startswith('sqlite'):
            raise RuntimeError(
                "CRITICAL: SQLite is not supported in production.\n"
                "It ignores row-level locks, so concurrent workers could lose balance updates."
            )


class TestingConfig(BaseConfig):
    """Testing configuration."""
    TESTING = True
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    ENABLE_SCHEDULER = False
    LOYALTY_LOCK_TIMEOUT = 2


config_map = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig
}


def get_config(config_name: str = 'development'):
    """Get configuration class by name."""
    return config_map.get(config_name, DevelopmentConfig)


def validate_config(config_name: str = 'development') -> None:
    """
    Validate configuration before app startup.

    Called from create_app() after loading config.

    Args:
        config_name: The configuration environment name

    Raises:
        RuntimeError: If validation fails in production
    """
    if config_name == 'production':
        ProductionConfig.validate()
