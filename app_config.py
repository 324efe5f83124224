import os
import secrets
import logging
from dotenv import load_dotenv

load_dotenv()


def _require_in_production(var_name, default):
    """Return env var value. In production, warn loudly if still using default."""
    value = os.environ.get(var_name, "")
    if value:
        return value
    env = os.environ.get("FLASK_ENV", "development")
    if env != "development" and default:
        logging.getLogger(__name__).warning(
            "%s is using an insecure default. Set it via environment variable!", var_name
        )
    return default


def _int_env(var_name, default):
    return int(os.environ.get(var_name, str(default)))


def _database_url():
    url = os.environ.get("DATABASE_URL", "")
    if not url:
        return "sqlite:///curtainpoint.db"
    # Fix postgres:// to postgresql:// for SQLAlchemy 2.x
    if url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql://", 1)
    return url


class Config:
    """Application configuration"""

    # Flask
    SECRET_KEY = _require_in_production(
        'SECRET_KEY', 'dev-only-' + secrets.token_hex(16)
    )
    DEBUG = os.environ.get('FLASK_ENV', 'development') == 'development'
    TESTING = False

    # JWT Authentication (tokens are issued by the external auth provider)
    JWT_SECRET = _require_in_production(
        'JWT_SECRET', 'dev-only-' + secrets.token_hex(32)
    )

    # Database
    SQLALCHEMY_DATABASE_URI = _database_url()
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # CORS - seller, contractor and admin apps
    CORS_ORIGINS = os.environ.get('CORS_ORIGINS', '*')

    # Logging
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')

    # Rate limiting
    RATELIMIT_ENABLED = True
    RATELIMIT_STORAGE_URI = os.environ.get('REDIS_URL') or 'memory://'

    # Escrow: hours between job completion and automatic payout
    ESCROW_RELEASE_HOURS = _int_env('ESCROW_RELEASE_HOURS', 48)

    # Ledger compare-and-swap retries per account write
    LEDGER_MAX_RETRIES = _int_env('LEDGER_MAX_RETRIES', 5)

    # Contractor cancellation policy
    CANCELLATION_MAX_HOURS = _int_env('CANCELLATION_MAX_HOURS', 24)
    CANCELLATION_MAX_DAILY = _int_env('CANCELLATION_MAX_DAILY', 3)
    CANCELLATION_FEE_RATE = _int_env('CANCELLATION_FEE_RATE', 5)  # percent of budget max

    # Compensation policy (percent of the held escrow)
    COMPENSATION_PRODUCT_NOT_READY_RATE = _int_env('COMPENSATION_PRODUCT_NOT_READY_RATE', 30)
    COMPENSATION_CUSTOMER_ABSENT_RATE = _int_env('COMPENSATION_CUSTOMER_ABSENT_RATE', 100)
    SCHEDULE_CHANGE_FEE_RATE = _int_env('SCHEDULE_CHANGE_FEE_RATE', 0)  # percent of budget max

    # Background scheduler
    ENABLE_SCHEDULER = os.environ.get('ENABLE_SCHEDULER', '').lower() == 'true'
    SCHEDULER_INTERVAL_MINUTES = _int_env('SCHEDULER_INTERVAL_MINUTES', 15)

    # Server
    PORT = _int_env('PORT', 8080)


class TestingConfig(Config):
    """Testing configuration with isolated database and safe defaults"""

    TESTING = True
    DEBUG = False

    # Use in-memory SQLite for fast tests
    SQLALCHEMY_DATABASE_URI = os.getenv('TEST_DATABASE_URL', 'sqlite:///:memory:')

    SECRET_KEY = 'test-secret-key'
    JWT_SECRET = 'test-jwt-secret'

    # Disable rate limiting in tests
    RATELIMIT_ENABLED = False

    ENABLE_SCHEDULER = False
    LOG_LEVEL = 'WARNING'
    CORS_ORIGINS = 'http://localhost:3000'


def validate_config(config):
    """Reject settings the escrow engine cannot run with."""
    hours = config.get('ESCROW_RELEASE_HOURS')
    if hours is None or not 1 <= int(hours) <= 168:
        raise ValueError("ESCROW_RELEASE_HOURS must be between 1 and 168")
    for key in ('CANCELLATION_FEE_RATE', 'SCHEDULE_CHANGE_FEE_RATE'):
        if not 0 <= int(config.get(key, 0)) <= 50:
            raise ValueError("{} must be between 0 and 50".format(key))
    for key in ('COMPENSATION_PRODUCT_NOT_READY_RATE', 'COMPENSATION_CUSTOMER_ABSENT_RATE'):
        if not 0 <= int(config.get(key, 0)) <= 100:
            raise ValueError("{} must be between 0 and 100".format(key))
