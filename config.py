"""Configuration management for the payment reconciliation engine"""

import os
import logging
from decimal import Decimal

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower().strip() in ("1", "true", "yes", "on")


class Config:
    """Application configuration"""

    ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower().strip()
    IS_PRODUCTION = ENVIRONMENT == "production"
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

    # Database
    DATABASE_URL = os.getenv("DATABASE_URL")
    DATABASE_POOL_SIZE = int(os.getenv("DATABASE_POOL_SIZE", "7"))
    DATABASE_MAX_OVERFLOW = int(os.getenv("DATABASE_MAX_OVERFLOW", "15"))

    # Credential vault master secret (hashed into the AES-256 key, never logged)
    PAYMENT_ENCRYPTION_KEY = os.getenv("PAYMENT_ENCRYPTION_KEY")

    # Public URLs used for return/webhook links handed to providers
    PAYMENT_PUBLIC_BASE_URL = os.getenv("PAYMENT_PUBLIC_BASE_URL", "http://localhost:8000").rstrip("/")

    # Provider HTTP behaviour
    PAYMENT_HTTP_TIMEOUT_SECONDS = int(os.getenv("PAYMENT_HTTP_TIMEOUT_SECONDS", "30"))
    PAYMENT_RETRY_MAX_ATTEMPTS = int(os.getenv("PAYMENT_RETRY_MAX_ATTEMPTS", "3"))
    PAYMENT_RETRY_INITIAL_DELAY = float(os.getenv("PAYMENT_RETRY_INITIAL_DELAY", "1.0"))
    PAYMENT_RETRY_BACKOFF_MULTIPLIER = float(os.getenv("PAYMENT_RETRY_BACKOFF_MULTIPLIER", "2.0"))
    PAYMENT_RETRY_MAX_DELAY = float(os.getenv("PAYMENT_RETRY_MAX_DELAY", "30.0"))
    PAYMENT_CIRCUIT_FAILURE_THRESHOLD = int(os.getenv("PAYMENT_CIRCUIT_FAILURE_THRESHOLD", "5"))
    PAYMENT_CIRCUIT_RECOVERY_TIMEOUT = int(os.getenv("PAYMENT_CIRCUIT_RECOVERY_TIMEOUT", "60"))

    # Crypto rail (USDT TRC-20)
    CRYPTO_MONITOR_ENABLED = _env_bool("CRYPTO_MONITOR_ENABLED", "true")
    CRYPTO_MONITOR_INTERVAL_SECONDS = int(os.getenv("CRYPTO_MONITOR_INTERVAL_SECONDS", "30"))
    CRYPTO_PAYMENT_DEFAULT_EXPIRATION_MINUTES = int(os.getenv("CRYPTO_PAYMENT_DEFAULT_EXPIRATION_MINUTES", "60"))
    CRYPTO_REFERENCE_AMOUNT = Decimal(os.getenv("CRYPTO_REFERENCE_AMOUNT", "10000"))
    TRONGRID_API_KEY = os.getenv("TRONGRID_API_KEY")

    # Exchange rates
    EXCHANGE_RATE_CACHE_TTL_SECONDS = int(os.getenv("EXCHANGE_RATE_CACHE_TTL_SECONDS", "60"))

    # Defaults for a freshly created PaymentConfig
    DEFAULT_PAYMENT_CURRENCY = os.getenv("DEFAULT_PAYMENT_CURRENCY", "RUB")

    @staticmethod
    def log_environment_config():
        """Log current environment configuration for debugging"""
        logger.info("🔧 Payment Engine Configuration:")
        logger.info(f"   Environment: {Config.ENVIRONMENT.upper()}")
        logger.info(f"   Database configured: {bool(Config.DATABASE_URL)}")
        logger.info(f"   Encryption key configured: {bool(Config.PAYMENT_ENCRYPTION_KEY)}")
        logger.info(f"   Crypto monitor: {'enabled' if Config.CRYPTO_MONITOR_ENABLED else 'disabled'} "
                    f"(every {Config.CRYPTO_MONITOR_INTERVAL_SECONDS}s)")
        logger.info(f"   Retry policy: {Config.PAYMENT_RETRY_MAX_ATTEMPTS} attempts, "
                    f"{Config.PAYMENT_RETRY_INITIAL_DELAY}s x{Config.PAYMENT_RETRY_BACKOFF_MULTIPLIER}")
