"""Configuration management for the task escrow settlement service"""

import os
import logging
from decimal import Decimal

logger = logging.getLogger(__name__)


class Config:
    """Application configuration"""

    # Environment detection - ENVIRONMENT takes absolute priority
    ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower().strip()
    IS_PRODUCTION = ENVIRONMENT == "production"
    CURRENT_ENVIRONMENT = "production" if IS_PRODUCTION else "development"

    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper().strip()

    # Database configuration
    # PostgreSQL in production; local runs fall back to a SQLite file
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///escrow_ledger.db")
    DATABASE_ECHO = os.getenv("DATABASE_ECHO", "false").lower() == "true"
    DATABASE_POOL_TIMEOUT = int(os.getenv("DATABASE_POOL_TIMEOUT", "30"))  # seconds
    # Bounded ledger calls: statement timeout applied per connection (PostgreSQL only)
    LEDGER_STATEMENT_TIMEOUT_SECONDS = int(os.getenv("LEDGER_STATEMENT_TIMEOUT_SECONDS", "10"))

    if DATABASE_URL.startswith("postgresql"):
        DATABASE_SOURCE = "PostgreSQL"
    elif DATABASE_URL.startswith("sqlite"):
        DATABASE_SOURCE = "SQLite (local)"
    else:
        DATABASE_SOURCE = "Other"

    @staticmethod
    def _validate_fee_percentage(env_var: str, default: str = "1.5", min_val: float = 0.0, max_val: float = 20.0) -> Decimal:
        """Validate fee percentage with bounds checking"""
        try:
            value_str = os.getenv(env_var, default)
            fee = Decimal(value_str)

            if fee < Decimal(str(min_val)):
                logger.error(f"❌ {env_var}={fee}% is below minimum {min_val}%. Using default {default}%")
                return Decimal(default)

            if fee > Decimal(str(max_val)):
                logger.error(f"❌ {env_var}={fee}% exceeds maximum {max_val}%. Using default {default}%")
                return Decimal(default)

            logger.debug(f"✅ {env_var}={fee}% validated successfully")
            return fee

        except Exception as e:
            logger.error(f"❌ Invalid {env_var} value '{os.getenv(env_var)}': {e}. Using default {default}%")
            return Decimal(default)

    # Settlement configuration
    SETTLEMENT_CURRENCY = os.getenv("SETTLEMENT_CURRENCY", "FCFA")
    MOBILE_MONEY_FEE_PERCENTAGE = _validate_fee_percentage(
        "MOBILE_MONEY_FEE_PERCENTAGE", "1.5", 0.0, 20.0
    )  # 1.5% on fee-bearing mobile money methods

    # Ledger write retry budget (exponential backoff with jitter)
    LEDGER_WRITE_MAX_ATTEMPTS = int(os.getenv("LEDGER_WRITE_MAX_ATTEMPTS", "3"))
    LEDGER_RETRY_BASE_DELAY = float(os.getenv("LEDGER_RETRY_BASE_DELAY", "0.2"))  # seconds
    LEDGER_RETRY_MAX_DELAY = float(os.getenv("LEDGER_RETRY_MAX_DELAY", "5.0"))  # seconds

    # Task status reconciliation job
    RECONCILIATION_BATCH_SIZE = int(os.getenv("RECONCILIATION_BATCH_SIZE", "100"))
    RECONCILIATION_MAX_ATTEMPTS = int(os.getenv("RECONCILIATION_MAX_ATTEMPTS", "10"))

    # Trust gating
    CASH_PAYMENT_MIN_TRUST_SCORE = int(os.getenv("CASH_PAYMENT_MIN_TRUST_SCORE", "60"))

    @staticmethod
    def log_environment_config():
        """Log current environment configuration for debugging"""
        logger.info("🔧 Escrow Service Configuration:")
        logger.info(f"   Environment: {Config.CURRENT_ENVIRONMENT.upper()}")
        logger.info(f"   Database: {Config.DATABASE_SOURCE}")
        logger.info(f"   Settlement currency: {Config.SETTLEMENT_CURRENCY}")
        logger.info(f"   Mobile money fee: {Config.MOBILE_MONEY_FEE_PERCENTAGE}%")
        logger.info(
            f"   Ledger retries: {Config.LEDGER_WRITE_MAX_ATTEMPTS} attempts "
            f"(base {Config.LEDGER_RETRY_BASE_DELAY}s, max {Config.LEDGER_RETRY_MAX_DELAY}s)"
        )
        logger.info(
            f"   Reconciliation: batch {Config.RECONCILIATION_BATCH_SIZE}, "
            f"max {Config.RECONCILIATION_MAX_ATTEMPTS} attempts"
        )

    @staticmethod
    def validate_configuration() -> list:
        """Return a list of configuration problems (empty when valid)"""
        problems = []
        if Config.LEDGER_WRITE_MAX_ATTEMPTS < 1:
            problems.append("LEDGER_WRITE_MAX_ATTEMPTS must be at least 1")
        if Config.LEDGER_RETRY_BASE_DELAY < 0 or Config.LEDGER_RETRY_MAX_DELAY < 0:
            problems.append("Ledger retry delays must be non-negative")
        if Config.RECONCILIATION_MAX_ATTEMPTS < 1:
            problems.append("RECONCILIATION_MAX_ATTEMPTS must be at least 1")
        if not 0 <= Config.CASH_PAYMENT_MIN_TRUST_SCORE <= 100:
            problems.append("CASH_PAYMENT_MIN_TRUST_SCORE must be between 0 and 100")
        if Config.IS_PRODUCTION and Config.DATABASE_SOURCE != "PostgreSQL":
            problems.append("Production requires a PostgreSQL DATABASE_URL")

        for problem in problems:
            logger.error(f"❌ CONFIG_INVALID: {problem}")
        return problems


def configure_logging(level: str = None):
    """Apply the service log format and level to the root logger"""
    logging.basicConfig(
        level=getattr(logging, (level or Config.LOG_LEVEL), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
