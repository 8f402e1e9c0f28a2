"""Configuration management for the trade escrow engine"""

import os
import logging

from dotenv import load_dotenv

load_dotenv(os.path.join(os.path.dirname(os.path.abspath(__file__)), ".env"))

logger = logging.getLogger(__name__)


class Config:
    """Application configuration"""

    ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower().strip()
    IS_PRODUCTION = ENVIRONMENT == "production"

    # Database
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///trade_escrow.db")
    DATABASE_ECHO = os.getenv("DATABASE_ECHO", "false").lower() == "true"

    # Escrow auto-release
    AUTO_RELEASE_ENABLED = os.getenv("AUTO_RELEASE_ENABLED", "true").lower() == "true"
    AUTO_RELEASE_GRACE_DAYS = int(os.getenv("AUTO_RELEASE_GRACE_DAYS", "30"))
    AUTO_RELEASE_SWEEP_MINUTES = int(os.getenv("AUTO_RELEASE_SWEEP_MINUTES", "5"))

    # Buyers who sit on QUALITY_PENDING longer than this get a reminder
    QUALITY_REMINDER_DAYS = int(os.getenv("QUALITY_REMINDER_DAYS", "7"))
    QUALITY_REMINDER_SWEEP_MINUTES = int(os.getenv("QUALITY_REMINDER_SWEEP_MINUTES", "60"))
    # Silence past this counts as approval (reminder window plus 3 days)
    QUALITY_AUTO_APPROVE_DAYS = int(os.getenv("QUALITY_AUTO_APPROVE_DAYS", "10"))

    # Input validation
    MIN_QUALITY_NOTES_LENGTH = int(os.getenv("MIN_QUALITY_NOTES_LENGTH", "10"))
    MIN_DISPUTE_REASON_LENGTH = int(os.getenv("MIN_DISPUTE_REASON_LENGTH", "10"))
    MIN_RESOLUTION_REASON_LENGTH = int(os.getenv("MIN_RESOLUTION_REASON_LENGTH", "10"))

    DEFAULT_CURRENCY = os.getenv("DEFAULT_CURRENCY", "USD").upper()

    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

    @staticmethod
    def log_environment_config():
        """Log current configuration for debugging"""
        logger.info("🔧 Trade Escrow Configuration:")
        logger.info(f"   Environment: {Config.ENVIRONMENT.upper()}")
        logger.info(f"   Database: {Config._redacted_database_url()}")
        logger.info(
            f"   Auto-release: {'enabled' if Config.AUTO_RELEASE_ENABLED else 'disabled'} "
            f"(grace {Config.AUTO_RELEASE_GRACE_DAYS}d, sweep every {Config.AUTO_RELEASE_SWEEP_MINUTES}m)"
        )
        logger.info(
            f"   Quality reminder after: {Config.QUALITY_REMINDER_DAYS}d, "
            f"auto-approve after: {Config.QUALITY_AUTO_APPROVE_DAYS}d"
        )
        logger.info(f"   Default currency: {Config.DEFAULT_CURRENCY}")

    @staticmethod
    def _redacted_database_url() -> str:
        url = Config.DATABASE_URL or ""
        if "@" not in url:
            return url
        scheme, _, rest = url.partition("://")
        return f"{scheme}://***@{rest.split('@', 1)[1]}"


def configure_logging(level: str = None):
    """Install the process-wide log format"""
    logging.basicConfig(
        level=getattr(logging, (level or Config.LOG_LEVEL), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
