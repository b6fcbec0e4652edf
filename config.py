"""Configuration management for the escrow release coordination client"""

import os
import logging

from dotenv import load_dotenv

load_dotenv(os.path.join(os.path.dirname(os.path.abspath(__file__)), '.env'))

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower().strip() in ("1", "true", "yes", "on")


class Config:
    """Application configuration"""

    # Environment detection
    ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower().strip()
    IS_PRODUCTION = ENVIRONMENT == "production"
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

    # Backend REST contract
    API_BASE_URL = os.getenv("API_BASE_URL", "http://localhost:8000").rstrip("/")
    # Public page the beneficiary opens; the one-time handoff link points here
    EXTERNAL_PORTAL_URL = os.getenv(
        "EXTERNAL_PORTAL_URL", "http://localhost:3000/external/proofs/upload"
    )
    HTTP_TIMEOUT_SECONDS = float(os.getenv("HTTP_TIMEOUT_SECONDS", "30"))

    # Automatic retry of transient failures (429, 5xx, network)
    RETRY_MAX_ATTEMPTS = int(os.getenv("RETRY_MAX_ATTEMPTS", "3"))
    RETRY_INITIAL_DELAY = float(os.getenv("RETRY_INITIAL_DELAY", "1.0"))  # seconds
    RETRY_MAX_DELAY = float(os.getenv("RETRY_MAX_DELAY", "8.0"))  # seconds
    RETRY_BACKOFF_FACTOR = float(os.getenv("RETRY_BACKOFF_FACTOR", "2.0"))

    # View cache
    VIEW_CACHE_STALE_SECONDS = int(os.getenv("VIEW_CACHE_STALE_SECONDS", "300"))

    # Polling: scales every profile's maximum watch duration (1.0 = defaults)
    POLL_MAX_DURATION_SCALE = float(os.getenv("POLL_MAX_DURATION_SCALE", "1.0"))

    # External proof tokens
    EXTERNAL_TOKEN_MIN_MINUTES = int(os.getenv("EXTERNAL_TOKEN_MIN_MINUTES", "10"))
    EXTERNAL_TOKEN_MAX_MINUTES = int(os.getenv("EXTERNAL_TOKEN_MAX_MINUTES", "43200"))  # 30 days
    EXTERNAL_TOKEN_DEFAULT_MINUTES = int(os.getenv("EXTERNAL_TOKEN_DEFAULT_MINUTES", "10080"))  # 7 days
    EXTERNAL_TOKEN_DEFAULT_MAX_UPLOADS = int(os.getenv("EXTERNAL_TOKEN_DEFAULT_MAX_UPLOADS", "1"))
    # When false a token allows several uploads but only one proof submission
    EXTERNAL_TOKEN_MULTI_SUBMISSION = _env_bool("EXTERNAL_TOKEN_MULTI_SUBMISSION", "false")

    # Milestone lifecycle: can a new proof reopen a REJECTED milestone?
    MILESTONE_REJECTED_RESUBMITTABLE = _env_bool("MILESTONE_REJECTED_RESUBMITTABLE", "true")

    # Local client-side store (idempotency keys, external token handoff)
    LOCAL_STORE_URL = os.getenv("LOCAL_STORE_URL", "sqlite:///:memory:")
    IDEMPOTENCY_KEY_TTL_SECONDS = int(os.getenv("IDEMPOTENCY_KEY_TTL_SECONDS", "86400"))  # 24 hours

    @staticmethod
    def log_environment_config():
        """Log current environment configuration for debugging"""
        logger.info("🔧 Client Environment Configuration:")
        logger.info(f"   Environment: {Config.ENVIRONMENT.upper()}")
        logger.info(f"   API base URL: {Config.API_BASE_URL}")
        logger.info(f"   HTTP timeout: {Config.HTTP_TIMEOUT_SECONDS}s")
        logger.info(
            f"   Retry: max_attempts={Config.RETRY_MAX_ATTEMPTS}, "
            f"initial_delay={Config.RETRY_INITIAL_DELAY}s, max_delay={Config.RETRY_MAX_DELAY}s"
        )
        logger.info(
            f"   External tokens: window=[{Config.EXTERNAL_TOKEN_MIN_MINUTES}, "
            f"{Config.EXTERNAL_TOKEN_MAX_MINUTES}] min, multi_submission={Config.EXTERNAL_TOKEN_MULTI_SUBMISSION}"
        )
        logger.info(f"   Rejected milestones resubmittable: {Config.MILESTONE_REJECTED_RESUBMITTABLE}")
        if Config.LOCAL_STORE_URL.startswith("sqlite:///:memory:"):
            logger.info("   Local store: in-memory SQLite (cleared on exit)")
        else:
            logger.info("   Local store: persistent")

    @staticmethod
    def validate() -> list:
        """Return a list of configuration problems (empty when valid)"""
        problems = []
        if Config.EXTERNAL_TOKEN_MIN_MINUTES < 1:
            problems.append("EXTERNAL_TOKEN_MIN_MINUTES must be >= 1")
        if Config.EXTERNAL_TOKEN_MAX_MINUTES < Config.EXTERNAL_TOKEN_MIN_MINUTES:
            problems.append("EXTERNAL_TOKEN_MAX_MINUTES must be >= EXTERNAL_TOKEN_MIN_MINUTES")
        if not (
            Config.EXTERNAL_TOKEN_MIN_MINUTES
            <= Config.EXTERNAL_TOKEN_DEFAULT_MINUTES
            <= Config.EXTERNAL_TOKEN_MAX_MINUTES
        ):
            problems.append("EXTERNAL_TOKEN_DEFAULT_MINUTES outside the allowed window")
        if Config.EXTERNAL_TOKEN_DEFAULT_MAX_UPLOADS < 1:
            problems.append("EXTERNAL_TOKEN_DEFAULT_MAX_UPLOADS must be >= 1")
        if Config.RETRY_MAX_ATTEMPTS < 1:
            problems.append("RETRY_MAX_ATTEMPTS must be >= 1")
        if Config.POLL_MAX_DURATION_SCALE <= 0:
            problems.append("POLL_MAX_DURATION_SCALE must be positive")
        if Config.IS_PRODUCTION and Config.API_BASE_URL.startswith("http://"):
            problems.append("API_BASE_URL must use https in production")
        for problem in problems:
            logger.error(f"❌ CONFIG_INVALID: {problem}")
        return problems
