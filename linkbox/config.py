import os
from dotenv import load_dotenv

load_dotenv()


def _env_int(name, default):
    value = os.environ.get(name)
    if value is None or value.strip() == "":
        return default
    return int(value)


def _env_list(name):
    value = os.environ.get(name, "")
    return [item.strip() for item in value.split(",") if item.strip()]


class Config:
    """Base configuration class with common settings."""
    ENV = "base"
    DEBUG = False
    TESTING = False

    # Token signing
    TOKEN_SECRET = os.environ.get("TOKEN_SECRET")
    TOKEN_SECRET_FALLBACKS = _env_list("TOKEN_SECRET_FALLBACKS")  # retired keys, verify only
    TOKEN_MAX_LENGTH = _env_int("TOKEN_MAX_LENGTH", 2048)
    PUBLIC_BASE_URL = os.environ.get("PUBLIC_BASE_URL", "http://localhost:5000")

    # Shared secrets for the cron trigger and operator endpoints
    CRON_SECRET = os.environ.get("CRON_SECRET")
    OPS_API_KEY = os.environ.get("OPS_API_KEY")

    # Outbox dispatcher
    OUTBOX_BATCH_SIZE = _env_int("OUTBOX_BATCH_SIZE", 10)
    OUTBOX_MAX_ATTEMPTS = _env_int("OUTBOX_MAX_ATTEMPTS", 5)
    OUTBOX_BACKOFF_BASE_SECONDS = _env_int("OUTBOX_BACKOFF_BASE_SECONDS", 300)  # 5, 10, 20, 40 minutes...
    OUTBOX_BACKOFF_MAX_SECONDS = _env_int("OUTBOX_BACKOFF_MAX_SECONDS", 86400)
    OUTBOX_BACKOFF_JITTER_SECONDS = _env_int("OUTBOX_BACKOFF_JITTER_SECONDS", 30)
    OUTBOX_HANDLER_TIMEOUT_SECONDS = _env_int("OUTBOX_HANDLER_TIMEOUT_SECONDS", 30)
    OUTBOX_CLAIM_LEASE_SECONDS = _env_int("OUTBOX_CLAIM_LEASE_SECONDS", 600)
    OUTBOX_POLL_INTERVAL_SECONDS = _env_int("OUTBOX_POLL_INTERVAL_SECONDS", 60)
    OUTBOX_RUN_BUDGET_SECONDS = _env_int("OUTBOX_RUN_BUDGET_SECONDS", 50)  # stay under a 60s request timeout
    OUTBOX_SCHEDULER_ENABLED = os.environ.get("OUTBOX_SCHEDULER_ENABLED", "true").lower() == "true"

    # Email provider (Resend)
    RESEND_API_KEY = os.environ.get("RESEND_API_KEY")
    RESEND_API_URL = os.environ.get("RESEND_API_URL", "https://api.resend.com")
    EMAIL_FROM = os.environ.get("EMAIL_FROM", "no-reply@example.com")

    # Accounting system
    ACCOUNTING_API_URL = os.environ.get("ACCOUNTING_API_URL")
    ACCOUNTING_API_KEY = os.environ.get("ACCOUNTING_API_KEY")

    # Logging
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
    LOG_FILE = os.environ.get("LOG_FILE")


class LocalConfig(Config):
    """Configuration for local development."""
    ENV = "local"
    DEBUG = True
    TOKEN_SECRET = Config.TOKEN_SECRET or "local-dev-token-secret"


class SandboxConfig(Config):
    """Configuration for sandbox/staging environment."""
    ENV = "sandbox"
    DEBUG = False


class ProductionConfig(Config):
    """Configuration for production environment."""
    ENV = "production"
    DEBUG = False


class TestingConfig(Config):
    """Configuration for the test suite."""
    ENV = "testing"
    TESTING = True
    TOKEN_SECRET = "test-token-secret"
    TOKEN_SECRET_FALLBACKS = []
    CRON_SECRET = "test-cron-secret"
    OPS_API_KEY = "test-ops-key"
    OUTBOX_MAX_ATTEMPTS = 3
    OUTBOX_BACKOFF_BASE_SECONDS = 10
    OUTBOX_BACKOFF_JITTER_SECONDS = 5
    OUTBOX_HANDLER_TIMEOUT_SECONDS = 5
    OUTBOX_SCHEDULER_ENABLED = False
    LOG_FILE = None


def get_environment():
    return (os.environ.get("FLASK_ENV") or os.environ.get("ENVIRONMENT", "local")).lower()


def get_config(environment=None):
    """Get the appropriate configuration class based on environment variable.

    Environment is determined by FLASK_ENV or ENVIRONMENT variable:
    - 'local' or 'development' -> LocalConfig
    - 'sandbox' or 'staging' -> SandboxConfig
    - 'production' or 'prod' -> ProductionConfig
    - 'testing' or 'test' -> TestingConfig

    Defaults to LocalConfig if not set.
    """
    env = (environment or get_environment()).lower()

    if env in ["local", "development", "dev"]:
        return LocalConfig
    elif env in ["sandbox", "staging", "stage"]:
        return SandboxConfig
    elif env in ["production", "prod"]:
        return ProductionConfig
    elif env in ["testing", "test"]:
        return TestingConfig
    else:
        # Default to local for safety
        return LocalConfig
