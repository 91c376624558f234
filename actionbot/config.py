"""Configuration management for the action pipeline."""
import os
from dotenv import load_dotenv


load_dotenv()


class Config:
    """Load and validate environment configuration."""

    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
    BOT_NAME: str = os.getenv("BOT_NAME", "ActionBot")

    # Observer webhook (optional, fire-and-forget)
    NOTIFY_WEBHOOK_URL: str = os.getenv("NOTIFY_WEBHOOK_URL", "")

    # Database configuration
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./actionbot.db")

    # Externally owned account configuration (JSON file)
    ACCOUNTS_FILE: str = os.getenv("ACCOUNTS_FILE", "accounts.json")
    MARKET_BASE_URL: str = os.getenv("MARKET_BASE_URL", "https://polymarket.com")

    # Scheduler
    QUEUE_INTERVAL_SEC: int = 30
    RETRY_INTERVAL_SEC: int = 60
    QUEUE_BATCH_PER_ACCOUNT: int = 1
    RETRY_BATCH: int = 5
    MAX_RETRIES_CEILING: int = 10
    DEFAULT_MAX_RETRIES: int = 3
    DEFAULT_RETRY_BACKOFF_SECS: int = 60
    SHUTDOWN_TIMEOUT_SEC: float = 90.0
    STALE_IN_FLIGHT_SEC: float = 300.0

    # Content generation
    MAX_POST_LENGTH: int = 280
    LLM_BASE_URL: str = os.getenv("LLM_BASE_URL", "https://api.openai.com/v1")
    LLM_API_KEY: str = os.getenv("LLM_API_KEY", "")
    LLM_MODEL: str = os.getenv("LLM_MODEL", "gpt-4o-mini")
    LLM_MAX_TOKENS: int = int(os.getenv("LLM_MAX_TOKENS", "500"))
    LLM_TEMPERATURE: float = float(os.getenv("LLM_TEMPERATURE", "0.7"))
    LLM_TIMEOUT_SEC: float = 60.0
    FETCH_TIMEOUT_SEC: float = 15.0

    # Posting
    POSTER_PROVIDER: str = os.getenv("POSTER_PROVIDER", "mock")
    X_API_BASE_URL: str = os.getenv("X_API_BASE_URL", "https://api.x.com/2")
    POST_TIMEOUT_SEC: float = 30.0

    # Screenshots
    SCREENSHOT_DIR: str = os.getenv("SCREENSHOT_DIR", "./data/screenshots")
    SCREENSHOT_SETTLE_SEC: float = 3.0
    SCREENSHOT_TIMEOUT_SEC: float = 30.0
    SCREENSHOT_MAX_AGE_HOURS: int = 24

    @staticmethod
    def _positive_int(name: str, default: int) -> int:
        try:
            value = int(os.getenv(name, str(default)))
        except ValueError as e:
            raise ValueError(f"Invalid {name}: {e}")
        if value <= 0:
            raise ValueError(f"{name} must be a positive integer")
        return value

    @staticmethod
    def _positive_float(name: str, default: float) -> float:
        try:
            value = float(os.getenv(name, str(default)))
        except ValueError as e:
            raise ValueError(f"Invalid {name}: {e}")
        if value <= 0:
            raise ValueError(f"{name} must be a positive number")
        return value

    @classmethod
    def validate(cls) -> None:
        """Validate configuration and apply numeric overrides from the environment."""
        cls.QUEUE_INTERVAL_SEC = cls._positive_int("QUEUE_INTERVAL_SEC", 30)
        cls.RETRY_INTERVAL_SEC = cls._positive_int("RETRY_INTERVAL_SEC", 60)
        cls.QUEUE_BATCH_PER_ACCOUNT = cls._positive_int("QUEUE_BATCH_PER_ACCOUNT", 1)
        cls.RETRY_BATCH = cls._positive_int("RETRY_BATCH", 5)
        cls.MAX_RETRIES_CEILING = cls._positive_int("MAX_RETRIES_CEILING", 10)
        cls.DEFAULT_MAX_RETRIES = cls._positive_int("DEFAULT_MAX_RETRIES", 3)
        cls.DEFAULT_RETRY_BACKOFF_SECS = cls._positive_int("DEFAULT_RETRY_BACKOFF_SECS", 60)
        cls.MAX_POST_LENGTH = cls._positive_int("MAX_POST_LENGTH", 280)
        cls.SCREENSHOT_MAX_AGE_HOURS = cls._positive_int("SCREENSHOT_MAX_AGE_HOURS", 24)

        cls.LLM_TIMEOUT_SEC = cls._positive_float("LLM_TIMEOUT_SEC", 60.0)
        cls.FETCH_TIMEOUT_SEC = cls._positive_float("FETCH_TIMEOUT_SEC", 15.0)
        cls.POST_TIMEOUT_SEC = cls._positive_float("POST_TIMEOUT_SEC", 30.0)
        cls.SCREENSHOT_SETTLE_SEC = cls._positive_float("SCREENSHOT_SETTLE_SEC", 3.0)
        cls.SCREENSHOT_TIMEOUT_SEC = cls._positive_float("SCREENSHOT_TIMEOUT_SEC", 30.0)
        cls.SHUTDOWN_TIMEOUT_SEC = cls._positive_float("SHUTDOWN_TIMEOUT_SEC", 90.0)
        cls.STALE_IN_FLIGHT_SEC = cls._positive_float("STALE_IN_FLIGHT_SEC", 300.0)

        if cls.MAX_POST_LENGTH < 10:
            raise ValueError("MAX_POST_LENGTH must be at least 10")

        if cls.POSTER_PROVIDER not in ("mock", "x"):
            raise ValueError(f"Invalid POSTER_PROVIDER: {cls.POSTER_PROVIDER}")

        if cls.POSTER_PROVIDER == "x" and not cls.X_API_BASE_URL:
            raise ValueError("X_API_BASE_URL is required when POSTER_PROVIDER=x")

        if not cls.DATABASE_URL.startswith(("postgresql", "sqlite")):
            raise ValueError("DATABASE_URL must be postgresql or sqlite")
