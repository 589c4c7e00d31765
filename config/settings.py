"""Configuration management for the backfill engine."""

import os
from dataclasses import dataclass
from typing import Optional
from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_optional_float(name: str) -> Optional[float]:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return None
    return float(value)


def _env_optional_int(name: str) -> Optional[int]:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return None
    return int(value)


@dataclass
class DatabaseConfig:
    """Database connection configuration."""

    database_url: str = "sqlite:///backfill.db"
    echo: bool = False


@dataclass
class BackfillConfig:
    """Job runner, checkpointing and recovery knobs."""

    dispatch_mode: str = "thread"  # "thread", "inline" or "celery"
    max_item_retries: int = 2
    retry_base_delay: float = 1.0  # seconds
    retry_max_delay: float = 30.0  # seconds
    retry_backoff_multiplier: float = 2.0
    item_timeout_seconds: Optional[float] = None
    item_delay_seconds: float = 0.0
    max_items_per_minute: Optional[int] = None
    checkpoint_every_items: int = 1
    checkpoint_interval_seconds: float = 5.0
    max_retained_errors: int = 100
    auto_recover: bool = True
    estimated_seconds_per_item: float = 30.0
    preview_item_limit: int = 10
    item_processor: Optional[str] = None  # "package.module:ClassName"


@dataclass
class CeleryConfig:
    """Celery broker/backend configuration."""

    broker_url: str = "redis://localhost:6379/0"
    result_backend: Optional[str] = None
    task_always_eager: bool = False


@dataclass
class WebConfig:
    """Web interface configuration."""

    port: int = 3030
    host: str = "127.0.0.1"
    debug: bool = False
    admin_api_key: Optional[str] = None


@dataclass
class AgentConfig:
    """Process-wide configuration."""

    log_level: str = "INFO"


class Settings:
    """Main settings manager."""

    def __init__(self):
        self.database = self._load_database_config()
        self.backfill = self._load_backfill_config()
        self.celery = self._load_celery_config()
        self.web = self._load_web_config()
        self.agent = self._load_agent_config()

    @staticmethod
    def _load_database_config() -> DatabaseConfig:
        return DatabaseConfig(
            database_url=os.getenv("DATABASE_URL", "sqlite:///backfill.db"),
            echo=_env_bool("DATABASE_ECHO", False),
        )

    @staticmethod
    def _load_backfill_config() -> BackfillConfig:
        dispatch_mode = os.getenv("BACKFILL_DISPATCH_MODE", "thread").lower()
        if dispatch_mode not in ("thread", "inline", "celery"):
            raise ValueError(
                f"BACKFILL_DISPATCH_MODE must be 'thread', 'inline' or 'celery', got '{dispatch_mode}'"
            )

        return BackfillConfig(
            dispatch_mode=dispatch_mode,
            max_item_retries=int(os.getenv("BACKFILL_MAX_ITEM_RETRIES", "2")),
            retry_base_delay=float(os.getenv("BACKFILL_RETRY_BASE_DELAY", "1.0")),
            retry_max_delay=float(os.getenv("BACKFILL_RETRY_MAX_DELAY", "30.0")),
            retry_backoff_multiplier=float(
                os.getenv("BACKFILL_RETRY_BACKOFF_MULTIPLIER", "2.0")
            ),
            item_timeout_seconds=_env_optional_float("BACKFILL_ITEM_TIMEOUT_SECONDS"),
            item_delay_seconds=float(os.getenv("BACKFILL_ITEM_DELAY_SECONDS", "0")),
            max_items_per_minute=_env_optional_int("BACKFILL_MAX_ITEMS_PER_MINUTE"),
            checkpoint_every_items=max(
                1, int(os.getenv("BACKFILL_CHECKPOINT_EVERY_ITEMS", "1"))
            ),
            checkpoint_interval_seconds=float(
                os.getenv("BACKFILL_CHECKPOINT_INTERVAL_SECONDS", "5.0")
            ),
            max_retained_errors=int(os.getenv("BACKFILL_MAX_RETAINED_ERRORS", "100")),
            auto_recover=_env_bool("BACKFILL_AUTO_RECOVER", True),
            estimated_seconds_per_item=float(
                os.getenv("BACKFILL_ESTIMATED_SECONDS_PER_ITEM", "30.0")
            ),
            preview_item_limit=int(os.getenv("BACKFILL_PREVIEW_ITEM_LIMIT", "10")),
            item_processor=os.getenv("BACKFILL_ITEM_PROCESSOR") or None,
        )

    @staticmethod
    def _load_celery_config() -> CeleryConfig:
        return CeleryConfig(
            broker_url=os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/0"),
            result_backend=os.getenv("CELERY_RESULT_BACKEND"),
            task_always_eager=_env_bool("CELERY_TASK_ALWAYS_EAGER", False),
        )

    @staticmethod
    def _load_web_config() -> WebConfig:
        return WebConfig(
            port=int(os.getenv("WEB_PORT", "3030")),
            host=os.getenv("WEB_HOST", "127.0.0.1"),
            debug=_env_bool("WEB_DEBUG", False),
            admin_api_key=os.getenv("ADMIN_API_KEY") or None,
        )

    @staticmethod
    def _load_agent_config() -> AgentConfig:
        return AgentConfig(log_level=os.getenv("LOG_LEVEL", "INFO").upper())

    def validate(self) -> bool:
        """Validate required configuration."""
        if not self.database.database_url:
            raise ValueError("DATABASE_URL is required")
        if self.backfill.max_item_retries < 0:
            raise ValueError("BACKFILL_MAX_ITEM_RETRIES must be >= 0")
        if self.backfill.max_retained_errors < 1:
            raise ValueError("BACKFILL_MAX_RETAINED_ERRORS must be >= 1")
        return True


# Global settings instance
settings = Settings()
