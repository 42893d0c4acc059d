"""
Rule engine configuration.

Container settings come from the environment (pydantic-settings). Engine
settings are user-editable and persisted as JSON in the config directory.
"""
import json
import logging
import os
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)

CONFIG_DIR = Path(os.environ.get("CONFIG_DIR", "/config"))
CONFIG_FILE = CONFIG_DIR / "settings.json"

VALID_LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


class EngineSettings(BaseModel):
    """User-configurable rule engine settings."""
    # Wall-clock budget for test/preview runs; exceeded runs are marked truncated
    preview_timeout_seconds: float = Field(default=10, gt=0)
    # Thread pool size for per-record rule application (1 = sequential)
    max_workers: int = Field(default=1, ge=1)
    # Compiled regex cache size; the cache is cleared when full
    regex_cache_size: int = Field(default=1000, ge=1)
    # Fields tried in order to build the stream dedup key during assembly
    dedup_keys: list[str] = ["stream_url"]
    # Maximum length of a literal condition or action value
    max_value_length: int = Field(default=255, ge=1)
    # DEBUG, INFO, WARNING, ERROR or CRITICAL
    backend_log_level: str = "INFO"


class Settings(BaseSettings):
    """Process settings from the environment (container config)."""
    log_level: str = "INFO"
    # Overrides the SQLite file in CONFIG_DIR when set
    database_url: Optional[str] = None

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


_cached_settings: EngineSettings | None = None


def load_settings() -> EngineSettings:
    """
    Read engine settings from CONFIG_FILE, caching the result.

    Keys the current EngineSettings does not know are dropped so files written
    by other versions still load. A missing or unreadable file yields defaults.
    """
    global _cached_settings

    if _cached_settings is not None:
        return _cached_settings

    settings = None
    if CONFIG_FILE.exists():
        try:
            data = json.loads(CONFIG_FILE.read_text())
            known = {k: v for k, v in data.items() if k in EngineSettings.model_fields}
            settings = EngineSettings(**known)
            logger.info("[CONFIG] Loaded engine settings from %s", CONFIG_FILE)
        except Exception as e:
            logger.error("[CONFIG] Could not read %s, using defaults: %s", CONFIG_FILE, e)

    if settings is None:
        settings = EngineSettings()
    _cached_settings = settings
    return settings


def save_settings(settings: EngineSettings) -> None:
    """Persist engine settings and make them the cached value."""
    global _cached_settings

    CONFIG_DIR.mkdir(parents=True, exist_ok=True)
    try:
        CONFIG_FILE.write_text(json.dumps(settings.model_dump(), indent=2))
    except OSError as e:
        logger.error("[CONFIG] Failed to write %s: %s", CONFIG_FILE, e)
        raise
    _cached_settings = settings
    logger.info("[CONFIG] Saved engine settings to %s", CONFIG_FILE)


def clear_settings_cache() -> None:
    """Forget the cached settings; the next get_settings() re-reads the file."""
    global _cached_settings
    _cached_settings = None


def get_settings() -> EngineSettings:
    return load_settings()


def get_log_level_from_env() -> str:
    return Settings().log_level.upper()


def set_log_level(level: str) -> None:
    """Apply a log level to the root logger and every logger created so far."""
    name = level.upper()
    if name not in VALID_LOG_LEVELS:
        logger.warning("[CONFIG] Unknown log level '%s', falling back to INFO", level)
        name = "INFO"

    numeric = getattr(logging, name)
    logging.getLogger().setLevel(numeric)
    for logger_name in list(logging.root.manager.loggerDict):
        logging.getLogger(logger_name).setLevel(numeric)
    logger.info("[CONFIG] Log level set to %s", name)
