"""Configuration management for MirrorSync."""

import os
import logging
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

DEFAULT_LOG_RETENTION_DAYS = 30
DEFAULT_CONTRACT_LOG_RETENTION_DAYS = 7
DEFAULT_HTTP_TIMEOUT = 30.0
DEFAULT_RATE_LIMIT_BACKOFF_SECONDS = 60.0


def setup_logging(level: str = "INFO") -> None:
    """Set up logging configuration.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR)
    """
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )


def load_environment(env_file: Optional[str] = None) -> None:
    """Load environment variables from .env file.

    Args:
        env_file: Path to .env file. If None, looks for .env in current directory.
    """
    env_path = Path(env_file) if env_file else Path('.env')

    if env_path.exists():
        load_dotenv(env_path)
        logging.info(f"Loaded environment from {env_path}")
    else:
        logging.debug(f"No .env file found at {env_path}")


def get_required_env(key: str) -> str:
    """Get a required environment variable.

    Raises:
        ValueError: If the environment variable is not set
    """
    value = os.getenv(key)
    if not value:
        raise ValueError(f"Required environment variable {key} is not set")
    return value


def get_optional_env(key: str, default: str = "") -> str:
    """Get an optional environment variable."""
    return os.getenv(key, default)


def _get_number_env(key: str, default: float) -> float:
    raw = os.getenv(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"Environment variable {key} must be a number, got {raw!r}")


def get_log_retention_days() -> int:
    """Days a run log is kept before it expires."""
    return int(_get_number_env("MIRRORSYNC_LOG_RETENTION_DAYS", DEFAULT_LOG_RETENTION_DAYS))


def get_contract_log_retention_days() -> int:
    """Days a contract log entry is kept before it expires."""
    return int(_get_number_env("MIRRORSYNC_CONTRACT_LOG_RETENTION_DAYS", DEFAULT_CONTRACT_LOG_RETENTION_DAYS))


def get_http_timeout() -> float:
    """Default timeout in seconds for connector HTTP calls."""
    return _get_number_env("MIRRORSYNC_HTTP_TIMEOUT", DEFAULT_HTTP_TIMEOUT)


def get_rate_limit_backoff_seconds() -> float:
    """Seconds to wait before rescheduling when a throttled source gives no reset time."""
    return _get_number_env("MIRRORSYNC_RATE_LIMIT_BACKOFF_SECONDS", DEFAULT_RATE_LIMIT_BACKOFF_SECONDS)
