"""
GridFeed — Configuration
Environment-driven settings for the market-data poller and API service.

Values are read once from the process environment (a local ``.env`` file is
loaded first via python-dotenv) into a frozen ``Settings`` object.  There is
no runtime reconfiguration: build a new poller to change any of these.

Environment variables
---------------------
  GRIDFEED_GATEWAY_URL      Base URL of the function gateway
  GRIDFEED_GATEWAY_KEY      Bearer / apikey credential for the gateway
  GRIDFEED_FUNCTION         Function name to invoke (aeso-data-integration)
  GRIDFEED_CACHE_TTL        Seconds a live response is reused (60)
  GRIDFEED_POLL_INTERVAL    Seconds between automatic re-polls (300)
  GRIDFEED_REQUEST_TIMEOUT  Per-request HTTP timeout in seconds (15)
  GRIDFEED_MAX_RETRIES      Extra attempts on retryable gateway errors (0)
  GRIDFEED_RETRY_BACKOFF    Base retry delay in seconds; attempt n waits n times this (2)
  LOG_LEVEL                 loguru level for stderr output (INFO)
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass

from dotenv import load_dotenv
from loguru import logger

load_dotenv()

# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

DEFAULT_GATEWAY_URL = "http://localhost:54321"
DEFAULT_FUNCTION_NAME = "aeso-data-integration"

# Live market data goes stale quickly; one minute keeps dashboards responsive
# without hammering the gateway.
DEFAULT_CACHE_TTL_SECONDS = 60.0
DEFAULT_POLL_INTERVAL_SECONDS = 5 * 60.0
DEFAULT_REQUEST_TIMEOUT_SECONDS = 15.0
DEFAULT_MAX_RETRIES = 0
DEFAULT_RETRY_BACKOFF_SECONDS = 2.0


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring non-numeric {}={!r}; using {}.", name, raw, default)
        return default


def _env_int(name: str, default: int) -> int:
    return int(_env_float(name, float(default)))


@dataclass(frozen=True)
class Settings:
    """Resolved configuration for one GridFeed process."""

    gateway_url: str = DEFAULT_GATEWAY_URL
    gateway_key: str = ""
    function_name: str = DEFAULT_FUNCTION_NAME
    cache_ttl: float = DEFAULT_CACHE_TTL_SECONDS
    poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT_SECONDS
    max_retries: int = DEFAULT_MAX_RETRIES
    retry_backoff: float = DEFAULT_RETRY_BACKOFF_SECONDS
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        if self.cache_ttl <= 0:
            raise ValueError(f"cache_ttl must be positive, got {self.cache_ttl}")
        if self.poll_interval <= 0:
            raise ValueError(f"poll_interval must be positive, got {self.poll_interval}")
        if self.max_retries < 0:
            raise ValueError(f"max_retries cannot be negative, got {self.max_retries}")

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from environment variables, falling back to defaults."""
        return cls(
            gateway_url=os.getenv("GRIDFEED_GATEWAY_URL", DEFAULT_GATEWAY_URL).rstrip("/"),
            gateway_key=os.getenv("GRIDFEED_GATEWAY_KEY", ""),
            function_name=os.getenv("GRIDFEED_FUNCTION", DEFAULT_FUNCTION_NAME),
            cache_ttl=_env_float("GRIDFEED_CACHE_TTL", DEFAULT_CACHE_TTL_SECONDS),
            poll_interval=_env_float("GRIDFEED_POLL_INTERVAL", DEFAULT_POLL_INTERVAL_SECONDS),
            request_timeout=_env_float("GRIDFEED_REQUEST_TIMEOUT", DEFAULT_REQUEST_TIMEOUT_SECONDS),
            max_retries=_env_int("GRIDFEED_MAX_RETRIES", DEFAULT_MAX_RETRIES),
            retry_backoff=_env_float("GRIDFEED_RETRY_BACKOFF", DEFAULT_RETRY_BACKOFF_SECONDS),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )


def configure_logging(level: str = "INFO") -> None:
    """Send loguru output to stderr at *level*, replacing the default sink."""
    logger.remove()
    logger.add(sys.stderr, level=level)
