"""Configuration for querykeeper."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

HOUR_MS = 60 * 60 * 1000
MIN_QUERY_WINDOW_MS = HOUR_MS
MAX_QUERY_WINDOW_MS = 7 * 24 * HOUR_MS
DEFAULT_QUERY_WINDOW_MS = 24 * HOUR_MS

DEFAULT_CHUNK_THRESHOLD = 1950


def _parse_int_env(var_name: str) -> Optional[int]:
    value = os.getenv(var_name)
    if not value:
        return None
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"{var_name} must be an integer, got {value!r}")


def _parse_float_env(var_name: str) -> Optional[float]:
    value = os.getenv(var_name)
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"{var_name} must be a number, got {value!r}")


def _parse_bool_env(var_name: str) -> Optional[bool]:
    value = os.getenv(var_name)
    if not value:
        return None
    lowered = value.strip().lower()
    if lowered not in ("true", "false"):
        raise ValueError(f'{var_name} must be "true" or "false"')
    return lowered == "true"


@dataclass
class Settings:
    """Static values consumed by the quota and conversation core."""
    max_queries_limit: int = 4
    query_window_ms: int = DEFAULT_QUERY_WINDOW_MS
    min_query_length: int = 4
    chunk_threshold: int = DEFAULT_CHUNK_THRESHOLD
    max_pages: Optional[int] = None  # None = unbounded
    embed_links: bool = False
    poll_interval: float = 2.0  # seconds between run status checks
    run_timeout: float = 300.0  # seconds before a run is abandoned
    db_path: str = "querykeeper.db"
    openai_api_key: Optional[str] = None
    assistant_id: Optional[str] = None
    log_level: str = "INFO"

    def validate(self) -> "Settings":
        """Raise ValueError on out-of-range values; returns self for chaining."""
        if self.max_queries_limit < 1:
            raise ValueError("max_queries_limit must be a positive integer")
        if not MIN_QUERY_WINDOW_MS <= self.query_window_ms <= MAX_QUERY_WINDOW_MS:
            raise ValueError("query_window_ms must be between 1 hour and 7 days")
        if self.min_query_length < 1:
            raise ValueError("min_query_length must be at least 1")
        if self.chunk_threshold < 1:
            raise ValueError("chunk_threshold must be positive")
        if self.max_pages is not None and self.max_pages < 1:
            raise ValueError("max_pages must be at least 1 when set")
        if self.poll_interval <= 0 or self.run_timeout <= 0:
            raise ValueError("poll_interval and run_timeout must be positive")
        return self

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from QUERYKEEPER_* environment variables."""
        settings = cls(
            openai_api_key=os.getenv("OPENAI_API_KEY"),
            assistant_id=os.getenv("QUERYKEEPER_ASSISTANT_ID"),
            db_path=os.getenv("QUERYKEEPER_DB_PATH", cls.db_path),
            log_level=os.getenv("QUERYKEEPER_LOG_LEVEL", cls.log_level).upper(),
        )

        max_queries = _parse_int_env("QUERYKEEPER_MAX_QUERIES")
        if max_queries is not None:
            settings.max_queries_limit = max_queries

        window_hours = _parse_float_env("QUERYKEEPER_QUERY_WINDOW_HOURS")
        if window_hours is not None:
            settings.query_window_ms = int(window_hours * HOUR_MS)

        embed_links = _parse_bool_env("QUERYKEEPER_EMBED_LINKS")
        if embed_links is not None:
            settings.embed_links = embed_links

        max_pages = _parse_int_env("QUERYKEEPER_MAX_PAGES")
        if max_pages is not None:
            settings.max_pages = max_pages

        poll_interval = _parse_float_env("QUERYKEEPER_POLL_INTERVAL")
        if poll_interval is not None:
            settings.poll_interval = poll_interval

        run_timeout = _parse_float_env("QUERYKEEPER_RUN_TIMEOUT")
        if run_timeout is not None:
            settings.run_timeout = run_timeout

        return settings.validate()
