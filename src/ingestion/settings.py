"""
Scraper settings read from the environment.

Environment Variables:
    BREF_SEASON: season end year used in roster and game-log URLs (default: 2025)
    BREF_REQUEST_DELAY: minimum seconds between requests (default: 3.0)
    BREF_MAX_RETRIES: attempts per request (default: 3)
    BREF_TIMEOUT: request timeout in seconds (default: 10)
    BREF_IMPERSONATE: curl_cffi browser impersonation target (default: chrome120)
    BREF_MAX_WORKERS: players fetched concurrently per team (default: 1)
    LOG_LEVEL: logging level name (default: INFO)
"""

import logging
import os
from dataclasses import dataclass, replace
from typing import Callable, Mapping, Optional


@dataclass(frozen=True)
class ScraperSettings:
    season: int = 2025
    request_delay: float = 3.0
    max_retries: int = 3
    timeout: float = 10.0
    impersonate: str = "chrome120"
    max_workers: int = 1
    log_level: str = "INFO"

    def __post_init__(self):
        if self.season < 1947:
            raise ValueError(f"season must be 1947 or later, got {self.season}")
        if self.request_delay < 0:
            raise ValueError(f"request_delay cannot be negative, got {self.request_delay}")
        if self.max_retries < 1:
            raise ValueError(f"max_retries must be at least 1, got {self.max_retries}")
        if self.timeout <= 0:
            raise ValueError(f"timeout must be positive, got {self.timeout}")
        if self.max_workers < 1:
            raise ValueError(f"max_workers must be at least 1, got {self.max_workers}")
        if not isinstance(logging.getLevelName(self.log_level.upper()), int):
            raise ValueError(f"Unknown log level: {self.log_level}")

    @property
    def log_level_value(self) -> int:
        return logging.getLevelName(self.log_level.upper())

    def override(self, **changes) -> "ScraperSettings":
        """Copy with the non-None values in changes applied (CLI flags)"""
        return replace(self, **{k: v for k, v in changes.items() if v is not None})

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ScraperSettings":
        """
        Build settings from environment variables, falling back to defaults.

        Raises:
            ValueError: a variable is set but cannot be parsed
        """
        env = os.environ if environ is None else environ
        defaults = cls()

        def read(name: str, convert: Callable, default):
            raw = env.get(name)
            if raw is None or raw.strip() == "":
                return default
            try:
                return convert(raw.strip())
            except ValueError:
                raise ValueError(f"Invalid value for {name}: {raw!r}") from None

        return cls(
            season=read("BREF_SEASON", int, defaults.season),
            request_delay=read("BREF_REQUEST_DELAY", float, defaults.request_delay),
            max_retries=read("BREF_MAX_RETRIES", int, defaults.max_retries),
            timeout=read("BREF_TIMEOUT", float, defaults.timeout),
            impersonate=read("BREF_IMPERSONATE", str, defaults.impersonate),
            max_workers=read("BREF_MAX_WORKERS", int, defaults.max_workers),
            log_level=read("LOG_LEVEL", str, defaults.log_level),
        )
