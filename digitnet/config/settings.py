"""
Process-level settings read from the environment.
"""

import os
from dataclasses import dataclass
from typing import Optional


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Settings:
    """Where the score cache lives and which ensemble document to load."""

    cache_db_path: str = "data/score_cache.db"
    cache_enabled: bool = True
    config_path: Optional[str] = None

    @classmethod
    def from_env(cls) -> "Settings":
        """Load settings from environment variables."""
        return cls(
            cache_db_path=os.getenv("DIGITNET_CACHE_DB", "data/score_cache.db"),
            cache_enabled=_env_flag("DIGITNET_CACHE_ENABLED", True),
            config_path=os.getenv("DIGITNET_CONFIG") or None,
        )
