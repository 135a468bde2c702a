"""Engine settings read from ``QABANK_*`` environment variables."""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import List, Optional


def _env_list(name: str, default: str = "") -> List[str]:
    val = os.getenv(name, default)
    return [x.strip() for x in val.split(";") if x.strip()]


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@dataclass
class EngineConfig:
    """Engine settings, read from ``QABANK_*`` environment variables.

    ``corpus_paths`` is a semicolon separated list of markdown documents loaded
    at startup; empty means the service starts without a corpus.
    """

    corpus_paths: List[str] = field(default_factory=lambda: _env_list("QABANK_CORPUS_PATHS"))
    strip_markdown: bool = field(default_factory=lambda: _env_bool("QABANK_STRIP_MARKDOWN", "true"))
    idle_timeout_seconds: float = field(
        default_factory=lambda: float(os.getenv("QABANK_IDLE_TIMEOUT_SECONDS", "1800"))
    )
    category_penalty: float = field(
        default_factory=lambda: float(os.getenv("QABANK_CATEGORY_PENALTY", "0.5"))
    )
    excerpt_length: int = field(default_factory=lambda: int(os.getenv("QABANK_EXCERPT_LENGTH", "120")))
    grading_threshold: float = field(
        default_factory=lambda: float(os.getenv("QABANK_GRADING_THRESHOLD", "0.5"))
    )
    snapshot_path: Optional[str] = field(default_factory=lambda: os.getenv("QABANK_SNAPSHOT_PATH") or None)
    history_db: Optional[str] = field(default_factory=lambda: os.getenv("QABANK_HISTORY_DB") or None)
    log_level: str = field(default_factory=lambda: os.getenv("QABANK_LOG_LEVEL", "INFO"))


def get_engine_config() -> EngineConfig:
    return EngineConfig()


__all__ = ["EngineConfig", "get_engine_config"]
