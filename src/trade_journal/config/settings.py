from __future__ import annotations

import os
from dataclasses import dataclass

from trade_journal.config.paths import default_db_path

MEGABYTE = 1024 * 1024


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "t", "yes", "y", "on"}


def _env_float(name: str, default: float) -> float:
    raw = str(os.getenv(name, "") or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    raw = str(os.getenv(name, "") or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    app_env: str
    database_url: str
    openai_model: str
    enable_ai_mapping: bool
    ai_timeout_seconds: float
    mapping_confidence_threshold: float
    fuzzy_header_threshold: float
    format_match_threshold: float
    sample_row_count: int
    max_upload_bytes: int
    large_upload_bytes: int


def get_settings() -> Settings:
    db_default = f"sqlite:///{default_db_path().as_posix()}"
    return Settings(
        app_env=os.getenv("APP_ENV", "development"),
        database_url=os.getenv("DATABASE_URL", db_default),
        openai_model=os.getenv("OPENAI_MODEL", "gpt-5-mini"),
        enable_ai_mapping=_env_bool("ENABLE_AI_MAPPING", True),
        ai_timeout_seconds=_env_float("AI_MAPPING_TIMEOUT_SECONDS", 30.0),
        mapping_confidence_threshold=_env_float("MAPPING_CONFIDENCE_THRESHOLD", 0.7),
        fuzzy_header_threshold=_env_float("FUZZY_HEADER_THRESHOLD", 0.6),
        format_match_threshold=_env_float("FORMAT_MATCH_THRESHOLD", 0.85),
        sample_row_count=_env_int("FORMAT_SAMPLE_ROWS", 3),
        max_upload_bytes=_env_int("MAX_UPLOAD_BYTES", 100 * MEGABYTE),
        large_upload_bytes=_env_int("LARGE_UPLOAD_BYTES", 50 * MEGABYTE),
    )
