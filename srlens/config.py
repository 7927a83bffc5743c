"""
Runtime settings for SRLens.

Values come from ``SRLENS_*`` environment variables (a ``.env`` file in the
working directory is loaded first) and fall back to the defaults below.
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

MIB = 1024 * 1024


@dataclass(frozen=True)
class Settings:
    data_dir: Path
    database_url: str
    min_chunk_size: int = 1 * MIB
    max_chunk_size: int = 128 * MIB
    default_chunk_size: int = 8 * MIB
    copy_buffer_size: int = 1 * MIB
    sample_default_rows: int = 100_000
    sample_max_rows: int = 200_000
    progress_every_rows: int = 50_000
    max_period_days: int = 30
    analysis_workers: int = 2
    store_retry_after: float = 1.0
    log_level: str = "INFO"

    @property
    def uploads_tmp_dir(self) -> Path:
        return self.data_dir / "uploads" / "tmp"

    @property
    def files_dir(self) -> Path:
        return self.data_dir / "uploads" / "files"


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from exc


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got {raw!r}") from exc


def build_settings(data_dir: Path, database_url: Optional[str] = None, **overrides) -> Settings:
    """Settings rooted at ``data_dir``; used by tests and embedding callers."""
    data_dir = Path(data_dir)
    url = database_url or f"sqlite:///{data_dir / 'srlens.db'}"
    return Settings(data_dir=data_dir, database_url=url, **overrides)


def load_settings(env_file: Optional[str] = None) -> Settings:
    load_dotenv(env_file)

    data_dir = Path(os.getenv("SRLENS_DATA_DIR", "data"))
    return build_settings(
        data_dir,
        database_url=os.getenv("SRLENS_DATABASE_URL") or None,
        min_chunk_size=_env_int("SRLENS_MIN_CHUNK_SIZE", 1 * MIB),
        max_chunk_size=_env_int("SRLENS_MAX_CHUNK_SIZE", 128 * MIB),
        default_chunk_size=_env_int("SRLENS_DEFAULT_CHUNK_SIZE", 8 * MIB),
        copy_buffer_size=_env_int("SRLENS_COPY_BUFFER_SIZE", 1 * MIB),
        sample_default_rows=_env_int("SRLENS_SAMPLE_DEFAULT_ROWS", 100_000),
        sample_max_rows=_env_int("SRLENS_SAMPLE_MAX_ROWS", 200_000),
        progress_every_rows=_env_int("SRLENS_PROGRESS_EVERY_ROWS", 50_000),
        max_period_days=_env_int("SRLENS_MAX_PERIOD_DAYS", 30),
        analysis_workers=_env_int("SRLENS_ANALYSIS_WORKERS", 2),
        store_retry_after=_env_float("SRLENS_STORE_RETRY_AFTER", 1.0),
        log_level=os.getenv("SRLENS_LOG_LEVEL", "INFO").upper(),
    )
