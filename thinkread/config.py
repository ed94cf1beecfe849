"""Application configuration utilities."""

from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
import math
import os


DEFAULT_COVER_TIMEOUT = 10.0
DEFAULT_LOCK_RETRIES = 10
DEFAULT_LOCK_RETRY_DELAY = 0.05


def get_env(name: str, default: str) -> str:
    """Read an env var, treating blank values as unset."""
    raw = os.getenv(name)
    if raw is None:
        return default
    value = raw.strip()
    return value or default


def _env_float(name: str, default: float) -> float:
    """Non-negative finite float from the environment, else `default`."""
    try:
        value = float(get_env(name, str(default)))
    except ValueError:
        return default
    if not math.isfinite(value) or value < 0:
        return default
    return value


def _env_int(name: str, default: int) -> int:
    try:
        return max(1, int(get_env(name, str(default))))
    except ValueError:
        return default


def get_data_dir() -> str:
    return get_env("THINKREAD_DATA_DIR", "./data")


@dataclass(frozen=True)
class Settings:
    data_dir: Path
    books_dir: Path
    cover_timeout: float = DEFAULT_COVER_TIMEOUT
    lock_retries: int = DEFAULT_LOCK_RETRIES
    lock_retry_delay: float = DEFAULT_LOCK_RETRY_DELAY

    @property
    def covers_dir(self) -> Path:
        return self.data_dir / "covers"

    @property
    def fonts_dir(self) -> Path:
        return self.data_dir / "fonts"

    @property
    def state_path(self) -> Path:
        return self.data_dir / "state.json"

    @property
    def dictionary_path(self) -> Path:
        return self.data_dir / "dictionary.json"


def build_settings(data_dir: Path | str | None = None) -> Settings:
    """Build settings from the environment, optionally overriding the data dir."""
    root = Path(data_dir or get_data_dir()).expanduser()
    books_dir = get_env("THINKREAD_BOOKS_DIR", "")
    return Settings(
        data_dir=root,
        books_dir=Path(books_dir).expanduser() if books_dir else root / "books",
        cover_timeout=_env_float("THINKREAD_COVER_TIMEOUT", DEFAULT_COVER_TIMEOUT),
        lock_retries=_env_int("THINKREAD_LOCK_RETRIES", DEFAULT_LOCK_RETRIES),
        lock_retry_delay=_env_float("THINKREAD_LOCK_RETRY_DELAY", DEFAULT_LOCK_RETRY_DELAY),
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return build_settings()
