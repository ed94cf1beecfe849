import pytest

from thinkread.config import (
    DEFAULT_COVER_TIMEOUT,
    DEFAULT_LOCK_RETRIES,
    DEFAULT_LOCK_RETRY_DELAY,
    build_settings,
)
from thinkread.storage import StateStore


def test_defaults(monkeypatch, tmp_path):
    for name in ("THINKREAD_BOOKS_DIR", "THINKREAD_COVER_TIMEOUT", "THINKREAD_LOCK_RETRIES", "THINKREAD_LOCK_RETRY_DELAY"):
        monkeypatch.delenv(name, raising=False)

    settings = build_settings(tmp_path)

    assert settings.books_dir == tmp_path / "books"
    assert settings.covers_dir == tmp_path / "covers"
    assert settings.fonts_dir == tmp_path / "fonts"
    assert settings.state_path == tmp_path / "state.json"
    assert settings.cover_timeout == DEFAULT_COVER_TIMEOUT
    assert settings.lock_retries == DEFAULT_LOCK_RETRIES


@pytest.mark.parametrize("raw", ["-0.05", "nan", "inf", "soon", "   "])
def test_bad_retry_delay_falls_back_to_default(monkeypatch, tmp_path, raw):
    monkeypatch.setenv("THINKREAD_LOCK_RETRY_DELAY", raw)
    monkeypatch.setenv("THINKREAD_COVER_TIMEOUT", raw)

    settings = build_settings(tmp_path)

    assert settings.lock_retry_delay == DEFAULT_LOCK_RETRY_DELAY
    assert settings.cover_timeout == DEFAULT_COVER_TIMEOUT


def test_negative_env_delay_still_allows_writes(monkeypatch, tmp_path):
    monkeypatch.setenv("THINKREAD_LOCK_RETRY_DELAY", "-0.05")
    monkeypatch.setenv("THINKREAD_LOCK_RETRIES", "-3")
    settings = build_settings(tmp_path)
    store = StateStore(settings.state_path, retries=settings.lock_retries, retry_delay=settings.lock_retry_delay)

    state = store.update(lambda s: s.prefs.update(fontSize=20))

    assert settings.lock_retries == 1
    assert state.prefs == {"fontSize": 20}


def test_env_overrides(monkeypatch, tmp_path):
    monkeypatch.setenv("THINKREAD_BOOKS_DIR", str(tmp_path / "shelf"))
    monkeypatch.setenv("THINKREAD_COVER_TIMEOUT", "2.5")

    settings = build_settings(tmp_path / "data")

    assert settings.books_dir == tmp_path / "shelf"
    assert settings.cover_timeout == 2.5
