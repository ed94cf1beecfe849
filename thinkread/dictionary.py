"""Offline word dictionary stored as one JSON object (word -> entry)."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

from thinkread.config import DEFAULT_LOCK_RETRIES, DEFAULT_LOCK_RETRY_DELAY
from thinkread.errors import InvalidDataError
from thinkread.storage import PathLocks, write_json_atomic

logger = logging.getLogger(__name__)


class DictionaryStore:
    def __init__(
        self,
        path: Path | str,
        locks: Optional[PathLocks] = None,
        retries: int = DEFAULT_LOCK_RETRIES,
        retry_delay: float = DEFAULT_LOCK_RETRY_DELAY,
    ) -> None:
        self.path = Path(path)
        self.locks = locks or PathLocks()
        self.retries = retries
        self.retry_delay = retry_delay

    def load(self) -> Dict[str, Any]:
        """The stored dictionary, or {} when none has been saved."""
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        try:
            data = json.loads(raw)
        except ValueError as exc:
            raise InvalidDataError(f"Dictionary file {self.path} is not valid JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise InvalidDataError(f"Dictionary file {self.path} is not a JSON object")
        return data

    def status(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {"exists": False, "wordCount": 0}
        size_mb = round(self.path.stat().st_size / (1024 * 1024), 2)
        try:
            word_count = len(self.load())
        except InvalidDataError as exc:
            logger.warning("%s", exc)
            return {"exists": False, "wordCount": 0}
        return {"exists": True, "wordCount": word_count, "sizeInMB": size_mb}

    def save(self, entries: Dict[str, Any]) -> Dict[str, Any]:
        if not isinstance(entries, dict):
            raise InvalidDataError("Dictionary must be a JSON object")
        with self.locks.acquire(self.path, retries=self.retries, delay=self.retry_delay):
            write_json_atomic(self.path, entries)
        status = self.status()
        logger.info("Dictionary saved: %s words, %sMB", status["wordCount"], status.get("sizeInMB"))
        return status

    def delete(self) -> bool:
        with self.locks.acquire(self.path, retries=self.retries, delay=self.retry_delay):
            try:
                self.path.unlink()
            except FileNotFoundError:
                return False
        logger.info("Deleted dictionary %s", self.path)
        return True
