"""JSON state file with atomic replace and per-path writer serialisation."""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, Optional

from pydantic import ValidationError

from thinkread.config import DEFAULT_LOCK_RETRIES, DEFAULT_LOCK_RETRY_DELAY
from thinkread.errors import LockAcquisitionError
from thinkread.models import (
    Book,
    BookmarkRecord,
    LibraryState,
    ProgressSnapshot,
    StateSnapshot,
)
from thinkread.sync import BookmarkPolicy, merge_bookmarks, merge_progress, reconcile

logger = logging.getLogger(__name__)


class PathLocks:
    """Registry of one lock per storage path.

    Share one instance between every store that may write the same file.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}

    def lock_for(self, path: Path | str) -> threading.Lock:
        key = str(Path(path).resolve())
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    @contextmanager
    def acquire(
        self,
        path: Path | str,
        retries: int = DEFAULT_LOCK_RETRIES,
        delay: float = DEFAULT_LOCK_RETRY_DELAY,
    ) -> Iterator[None]:
        """Hold the lock for `path`, waiting `delay * attempt` per attempt."""
        lock = self.lock_for(path)
        retries = max(1, retries)
        delay = max(0.0, delay)
        for attempt in range(1, retries + 1):
            if lock.acquire(timeout=delay * attempt):
                break
            logger.debug("Lock busy for %s (attempt %s/%s)", path, attempt, retries)
        else:
            raise LockAcquisitionError(path, retries)
        try:
            yield
        finally:
            lock.release()


def _salvage(data: Any, key: str, model, path: Path) -> list:
    """Validate a list section item by item, dropping entries that do not fit."""
    raw = data.get(key)
    if not isinstance(raw, list):
        return []
    items = []
    for entry in raw:
        try:
            items.append(model.model_validate(entry))
        except ValidationError as exc:
            logger.warning("Dropping malformed %s entry in %s: %s", key, path, exc.errors()[:1])
    return items


_PROGRESS_FIELDS = {"bookId", "book_id", "cfi", "percent", "updatedAt", "updated_at"}


def _is_per_user_progress(raw: Dict[str, Any]) -> bool:
    """True for the older `progress[userId][bookId]` layout."""
    if not raw:
        return False
    for entry in raw.values():
        if not isinstance(entry, dict) or not entry or _PROGRESS_FIELDS & entry.keys():
            return False
        if not all(isinstance(inner, dict) for inner in entry.values()):
            return False
    return True


def _coerce_progress(raw: Dict[str, Any], path: Path) -> Dict[str, ProgressSnapshot]:
    progress: Dict[str, ProgressSnapshot] = {}
    for book_id, entry in raw.items():
        if isinstance(entry, dict):
            entry = {"bookId": book_id, **entry}
        try:
            progress[book_id] = ProgressSnapshot.model_validate(entry)
        except ValidationError as exc:
            logger.warning("Dropping malformed progress for %s in %s: %s", book_id, path, exc.errors()[:1])
    return progress


def coerce_state(data: Any, path: Path) -> LibraryState:
    """Build a LibraryState from decoded JSON, tolerating wrong-shaped sections."""
    if not isinstance(data, dict):
        logger.warning("State file %s is not a JSON object, starting empty", path)
        return LibraryState()

    progress: Dict[str, ProgressSnapshot] = {}
    raw_progress = data.get("progress")
    if isinstance(raw_progress, dict):
        if _is_per_user_progress(raw_progress):
            logger.warning("Flattening per-user progress in %s (%s users)", path, len(raw_progress))
            for per_book in raw_progress.values():
                progress = merge_progress(progress, _coerce_progress(per_book, path))
        else:
            progress = _coerce_progress(raw_progress, path)

    bookmarks = _salvage(data, "bookmarks", BookmarkRecord, path)
    unique = merge_bookmarks(bookmarks, [])
    if len(unique) != len(bookmarks):
        logger.warning("Collapsed %s duplicate bookmark ids in %s", len(bookmarks) - len(unique), path)

    prefs = data.get("prefs")
    extra = {k: v for k, v in data.items() if k not in {"books", "progress", "bookmarks", "prefs"}}
    return LibraryState(
        books=_salvage(data, "books", Book, path),
        progress=progress,
        bookmarks=unique,
        prefs=prefs if isinstance(prefs, dict) else {},
        **extra,
    )


def write_json_atomic(path: Path, obj: Any) -> None:
    """Replace `path` with `obj` as JSON. Readers see the old or the new file, never a mix."""
    payload = json.dumps(obj, indent=2, ensure_ascii=False)
    path.parent.mkdir(parents=True, exist_ok=True)

    # Temp file in the same directory so os.replace stays on one filesystem.
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(payload)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.remove(tmp_name)
        except FileNotFoundError:
            pass
        raise


class StateStore:
    """Read-merge-write access to one JSON state file."""

    def __init__(
        self,
        path: Path | str,
        locks: Optional[PathLocks] = None,
        retries: int = DEFAULT_LOCK_RETRIES,
        retry_delay: float = DEFAULT_LOCK_RETRY_DELAY,
    ) -> None:
        self.path = Path(path)
        self.locks = locks or PathLocks()
        self.retries = max(1, retries)
        self.retry_delay = max(0.0, retry_delay)

    @contextmanager
    def _locked(self) -> Iterator[None]:
        with self.locks.acquire(self.path, retries=self.retries, delay=self.retry_delay):
            yield

    def _read(self) -> LibraryState:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return LibraryState()

        try:
            data = json.loads(raw)
        except ValueError as exc:
            logger.warning("State file %s is not valid JSON (%s), starting empty", self.path, exc)
            return LibraryState()
        return coerce_state(data, self.path)

    def _write(self, state: LibraryState) -> None:
        write_json_atomic(self.path, state.to_json())

    def load(self) -> LibraryState:
        return self._read()

    def save(self, state: LibraryState) -> None:
        with self._locked():
            self._write(state)

    def update(self, fn: Callable[[LibraryState], Optional[LibraryState]]) -> LibraryState:
        """Apply `fn` to the current state and persist the result under the lock.

        `fn` may mutate the state in place and return None. Exceptions raised by
        `fn` abort the write.
        """
        with self._locked():
            state = self._read()
            result = fn(state)
            if result is not None:
                state = result
            self._write(state)
            return state

    def sync(
        self,
        snapshot: StateSnapshot,
        policy: BookmarkPolicy = BookmarkPolicy.UPSERT,
    ) -> StateSnapshot:
        """Reconcile a client snapshot with the persisted state and store the merge."""

        def _merge(state: LibraryState) -> None:
            merged = reconcile(snapshot, state.snapshot(), policy)
            state.progress = merged.progress
            state.bookmarks = merged.bookmarks

        state = self.update(_merge)
        logger.info(
            "Synced %s: %s progress entries, %s bookmarks",
            self.path,
            len(state.progress),
            len(state.bookmarks),
        )
        return state.snapshot()
