"""Persisted records: books, reading progress and bookmarks.

JSON documents use the camelCase keys written by the reader clients
(`bookId`, `updatedAt`, ...); attributes are snake_case.
"""

from __future__ import annotations

import time
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


def now_ms() -> int:
    """Current time in epoch milliseconds, the unit clients stamp records with."""
    return int(time.time() * 1000)


class _Record(BaseModel):
    # Unknown client fields (e.g. userId) survive a load/save cycle.
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    def to_json(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


class ProgressSnapshot(_Record):
    book_id: str = Field(alias="bookId")
    cfi: Optional[str] = None
    percent: float = Field(default=0.0, ge=0.0, le=1.0)
    updated_at: int = Field(default=0, alias="updatedAt")


class BookmarkRecord(_Record):
    id: str
    book_id: str = Field(alias="bookId")
    cfi: str
    text: Optional[str] = None
    note: Optional[str] = None
    created_at: int = Field(default=0, alias="createdAt")
    updated_at: int = Field(default=0, alias="updatedAt")


class Book(_Record):
    id: str
    title: str
    author: Optional[str] = None
    type: str = "epub"
    original_name: str = Field(alias="originalName")
    stored_name: str = Field(alias="storedName")
    size_bytes: int = Field(default=0, alias="sizeBytes")
    cover_image: Optional[str] = Field(default=None, alias="coverImage")
    added_at: int = Field(default=0, alias="addedAt")


class StateSnapshot(_Record):
    """Progress keyed by book id plus the bookmark list."""

    progress: Dict[str, ProgressSnapshot] = Field(default_factory=dict)
    bookmarks: List[BookmarkRecord] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _key_progress_by_book(cls, data: Any) -> Any:
        # Clients key progress by book id and may omit bookId inside each entry.
        if isinstance(data, dict) and isinstance(data.get("progress"), dict):
            data = dict(data)
            data["progress"] = {
                book_id: {"bookId": book_id, **entry} if isinstance(entry, dict) else entry
                for book_id, entry in data["progress"].items()
            }
        return data


class LibraryState(StateSnapshot):
    """The whole persisted document."""

    books: List[Book] = Field(default_factory=list)
    prefs: Dict[str, Any] = Field(default_factory=dict)

    def snapshot(self) -> StateSnapshot:
        return StateSnapshot(progress=dict(self.progress), bookmarks=list(self.bookmarks))

    def find_book(self, book_id: str) -> Optional[Book]:
        for book in self.books:
            if book.id == book_id:
                return book
        return None
