"""Library utilities: books, covers, progress, bookmarks, prefs, fonts and the dictionary."""

from __future__ import annotations

import copy
import logging
import uuid
from pathlib import Path
from typing import List, Optional, Tuple

from ebooklib import epub

from thinkread.config import Settings, get_settings
from thinkread.covers import delete_cover, extract_cover_with_timeout, save_cover
from thinkread.dictionary import DictionaryStore
from thinkread.errors import (
    BookmarkNotFoundError,
    BookNotFoundError,
    InvalidDataError,
    UnsupportedBookError,
)
from thinkread.fonts import FontManager
from thinkread.models import (
    Book,
    BookmarkRecord,
    LibraryState,
    ProgressSnapshot,
    StateSnapshot,
    now_ms,
)
from thinkread.storage import PathLocks, StateStore
from thinkread.sync import BookmarkPolicy, merge_progress
from thinkread.utils import generate_id, sanitize_filename

logger = logging.getLogger(__name__)


ALLOWED_SUFFIXES = {".epub"}
SORT_ORDERS = ("upload", "alphabetical", "lastOpened")

DEFAULT_PREFS = {
    "fontFamily": "serif",
    "fontSize": 18,
    "lineHeight": 1.6,
    "verticalMargin": 30,
    "horizontalMargin": 46,
    "themeMode": "pure-white",
    "colors": {
        "pure-white": {"bg": "#ffffff", "fg": "#1a1a1a"},
        "white": {"bg": "#ffebbd", "fg": "#35160a"},
        "dark": {"bg": "rgb(54, 37, 21)", "fg": "#ffebbd"},
        "pure-black": {"bg": "#000000", "fg": "#ffffff"},
        "eink": {"bg": "#ffffff", "fg": "#1a1a1a"},
    },
    "sortBy": "upload",
    "twoPageLayout": False,
}


def _title_author_from_filename(file_name: str) -> Tuple[str, Optional[str]]:
    """Best-effort title/author extraction from `Author - Title.ext` filenames."""
    stem = Path(file_name).stem
    if " - " in stem:
        author, title = stem.split(" - ", 1)
        return title.strip() or stem, author.strip() or None
    return stem, None


def _first_dc(book: epub.EpubBook, name: str) -> Optional[str]:
    values = book.get_metadata("DC", name)
    if values and values[0] and values[0][0]:
        return str(values[0][0]).strip() or None
    return None


def read_epub_metadata(book_path: Path, original_name: str) -> Tuple[str, Optional[str]]:
    """Title and author from the EPUB's Dublin Core metadata, else from the file name."""
    fallback_title, fallback_author = _title_author_from_filename(original_name)
    try:
        book = epub.read_epub(str(book_path), options={"ignore_ncx": True})
    except Exception as exc:
        logger.info("Could not read metadata from %s: %s", original_name, exc)
        return fallback_title, fallback_author
    return (
        _first_dc(book, "title") or fallback_title,
        _first_dc(book, "creator") or fallback_author,
    )


class Library:
    """Books on disk plus the shared state document for one data directory."""

    def __init__(self, settings: Optional[Settings] = None, locks: Optional[PathLocks] = None):
        self.settings = settings or get_settings()
        self.locks = locks or PathLocks()
        self.store = StateStore(
            self.settings.state_path,
            locks=self.locks,
            retries=self.settings.lock_retries,
            retry_delay=self.settings.lock_retry_delay,
        )
        self.fonts = FontManager(self.settings.fonts_dir)
        self.dictionary = DictionaryStore(
            self.settings.dictionary_path,
            locks=self.locks,
            retries=self.settings.lock_retries,
            retry_delay=self.settings.lock_retry_delay,
        )

    @property
    def books_dir(self) -> Path:
        return self.settings.books_dir

    @property
    def covers_dir(self) -> Path:
        return self.settings.covers_dir

    def _ensure_dirs(self) -> None:
        for path in (self.settings.data_dir, self.books_dir, self.covers_dir):
            path.mkdir(parents=True, exist_ok=True)

    # --- Books ---

    def add_book(self, source: Path | str | bytes, original_name: Optional[str] = None) -> Book:
        """Store an EPUB, extract its metadata and cover, and record it.

        A missing or broken cover never fails the upload.
        """
        if isinstance(source, (bytes, bytearray)):
            data = bytes(source)
            original_name = original_name or "book.epub"
        else:
            source = Path(source)
            data = source.read_bytes()
            original_name = original_name or source.name

        suffix = Path(original_name).suffix.lower()
        if suffix not in ALLOWED_SUFFIXES:
            raise UnsupportedBookError(f"Unsupported book format: {original_name}")

        self._ensure_dirs()
        book_id = generate_id(12)
        stored_name = f"{sanitize_filename(Path(original_name).stem)}-{generate_id(10)}{suffix}"
        book_path = self.books_dir / stored_name
        book_path.write_bytes(data)

        title, author = read_epub_metadata(book_path, original_name)

        cover_image = None
        asset = extract_cover_with_timeout(data, self.settings.cover_timeout)
        if asset is not None:
            try:
                cover_image = save_cover(asset, self.covers_dir, book_id)
                logger.info("Extracted cover for book %s (%s)", book_id, asset.filename)
            except OSError as exc:
                logger.warning("Could not save cover for book %s: %s", book_id, exc)
        else:
            logger.info("No cover found for book %s", book_id)

        book = Book(
            id=book_id,
            title=title,
            author=author,
            original_name=original_name,
            stored_name=stored_name,
            size_bytes=len(data),
            cover_image=cover_image,
            added_at=now_ms(),
        )

        def _add(state: LibraryState) -> None:
            state.books.append(book)

        try:
            self.store.update(_add)
        except Exception:
            book_path.unlink(missing_ok=True)
            delete_cover(self.covers_dir, cover_image)
            raise
        return book

    def list_books(self, sort: str = "upload") -> List[Book]:
        state = self.store.load()
        books = list(state.books)
        if sort == "alphabetical":
            books.sort(key=lambda b: b.title.lower())
        elif sort == "lastOpened":
            def _last_opened(b: Book) -> int:
                progress = state.progress.get(b.id)
                return progress.updated_at if progress else 0

            books.sort(key=_last_opened, reverse=True)
        else:
            books.sort(key=lambda b: b.added_at)
        return books

    def get_book(self, book_id: str) -> Book:
        book = self.store.load().find_book(book_id)
        if book is None:
            raise BookNotFoundError(book_id)
        return book

    def book_path(self, book_id: str) -> Path:
        return self.books_dir / self.get_book(book_id).stored_name

    def cover_path(self, book_id: str) -> Optional[Path]:
        book = self.get_book(book_id)
        if not book.cover_image:
            return None
        path = self.covers_dir / book.cover_image
        return path if path.exists() else None

    def delete_book(self, book_id: str) -> Book:
        """Remove a book with its file, cover, progress and bookmarks."""
        removed: List[Book] = []

        def _delete(state: LibraryState) -> None:
            book = state.find_book(book_id)
            if book is None:
                raise BookNotFoundError(book_id)
            removed.append(book)
            state.books = [b for b in state.books if b.id != book_id]
            state.progress.pop(book_id, None)
            state.bookmarks = [b for b in state.bookmarks if b.book_id != book_id]

        self.store.update(_delete)
        book = removed[0]
        (self.books_dir / book.stored_name).unlink(missing_ok=True)
        delete_cover(self.covers_dir, book.cover_image)
        logger.info("Deleted book %s (%s)", book.id, book.title)
        return book

    # --- Progress ---

    def get_progress(self, book_id: str) -> Optional[ProgressSnapshot]:
        return self.store.load().progress.get(book_id)

    def save_progress(
        self,
        book_id: str,
        cfi: Optional[str],
        percent: float = 0.0,
        updated_at: Optional[int] = None,
    ) -> ProgressSnapshot:
        """Record a reading position unless a newer one is already stored.

        Returns whichever snapshot is stored afterwards.
        """
        incoming = ProgressSnapshot(
            book_id=book_id,
            cfi=cfi,
            percent=percent,
            updated_at=now_ms() if updated_at is None else updated_at,
        )

        def _save(state: LibraryState) -> None:
            state.progress = merge_progress({book_id: incoming}, state.progress)

        state = self.store.update(_save)
        stored = state.progress[book_id]
        if stored != incoming:
            logger.info("Ignored stale progress for %s (stored updatedAt=%s)", book_id, stored.updated_at)
        return stored

    # --- Bookmarks ---

    def list_bookmarks(self, book_id: Optional[str] = None) -> List[BookmarkRecord]:
        bookmarks = self.store.load().bookmarks
        if book_id is None:
            return list(bookmarks)
        return [b for b in bookmarks if b.book_id == book_id]

    def save_bookmark(
        self,
        book_id: str,
        cfi: str,
        text: Optional[str] = None,
        note: Optional[str] = None,
    ) -> BookmarkRecord:
        """Create a bookmark, or update the one already at (book_id, cfi)."""
        saved: List[BookmarkRecord] = []

        def _save(state: LibraryState) -> None:
            now = now_ms()
            for idx, existing in enumerate(state.bookmarks):
                if existing.book_id == book_id and existing.cfi == cfi:
                    updates = {"updated_at": now}
                    if text is not None:
                        updates["text"] = text
                    if note is not None:
                        updates["note"] = note
                    record = existing.model_copy(update=updates)
                    state.bookmarks[idx] = record
                    break
            else:
                record = BookmarkRecord(
                    id=uuid.uuid4().hex,
                    book_id=book_id,
                    cfi=cfi,
                    text=text,
                    note=note,
                    created_at=now,
                    updated_at=now,
                )
                state.bookmarks.append(record)
            saved.append(record)

        self.store.update(_save)
        return saved[0]

    def delete_bookmark(self, bookmark_id: str) -> None:
        def _delete(state: LibraryState) -> None:
            remaining = [b for b in state.bookmarks if b.id != bookmark_id]
            if len(remaining) == len(state.bookmarks):
                raise BookmarkNotFoundError(bookmark_id)
            state.bookmarks = remaining

        self.store.update(_delete)

    # --- Prefs ---

    def get_prefs(self) -> dict:
        """Stored reader prefs laid over DEFAULT_PREFS. Theme colors merge per theme."""
        stored = self.store.load().prefs
        prefs = copy.deepcopy(DEFAULT_PREFS)
        prefs.update(stored)
        colors = stored.get("colors")
        prefs["colors"] = copy.deepcopy({**DEFAULT_PREFS["colors"], **(colors if isinstance(colors, dict) else {})})
        return prefs

    def save_prefs(self, prefs: dict) -> dict:
        """Replace the stored prefs wholesale."""
        if not isinstance(prefs, dict):
            raise InvalidDataError("Prefs must be a JSON object")

        def _save(state: LibraryState) -> None:
            state.prefs = dict(prefs)

        self.store.update(_save)
        return self.get_prefs()

    # --- Sync ---

    def sync(
        self,
        snapshot: StateSnapshot,
        policy: BookmarkPolicy = BookmarkPolicy.UPSERT,
    ) -> StateSnapshot:
        return self.store.sync(snapshot, policy)
