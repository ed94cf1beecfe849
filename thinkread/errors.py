"""Exceptions raised by the library and storage layers."""


class ThinkReadError(Exception):
    """Base class for errors surfaced to callers."""


class LockAcquisitionError(ThinkReadError):
    """A writer could not take the storage lock within its retry budget."""

    def __init__(self, path, attempts: int):
        super().__init__(f"Could not lock {path} after {attempts} attempts")
        self.path = path
        self.attempts = attempts


class BookNotFoundError(ThinkReadError):
    def __init__(self, book_id: str):
        super().__init__(f"Book not found: {book_id}")
        self.book_id = book_id


class BookmarkNotFoundError(ThinkReadError):
    def __init__(self, bookmark_id: str):
        super().__init__(f"Bookmark not found: {bookmark_id}")
        self.bookmark_id = bookmark_id


class UnsupportedBookError(ThinkReadError):
    """Uploaded file is not an EPUB."""


class InvalidDataError(ThinkReadError):
    """Caller-supplied or on-disk data has the wrong shape."""


class UnsupportedFontError(ThinkReadError):
    """Uploaded file is not a ttf, otf, woff or woff2 font."""


class FontNotFoundError(ThinkReadError):
    def __init__(self, filename: str):
        super().__init__(f"Font not found: {filename}")
        self.filename = filename
