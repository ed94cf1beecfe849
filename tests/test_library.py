import pytest

from thinkread.errors import BookmarkNotFoundError, BookNotFoundError, InvalidDataError, UnsupportedBookError
from thinkread.library import DEFAULT_PREFS, _title_author_from_filename, sanitize_filename
from thinkread.models import BookmarkRecord, ProgressSnapshot, StateSnapshot

from conftest import JPEG_BYTES


def test_add_book_extracts_cover(library, sample_epub):
    book = library.add_book(sample_epub, "Pride and Prejudice.epub")

    assert book.cover_image == f"{book.id}.jpg"
    assert (library.covers_dir / book.cover_image).read_bytes() == JPEG_BYTES
    assert library.cover_path(book.id) == library.covers_dir / book.cover_image
    assert library.book_path(book.id).read_bytes() == sample_epub
    assert book.stored_name.startswith("Pride_and_Prejudice-")
    assert book.size_bytes == len(sample_epub)
    assert [b.id for b in library.list_books()] == [book.id]


def test_add_book_from_path(library, sample_epub, tmp_path):
    source = tmp_path / "Austen - Emma.epub"
    source.write_bytes(sample_epub)

    book = library.add_book(source)

    assert book.original_name == "Austen - Emma.epub"
    assert library.get_book(book.id) == book


def test_add_book_without_cover_still_succeeds(library):
    book = library.add_book(b"definitely not an epub", "Jane Austen - Persuasion.epub")

    assert book.cover_image is None
    assert book.title == "Persuasion"
    assert book.author == "Jane Austen"
    assert library.cover_path(book.id) is None


def test_add_book_rejects_other_formats(library):
    with pytest.raises(UnsupportedBookError):
        library.add_book(b"%PDF-1.7", "manual.pdf")

    assert library.list_books() == []


def test_list_books_sorting(library, sample_epub):
    first = library.add_book(b"x", "Zebra.epub")
    second = library.add_book(b"x", "apple.epub")

    assert [b.id for b in library.list_books("upload")] == [first.id, second.id]
    assert [b.id for b in library.list_books("alphabetical")] == [second.id, first.id]

    library.save_progress(first.id, "epubcfi(/6/2)", updated_at=200)
    library.save_progress(second.id, "epubcfi(/6/2)", updated_at=100)
    assert [b.id for b in library.list_books("lastOpened")] == [first.id, second.id]


def test_delete_book_cascades(library, sample_epub):
    book = library.add_book(sample_epub, "Emma.epub")
    other = library.add_book(b"x", "Other.epub")
    library.save_progress(book.id, "epubcfi(/6/4)", 0.5)
    library.save_progress(other.id, "epubcfi(/6/8)", 0.1)
    library.save_bookmark(book.id, "epubcfi(/6/4)", text="Chapter 1")
    kept = library.save_bookmark(other.id, "epubcfi(/6/8)")
    cover_file = library.covers_dir / book.cover_image
    book_file = library.book_path(book.id)

    library.delete_book(book.id)

    assert not cover_file.exists()
    assert not book_file.exists()
    assert library.get_progress(book.id) is None
    assert library.get_progress(other.id) is not None
    assert library.list_bookmarks() == [kept]
    with pytest.raises(BookNotFoundError):
        library.get_book(book.id)


def test_delete_unknown_book(library):
    with pytest.raises(BookNotFoundError):
        library.delete_book("nope")


def test_stale_progress_is_ignored(library):
    library.save_progress("b1", "epubcfi(/6/10)", 0.4, updated_at=200)

    stored = library.save_progress("b1", "epubcfi(/6/2)", 0.1, updated_at=100)

    assert stored.cfi == "epubcfi(/6/10)"
    assert library.get_progress("b1").updated_at == 200


def test_newer_progress_replaces(library):
    library.save_progress("b1", "epubcfi(/6/2)", 0.1, updated_at=100)
    library.save_progress("b1", "epubcfi(/6/10)", 0.4, updated_at=200)

    assert library.get_progress("b1").percent == 0.4


def test_save_bookmark_upserts_on_book_and_cfi(library):
    first = library.save_bookmark("b1", "epubcfi(/6/4)", text="Opening")
    again = library.save_bookmark("b1", "epubcfi(/6/4)", note="Reread this")
    elsewhere = library.save_bookmark("b2", "epubcfi(/6/4)")

    assert again.id == first.id
    assert again.text == "Opening"
    assert again.note == "Reread this"
    assert again.updated_at >= first.updated_at
    assert elsewhere.id != first.id
    assert [b.id for b in library.list_bookmarks("b1")] == [first.id]
    assert len(library.list_bookmarks()) == 2


def test_delete_bookmark(library):
    bookmark = library.save_bookmark("b1", "epubcfi(/6/4)")

    library.delete_bookmark(bookmark.id)

    assert library.list_bookmarks() == []
    with pytest.raises(BookmarkNotFoundError):
        library.delete_bookmark(bookmark.id)


def test_sync_through_library(library):
    library.save_progress("b1", "server", updated_at=50)
    snapshot = StateSnapshot(
        progress={"b1": ProgressSnapshot(book_id="b1", cfi="device", updated_at=60)},
        bookmarks=[BookmarkRecord(id="x", book_id="b1", cfi="c", updated_at=1)],
    )

    merged = library.sync(snapshot)

    assert merged.progress["b1"].cfi == "device"
    assert library.get_progress("b1").cfi == "device"
    assert [b.id for b in library.list_bookmarks()] == ["x"]


@pytest.mark.parametrize(
    "name, expected",
    [
        ("Pride and Prejudice", "Pride_and_Prejudice"),
        ("Les Misérables (vol. 1)", "Les_Mis_rables_vol._1_"),
        ("", "book"),
    ],
)
def test_sanitize_filename(name, expected):
    assert sanitize_filename(name) == expected


def test_title_author_from_filename():
    assert _title_author_from_filename("Austen - Emma.epub") == ("Emma", "Austen")
    assert _title_author_from_filename("Emma.epub") == ("Emma", None)


def test_prefs_default_when_nothing_stored(library):
    prefs = library.get_prefs()

    assert prefs == DEFAULT_PREFS
    prefs["colors"]["dark"]["bg"] = "#000"
    assert DEFAULT_PREFS["colors"]["dark"]["bg"] == "rgb(54, 37, 21)"


def test_save_prefs_overlays_defaults(library):
    library.save_prefs({"fontSize": 22, "colors": {"dark": {"bg": "#111", "fg": "#eee"}}})

    prefs = library.get_prefs()

    assert prefs["fontSize"] == 22
    assert prefs["lineHeight"] == DEFAULT_PREFS["lineHeight"]
    assert prefs["colors"]["dark"] == {"bg": "#111", "fg": "#eee"}
    assert prefs["colors"]["eink"] == DEFAULT_PREFS["colors"]["eink"]
    assert library.store.load().prefs == {"fontSize": 22, "colors": {"dark": {"bg": "#111", "fg": "#eee"}}}


def test_save_prefs_replaces_previous(library):
    library.save_prefs({"fontSize": 22})
    library.save_prefs({"themeMode": "dark"})

    assert library.get_prefs()["fontSize"] == DEFAULT_PREFS["fontSize"]
    assert library.get_prefs()["themeMode"] == "dark"


def test_save_prefs_rejects_non_objects(library):
    with pytest.raises(InvalidDataError):
        library.save_prefs(["fontSize", 22])


def test_fonts_and_dictionary_live_in_data_dir(library, settings):
    font = library.fonts.add_font(b"\x00\x01\x00\x00", "Serif.ttf")
    library.dictionary.save({"ere": "before"})

    assert (settings.data_dir / "fonts" / font.filename).exists()
    assert settings.dictionary_path.exists()
    assert library.store.load().books == []
