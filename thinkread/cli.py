from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Optional

import click

from thinkread.config import build_settings
from thinkread.covers import extract_cover_with_timeout
from thinkread.errors import ThinkReadError
from thinkread.library import SORT_ORDERS, Library
from thinkread.models import StateSnapshot
from thinkread.sync import BookmarkPolicy


def _library(ctx: click.Context) -> Library:
    return ctx.obj["library"]


@click.group()
@click.option(
    "--data-dir",
    type=click.Path(file_okay=False),
    default=None,
    help="Data directory holding books/, covers/, fonts/ and state.json. Defaults to $THINKREAD_DATA_DIR.",
)
@click.option("-v", "--verbose", count=True, help="Log more (-v info, -vv debug).")
@click.pass_context
def cli(ctx: click.Context, data_dir: Optional[str], verbose: int) -> None:
    """ThinkRead library tools."""
    levels = [logging.WARNING, logging.INFO, logging.DEBUG]
    logging.basicConfig(
        level=levels[min(verbose, len(levels) - 1)],
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["settings"] = settings = build_settings(data_dir)
    ctx.obj["library"] = Library(settings)


@cli.command()
@click.argument("epub_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--out",
    "out_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Write the cover here. Defaults to <epub stem>.<ext> next to the EPUB.",
)
@click.pass_context
def cover(ctx: click.Context, epub_path: Path, out_path: Optional[Path]) -> None:
    """Extract the cover image of EPUB_PATH."""
    asset = extract_cover_with_timeout(epub_path.read_bytes(), ctx.obj["settings"].cover_timeout)
    if asset is None:
        click.echo(f"No cover found in {epub_path.name}")
        ctx.exit(1)

    out_file = out_path or epub_path.with_suffix(f".{asset.extension}")
    out_file.write_bytes(asset.data)
    click.echo(f"Saved {asset.mime_type} cover ({asset.filename}) to {out_file}")


@cli.command()
@click.argument("epub_paths", nargs=-1, required=True, type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_context
def add(ctx: click.Context, epub_paths: tuple[Path, ...]) -> None:
    """Add one or more EPUB files to the library."""
    library = _library(ctx)
    for path in epub_paths:
        try:
            book = library.add_book(path)
        except ThinkReadError as exc:
            raise click.ClickException(str(exc)) from exc
        cover_note = "with cover" if book.cover_image else "no cover"
        click.echo(f"{book.id}  {book.title} ({cover_note})")


@cli.command()
@click.option("--sort", type=click.Choice(SORT_ORDERS), default="upload", show_default=True)
@click.pass_context
def books(ctx: click.Context, sort: str) -> None:
    """List books in the library."""
    items = _library(ctx).list_books(sort=sort)
    if not items:
        click.echo("Library is empty")
        return
    for book in items:
        author = f" by {book.author}" if book.author else ""
        click.echo(f"{book.id}  {book.title}{author}")


@cli.command()
@click.argument("book_id")
@click.pass_context
def remove(ctx: click.Context, book_id: str) -> None:
    """Delete a book together with its cover, progress and bookmarks."""
    try:
        book = _library(ctx).delete_book(book_id)
    except ThinkReadError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Removed {book.title}")


@cli.command()
@click.argument("book_id")
@click.option("--cfi", default=None, help="Record this location instead of printing the stored one.")
@click.option("--percent", type=click.FloatRange(0.0, 1.0), default=0.0, show_default=True)
@click.pass_context
def progress(ctx: click.Context, book_id: str, cfi: Optional[str], percent: float) -> None:
    """Show or record reading progress for BOOK_ID."""
    library = _library(ctx)
    if cfi is not None:
        snapshot = library.save_progress(book_id, cfi, percent)
    else:
        snapshot = library.get_progress(book_id)
    if snapshot is None:
        click.echo(f"No progress stored for {book_id}")
        return
    click.echo(json.dumps(snapshot.to_json(), indent=2))


@cli.command()
@click.argument("snapshot_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--policy",
    type=click.Choice([p.value for p in BookmarkPolicy]),
    default=BookmarkPolicy.UPSERT.value,
    show_default=True,
    help="How bookmark lists are merged.",
)
@click.pass_context
def sync(ctx: click.Context, snapshot_path: Path, policy: str) -> None:
    """Merge a client snapshot (JSON) into the stored state and print the result."""
    try:
        snapshot = StateSnapshot.model_validate(json.loads(snapshot_path.read_text(encoding="utf-8")))
    except ValueError as exc:
        raise click.ClickException(f"Invalid snapshot: {exc}") from exc

    try:
        merged = _library(ctx).sync(snapshot, BookmarkPolicy(policy))
    except ThinkReadError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(json.dumps(merged.to_json(), indent=2))


@cli.command()
@click.option("--set", "updates", multiple=True, metavar="KEY=JSON", help="Update one pref, e.g. fontSize=20.")
@click.option("--reset", is_flag=True, help="Drop stored prefs and fall back to the defaults.")
@click.pass_context
def prefs(ctx: click.Context, updates: tuple[str, ...], reset: bool) -> None:
    """Show or change reader preferences."""
    library = _library(ctx)
    if reset or updates:
        stored = {} if reset else dict(library.store.load().prefs)
        for item in updates:
            key, sep, raw = item.partition("=")
            if not sep or not key:
                raise click.BadParameter(f"expected KEY=JSON, got {item!r}", param_hint="--set")
            try:
                stored[key] = json.loads(raw)
            except ValueError:
                stored[key] = raw
        result = library.save_prefs(stored)
    else:
        result = library.get_prefs()
    click.echo(json.dumps(result, indent=2))


@cli.group()
def fonts() -> None:
    """Manage custom reader fonts."""


@fonts.command("list")
@click.pass_context
def fonts_list(ctx: click.Context) -> None:
    items = _library(ctx).fonts.list_fonts()
    if not items:
        click.echo("No custom fonts")
        return
    for font in items:
        click.echo(f"{font.filename}  {font.font_family} ({font.format})")


@fonts.command("add")
@click.argument("font_paths", nargs=-1, required=True, type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_context
def fonts_add(ctx: click.Context, font_paths: tuple[Path, ...]) -> None:
    manager = _library(ctx).fonts
    for path in font_paths:
        try:
            font = manager.add_font(path)
        except ThinkReadError as exc:
            raise click.ClickException(str(exc)) from exc
        click.echo(f"{font.filename}  {font.font_family}")


@fonts.command("remove")
@click.argument("filename")
@click.pass_context
def fonts_remove(ctx: click.Context, filename: str) -> None:
    if not _library(ctx).fonts.delete_font(filename):
        raise click.ClickException(f"Font not found: {filename}")
    click.echo(f"Removed {filename}")


@cli.group()
def dictionary() -> None:
    """Manage the offline dictionary."""


@dictionary.command("status")
@click.pass_context
def dictionary_status(ctx: click.Context) -> None:
    click.echo(json.dumps(_library(ctx).dictionary.status()))


@dictionary.command("import")
@click.argument("json_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_context
def dictionary_import(ctx: click.Context, json_path: Path) -> None:
    """Replace the dictionary with the JSON object in JSON_PATH."""
    try:
        entries = json.loads(json_path.read_text(encoding="utf-8"))
        status = _library(ctx).dictionary.save(entries)
    except ValueError as exc:
        raise click.ClickException(f"Invalid dictionary: {exc}") from exc
    except ThinkReadError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Saved {status['wordCount']} words")


@dictionary.command("remove")
@click.pass_context
def dictionary_remove(ctx: click.Context) -> None:
    try:
        removed = _library(ctx).dictionary.delete()
    except ThinkReadError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo("Dictionary removed" if removed else "No dictionary stored")


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
