from __future__ import annotations

import html
import io
import logging
import mimetypes
import multiprocessing
import posixpath
import re
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Tuple
from urllib.parse import unquote
from xml.etree import ElementTree as ET

from thinkread.config import get_settings

logger = logging.getLogger(__name__)

CONTAINER_PATH = "META-INF/container.xml"


@dataclass(frozen=True)
class ManifestEntry:
    id: str
    href: str
    media_type: str = ""
    properties: str = ""

    @property
    def is_cover_image(self) -> bool:
        return "cover-image" in self.properties.split()

    @property
    def is_image(self) -> bool:
        return self.media_type.lower().startswith("image/")


@dataclass(frozen=True)
class CoverAsset:
    filename: str
    data: bytes
    mime_type: str
    extension: str


# --- Helpers ---

def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def guess_extension(media_type: Optional[str]) -> str:
    """Three-letter file suffix for a cover media type. Defaults to jpg."""
    mt = (media_type or "").split(";")[0].strip().lower()
    if "jpeg" in mt or "jpg" in mt:
        return "jpg"
    if "png" in mt:
        return "png"
    return "jpg"


def resolve_href(opf_dir: str, href: str) -> str:
    """Resolve a manifest href to an archive path.

    Hrefs are relative to the OPF directory; a leading slash means the archive root.
    """
    href = unquote(href.split("#", 1)[0])
    if href.startswith("/"):
        path = href.lstrip("/")
    elif opf_dir:
        path = posixpath.join(opf_dir, href)
    else:
        path = href
    path = posixpath.normpath(path)
    return "" if path == "." else path


# --- OPF location ---

def _opf_from_container(zf: zipfile.ZipFile) -> Optional[str]:
    try:
        container_xml = zf.read(CONTAINER_PATH)
    except KeyError:
        return None

    try:
        croot = ET.fromstring(container_xml)
    except ET.ParseError:
        logger.info("Unparseable %s, scanning archive for OPF", CONTAINER_PATH)
        return None

    # container.xml namespaces vary, so match on local name only
    for elem in croot.iter():
        if _local_name(elem.tag) != "rootfile":
            continue
        full_path = elem.attrib.get("full-path") or ""
        if full_path.lower().endswith(".opf"):
            return full_path
    return None


def locate_opf(zf: zipfile.ZipFile) -> Optional[str]:
    """Find the package document: container.xml first, then any *.opf entry."""
    names = zf.namelist()
    opf_path = _opf_from_container(zf)
    if opf_path and opf_path in names:
        return opf_path

    for name in names:
        if name.lower().endswith(".opf"):
            return name
    return None


# --- OPF parsing ---

_TAG_RE_TEMPLATE = r"<(?:[\w.-]+:)?{tag}\b([^>]*)>"
_ATTR_RE = re.compile(r"""([\w:.-]+)\s*=\s*(?:"([^"]*)"|'([^']*)')""")
_ITEM_RE = re.compile(_TAG_RE_TEMPLATE.format(tag="item"), re.IGNORECASE)
_META_RE = re.compile(_TAG_RE_TEMPLATE.format(tag="meta"), re.IGNORECASE)


def _scan_attrs(raw: str) -> dict[str, str]:
    attrs: dict[str, str] = {}
    for match in _ATTR_RE.finditer(raw):
        name = match.group(1).rsplit(":", 1)[-1].lower()
        value = match.group(2) if match.group(2) is not None else match.group(3)
        attrs.setdefault(name, html.unescape(value))
    return attrs


def _entry_from_attrs(attrs: dict[str, str]) -> Optional[ManifestEntry]:
    item_id = (attrs.get("id") or "").strip()
    href = (attrs.get("href") or "").strip()
    if not item_id or not href:
        return None
    return ManifestEntry(
        id=item_id,
        href=href,
        media_type=(attrs.get("media-type") or "").strip(),
        properties=(attrs.get("properties") or "").strip(),
    )


def _parse_opf_xml(opf: str | bytes) -> Tuple[Optional[str], List[ManifestEntry]]:
    data = opf.encode("utf-8") if isinstance(opf, str) else opf
    root = ET.fromstring(data)

    cover_id = None
    for elem in root.iter():
        if _local_name(elem.tag) == "meta" and (elem.attrib.get("name") or "").lower() == "cover":
            cover_id = (elem.attrib.get("content") or "").strip() or None
            break

    entries: List[ManifestEntry] = []
    for manifest in root.iter():
        if _local_name(manifest.tag) != "manifest":
            continue
        for elem in manifest:
            if _local_name(elem.tag) != "item":
                continue
            attrs = {_local_name(k).lower(): v for k, v in elem.attrib.items()}
            entry = _entry_from_attrs(attrs)
            if entry is not None:
                entries.append(entry)
    return cover_id, entries


def _scan_opf_text(opf_text: str) -> Tuple[Optional[str], List[ManifestEntry]]:
    """Tag scanner for OPFs that are not well-formed XML. Attribute order is free."""
    cover_id = None
    for match in _META_RE.finditer(opf_text):
        attrs = _scan_attrs(match.group(1))
        if (attrs.get("name") or "").lower() == "cover":
            cover_id = (attrs.get("content") or "").strip() or None
            break

    entries: List[ManifestEntry] = []
    for match in _ITEM_RE.finditer(opf_text):
        entry = _entry_from_attrs(_scan_attrs(match.group(1)))
        if entry is not None:
            entries.append(entry)
    return cover_id, entries


def parse_manifest(opf: str | bytes) -> Tuple[Optional[str], List[ManifestEntry]]:
    """Return (cover meta id, manifest entries) for an OPF document."""
    try:
        return _parse_opf_xml(opf)
    except ET.ParseError as exc:
        logger.info("OPF is not well-formed (%s), falling back to tag scan", exc)
        text = opf.decode("utf-8", errors="replace") if isinstance(opf, bytes) else opf
        return _scan_opf_text(text)


def resolve_cover(opf: str | bytes) -> Optional[ManifestEntry]:
    """Pick the manifest entry holding the cover image.

    Order: <meta name="cover"> reference, then the cover-image property, then the
    first image in the manifest.
    """
    cover_id, entries = parse_manifest(opf)

    if cover_id:
        for entry in entries:
            if entry.id == cover_id:
                return entry
        logger.debug("meta cover id %r has no manifest item", cover_id)

    for entry in entries:
        if entry.is_cover_image:
            return entry

    for entry in entries:
        if entry.is_image:
            return entry
    return None


# --- Extraction ---

def _lookup_entry(zf: zipfile.ZipFile, opf_dir: str, href: str) -> Optional[str]:
    names = set(zf.namelist())
    primary = resolve_href(opf_dir, href)
    if primary in names:
        return primary

    alternate = unquote(re.sub(r"^(?:\./|/)+", "", href.split("#", 1)[0]))
    if alternate in names:
        return alternate
    return None


def _extract_from_zip(zf: zipfile.ZipFile) -> Optional[CoverAsset]:
    opf_path = locate_opf(zf)
    if not opf_path:
        logger.info("No OPF package document found")
        return None

    opf_dir = posixpath.dirname(opf_path)
    entry = resolve_cover(zf.read(opf_path))
    if entry is None:
        logger.info("No cover declared in %s", opf_path)
        return None

    name = _lookup_entry(zf, opf_dir, entry.href)
    if name is None:
        logger.info("Cover href %r in %s does not exist in archive", entry.href, opf_path)
        return None

    mime_type = entry.media_type or mimetypes.guess_type(name)[0] or "image/jpeg"
    return CoverAsset(
        filename=name,
        data=zf.read(name),
        mime_type=mime_type,
        extension=guess_extension(mime_type),
    )


def extract_cover(epub_bytes: bytes) -> Optional[CoverAsset]:
    """Extract the cover image from raw EPUB bytes.

    Never raises: every failure is logged and returned as None.
    """
    try:
        with zipfile.ZipFile(io.BytesIO(epub_bytes), "r") as zf:
            return _extract_from_zip(zf)
    except zipfile.BadZipFile:
        logger.info("Input is not a ZIP archive, no cover")
        return None
    except Exception as exc:
        logger.warning("Failed extracting EPUB cover: %s", exc)
        return None


def _extract_in_child(extractor: Callable[[bytes], Optional[CoverAsset]], epub_bytes: bytes, conn) -> None:
    try:
        conn.send(extractor(epub_bytes))
    finally:
        conn.close()


def extract_cover_with_timeout(
    epub_bytes: bytes,
    timeout: Optional[float] = None,
    extractor: Callable[[bytes], Optional[CoverAsset]] = extract_cover,
) -> Optional[CoverAsset]:
    """Run `extractor` in a child process, killing it after `timeout` seconds.

    `extractor` must be a module-level function so it can be sent to the child.
    """
    if timeout is None:
        timeout = get_settings().cover_timeout

    ctx = multiprocessing.get_context()
    recv_conn, send_conn = ctx.Pipe(duplex=False)
    proc = ctx.Process(
        target=_extract_in_child,
        args=(extractor, epub_bytes, send_conn),
        name="cover-extract",
        daemon=True,
    )
    proc.start()
    send_conn.close()
    try:
        if not recv_conn.poll(max(timeout, 0.0)):
            logger.warning("Cover extraction timed out after %.1fs", timeout)
            return None
        try:
            return recv_conn.recv()
        except EOFError:
            logger.warning("Cover extraction worker exited without a result (exit code %s)", proc.exitcode)
            return None
    finally:
        recv_conn.close()
        if proc.is_alive():
            proc.terminate()
        proc.join()


# --- Persistence ---

def save_cover(asset: CoverAsset, covers_dir: Path | str, book_id: str) -> str:
    """Write the cover as `<book_id>.<ext>` and return that filename."""
    covers_dir = Path(covers_dir)
    covers_dir.mkdir(parents=True, exist_ok=True)
    filename = f"{book_id}.{asset.extension}"
    (covers_dir / filename).write_bytes(asset.data)
    return filename


def delete_cover(covers_dir: Path | str, filename: Optional[str]) -> bool:
    if not filename:
        return False
    path = Path(covers_dir) / Path(filename).name
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    return True
