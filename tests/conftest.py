import io
import zipfile

import pytest

from thinkread.config import Settings
from thinkread.library import Library
from thinkread.storage import PathLocks

JPEG_BYTES = b"\xff\xd8\xff\xe0" + b"fake-jpeg-cover" + b"\xff\xd9"
PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"fake-png-cover"

CONTAINER_XML = """<?xml version="1.0" encoding="UTF-8"?>
<container version="1.0" xmlns="urn:oasis:names:tc:opendocument:xmlns:container">
  <rootfiles>
    <rootfile full-path="{opf_path}" media-type="application/oebps-package+xml"/>
  </rootfiles>
</container>
"""

OPF_TEMPLATE = """<?xml version="1.0" encoding="UTF-8"?>
<package xmlns="http://www.idpf.org/2007/opf" version="{version}" unique-identifier="uid">
  <metadata xmlns:dc="http://purl.org/dc/elements/1.1/">
    <dc:identifier id="uid">urn:uuid:1234</dc:identifier>
    <dc:title>{title}</dc:title>
    <dc:creator>Jane Austen</dc:creator>
    <dc:language>en</dc:language>
    {meta}
  </metadata>
  <manifest>
    {items}
  </manifest>
  <spine>
    <itemref idref="chapter1"/>
  </spine>
</package>
"""

CHAPTER_ITEM = '<item id="chapter1" href="text/chapter1.xhtml" media-type="application/xhtml+xml"/>'


def make_opf(items, meta="", title="Pride and Prejudice", version="2.0"):
    return OPF_TEMPLATE.format(
        version=version,
        title=title,
        meta=meta,
        items="\n    ".join([CHAPTER_ITEM, *items]),
    )


def make_epub(files, opf_path="OEBPS/content.opf", opf=None, container=True):
    """Build EPUB bytes in memory. `files` maps archive paths to bytes."""
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        zf.writestr("mimetype", "application/epub+zip", compress_type=zipfile.ZIP_STORED)
        if container:
            zf.writestr("META-INF/container.xml", CONTAINER_XML.format(opf_path=opf_path))
        if opf is not None:
            zf.writestr(opf_path, opf)
        for name, data in files.items():
            zf.writestr(name, data)
    return buf.getvalue()


@pytest.fixture
def sample_epub():
    """EPUB whose OPF declares its cover with <meta name="cover">."""
    opf = make_opf(
        ['<item id="cover-img" href="images/cover.jpg" media-type="image/jpeg"/>'],
        meta='<meta name="cover" content="cover-img"/>',
    )
    return make_epub(
        {
            "OEBPS/images/cover.jpg": JPEG_BYTES,
            "OEBPS/text/chapter1.xhtml": "<html><body><p>It is a truth</p></body></html>",
        },
        opf=opf,
    )


@pytest.fixture
def settings(tmp_path):
    data_dir = tmp_path / "data"
    return Settings(
        data_dir=data_dir,
        books_dir=data_dir / "books",
        cover_timeout=5.0,
        lock_retries=3,
        lock_retry_delay=0.01,
    )


@pytest.fixture
def library(settings):
    return Library(settings, locks=PathLocks())
