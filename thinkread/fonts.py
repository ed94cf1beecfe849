"""Custom reader fonts kept as plain files in the fonts directory."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from thinkread.errors import FontNotFoundError, UnsupportedFontError
from thinkread.utils import generate_id, sanitize_filename

logger = logging.getLogger(__name__)

FONT_MEDIA_TYPES = {
    "ttf": "font/ttf",
    "otf": "font/otf",
    "woff": "font/woff",
    "woff2": "font/woff2",
}


@dataclass(frozen=True)
class FontFile:
    filename: str
    font_family: str
    format: str

    @property
    def media_type(self) -> str:
        return FONT_MEDIA_TYPES.get(self.format, "application/octet-stream")


def font_family_from_filename(filename: str) -> str:
    """`Open_Sans-Ab12Cd34Ef.ttf` -> `Open Sans`. Drops the random suffix added on upload."""
    stem = Path(filename).stem
    return re.sub(r"[-_]", " ", re.sub(r"-\w+$", "", stem))


class FontManager:
    def __init__(self, fonts_dir: Path | str):
        self.fonts_dir = Path(fonts_dir)

    def list_fonts(self) -> List[FontFile]:
        if not self.fonts_dir.is_dir():
            return []
        fonts = []
        for path in sorted(self.fonts_dir.iterdir()):
            ext = path.suffix.lower().lstrip(".")
            if not path.is_file() or ext not in FONT_MEDIA_TYPES:
                continue
            fonts.append(FontFile(filename=path.name, font_family=font_family_from_filename(path.name), format=ext))
        return fonts

    def add_font(self, source: Path | str | bytes, original_name: Optional[str] = None) -> FontFile:
        """Copy a font into the fonts dir under `<sanitized stem>-<random>.<ext>`."""
        if isinstance(source, (bytes, bytearray)):
            data = bytes(source)
            original_name = original_name or "font.ttf"
        else:
            source = Path(source)
            data = source.read_bytes()
            original_name = original_name or source.name

        ext = Path(original_name).suffix.lower().lstrip(".")
        if ext not in FONT_MEDIA_TYPES:
            raise UnsupportedFontError(f"Unsupported font format: {original_name}")

        self.fonts_dir.mkdir(parents=True, exist_ok=True)
        stem = sanitize_filename(Path(original_name).stem, fallback="font")
        filename = f"{stem}-{generate_id(10)}.{ext}"
        (self.fonts_dir / filename).write_bytes(data)
        logger.info("Stored font %s as %s", original_name, filename)
        return FontFile(filename=filename, font_family=font_family_from_filename(filename), format=ext)

    def font_path(self, filename: str) -> Path:
        # Only bare names are looked up, so "../state.json" cannot escape the dir.
        path = self.fonts_dir / Path(filename).name
        if not path.is_file():
            raise FontNotFoundError(filename)
        return path

    def delete_font(self, filename: str) -> bool:
        try:
            self.font_path(filename).unlink()
        except (FontNotFoundError, FileNotFoundError):
            return False
        logger.info("Deleted font %s", filename)
        return True
