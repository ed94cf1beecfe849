"""Small helpers shared by the library and font stores."""

import re
import secrets
import string

_ID_ALPHABET = string.digits + string.ascii_letters


def generate_id(length: int = 12) -> str:
    return "".join(secrets.choice(_ID_ALPHABET) for _ in range(length))


def sanitize_filename(name: str, fallback: str = "book") -> str:
    cleaned = re.sub(r"[^a-z0-9.-]", "_", name, flags=re.IGNORECASE)
    return re.sub(r"_+", "_", cleaned) or fallback
