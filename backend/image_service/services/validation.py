"""Upload validation: byte-level format sniffing and filename sanitizing.

Declared MIME types and file extensions come from the client and are not
trusted. A buffer is accepted only when Pillow identifies it as an
allow-listed format AND its leading bytes carry that format's signature.
"""
import io
import re
from typing import Iterable, Optional

from PIL import Image, UnidentifiedImageError

# Leading-byte signatures per MIME type
MAGIC_BYTES: dict[str, tuple[bytes, ...]] = {
    "image/jpeg": (b"\xff\xd8\xff",),
    "image/png": (b"\x89PNG\r\n\x1a\n",),
    "image/webp": (b"RIFF",),
    "image/gif": (b"GIF8",),
}

_EXTENSIONS = {
    "jpeg": "jpg",
    "png": "png",
    "webp": "webp",
    "gif": "gif",
}

# Pillow names a JPEG carrying an MPF (multi-picture) segment "MPO"
_FORMAT_ALIASES = {"MPO": "JPEG"}

_UNSAFE_FILENAME_CHARS = re.compile(r"[^a-zA-Z0-9._-]")


def _sniff_mime(data: bytes) -> Optional[str]:
    """Ask Pillow what the header says. Reads the header only, never decodes pixels."""
    try:
        with Image.open(io.BytesIO(data)) as img:
            fmt = img.format or ""
            return Image.MIME.get(_FORMAT_ALIASES.get(fmt, fmt))
    except (UnidentifiedImageError, OSError, ValueError, SyntaxError, Image.DecompressionBombError):
        return None


def matches_signature(data: bytes, content_type: str) -> bool:
    """True if ``data`` starts with one of the registered signatures for ``content_type``."""
    signatures = MAGIC_BYTES.get(content_type)
    if not signatures:
        return False
    return any(data.startswith(sig) for sig in signatures)


def sniff_content_type(data: bytes, allowed_types: Iterable[str]) -> Optional[str]:
    """Return the true content type of ``data`` if it is a supported image, else None."""
    if not data:
        return None
    mime = _sniff_mime(data)
    if mime is None or mime not in set(allowed_types):
        return None
    if not matches_signature(data, mime):
        return None
    return mime


def sanitize_filename(filename: str) -> str:
    return _UNSAFE_FILENAME_CHARS.sub("_", filename)


def extension_for(format_or_mime: str) -> str:
    """File extension for an output format ("jpeg") or MIME type ("image/jpeg")."""
    key = format_or_mime.lower().removeprefix("image/")
    return _EXTENSIONS.get(key, "jpg")


def content_type_for_path(path: str) -> str:
    """MIME type for an artifact path, judged by the extension this service gave it."""
    ext = path.rsplit(".", 1)[-1].lower()
    for fmt, known_ext in _EXTENSIONS.items():
        if ext == known_ext:
            return f"image/{fmt}"
    return "application/octet-stream"
