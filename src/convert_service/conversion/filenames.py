"""Filenames, content types and header filtering for converted artifacts."""

from pathlib import PurePosixPath
from typing import Mapping
from urllib.parse import quote

_UNSAFE = set('"\\/<>|:*?')

# RFC 5987 attr-char punctuation
_ATTR_SAFE = "!#$&+-.^_`|~"

CONTENT_TYPES = {
    "pdf": "application/pdf",
    "doc": "application/msword",
    "docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "odt": "application/vnd.oasis.opendocument.text",
    "rtf": "application/rtf",
    "txt": "text/plain; charset=utf-8",
    "html": "text/html; charset=utf-8",
    "xls": "application/vnd.ms-excel",
    "xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "ods": "application/vnd.oasis.opendocument.spreadsheet",
    "csv": "text/csv; charset=utf-8",
    "ppt": "application/vnd.ms-powerpoint",
    "pptx": "application/vnd.openxmlformats-officedocument.presentationml.presentation",
    "odp": "application/vnd.oasis.opendocument.presentation",
    "epub": "application/epub+zip",
    "png": "image/png",
    "jpg": "image/jpeg",
    "svg": "image/svg+xml",
}
DEFAULT_CONTENT_TYPE = "application/octet-stream"

FORWARDED_HEADERS = frozenset(
    {
        "content-type",
        "content-length",
        "location",
        "etag",
        "last-modified",
        "content-disposition",
        "cache-control",
    }
)


def content_type_for(extension: str) -> str:
    return CONTENT_TYPES.get(extension.lower().lstrip("."), DEFAULT_CONTENT_TYPE)


def sanitize_filename(name: str, max_length: int = 100) -> str:
    """Strip directories, replace control and filesystem-unsafe characters, cap the length."""
    if not name:
        return "file"
    base = PurePosixPath(name.replace("\\", "/")).name
    cleaned = "".join("_" if ord(ch) < 32 or ord(ch) == 127 or ch in _UNSAFE else ch for ch in base)
    cleaned = cleaned.strip()[:max_length]
    return cleaned or "file"


def content_disposition(original_name: str, extension: str, max_base_length: int = 100) -> str:
    """Build ``attachment; filename="..."; filename*=UTF-8''...`` for ``original_name`` with a new extension."""
    ext = extension.lstrip(".")
    base = PurePosixPath(original_name.replace("\\", "/")).name if original_name else ""
    stem = base.rsplit(".", 1)[0] if "." in base.lstrip(".") else base
    safe = sanitize_filename(stem, max_base_length)
    filename = f"{safe}.{ext}" if ext else safe
    ascii_name = "".join(ch if ord(ch) < 128 else "_" for ch in filename)
    encoded = quote(filename, safe=_ATTR_SAFE)
    return f"attachment; filename=\"{ascii_name}\"; filename*=UTF-8''{encoded}"


def filter_upstream_headers(headers: Mapping[str, str], body_length: int | None = None) -> dict[str, str]:
    """Keep only allow-listed upstream response headers.

    ``content-length`` is rewritten to ``body_length`` when given, since the
    body handed back may have been decoded by the HTTP client.
    """
    kept = {k.lower(): v for k, v in headers.items() if k.lower() in FORWARDED_HEADERS}
    if body_length is not None and "content-length" in kept:
        kept["content-length"] = str(body_length)
    return kept
