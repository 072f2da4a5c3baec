"""MIME type classification and size formatting."""
import math

from clouddrive.schemas.file import FileKind

_CODE_SUBTYPES = (
    "javascript", "typescript", "x-python", "x-sh", "x-c", "x-java",
    "x-go", "x-rust", "x-ruby", "x-php", "x-yaml", "yaml", "toml", "sql",
)
_DOCUMENT_MARKERS = (
    "msword", "wordprocessingml", "opendocument.text", "rtf",
    "spreadsheetml", "ms-excel", "opendocument.spreadsheet",
)
_PRESENTATION_MARKERS = ("presentationml", "ms-powerpoint", "opendocument.presentation")
_SIZE_UNITS = ["B", "KB", "MB", "GB", "TB"]


def get_file_kind(mime_type: str) -> FileKind:
    """Derive the file kind from a MIME type. Computed once at upload."""
    mime = (mime_type or "").lower()
    if mime.startswith("image/"):
        return FileKind.IMAGE
    if mime.startswith("video/"):
        return FileKind.VIDEO
    if mime.startswith("audio/"):
        return FileKind.AUDIO
    if mime == "application/pdf":
        return FileKind.PDF
    if any(marker in mime for marker in _PRESENTATION_MARKERS):
        return FileKind.PRESENTATION
    if any(marker in mime for marker in _DOCUMENT_MARKERS):
        return FileKind.DOCUMENT
    if any(sub in mime for sub in _CODE_SUBTYPES):
        return FileKind.CODE
    if mime.startswith("text/") or "json" in mime or "xml" in mime:
        return FileKind.TEXT
    return FileKind.UNKNOWN


def is_text_like(mime_type: str) -> bool:
    """True when the bytes can be decoded and kept as ``content``."""
    return get_file_kind(mime_type) in (FileKind.TEXT, FileKind.CODE)


def extract_text(data: bytes, mime_type: str, limit: int) -> str | None:
    """Decode text content for AI context, capped at ``limit`` characters."""
    if not is_text_like(mime_type):
        return None
    # Decode a bounded prefix; utf-8 needs at most 4 bytes per character.
    text = data[: limit * 4].decode("utf-8", errors="replace")
    return text[:limit]


def format_size(size_bytes: int) -> str:
    """Human-readable size, e.g. ``1.5 KB``."""
    if size_bytes <= 0:
        return "0 B"
    i = 0
    while i < len(_SIZE_UNITS) - 1 and size_bytes >= math.pow(1024, i + 1):
        i += 1
    value = round(size_bytes / math.pow(1024, i), 1)
    if value == int(value):
        return f"{int(value)} {_SIZE_UNITS[i]}"
    return f"{value} {_SIZE_UNITS[i]}"
