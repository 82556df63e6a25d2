"""Source classification: binary detection, language and MIME lookup, normalisation."""

from __future__ import annotations

import re
from pathlib import PurePosixPath

BINARY_SIZE_LIMIT = 1024 * 1024
_NON_PRINTABLE_RATIO = 0.1
_NON_PRINTABLE_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_TRAILING_WS_RE = re.compile(r"[ \t]+$", re.MULTILINE)

_LANGUAGES: dict[str, str] = {
    "js": "javascript",
    "jsx": "jsx",
    "mjs": "javascript",
    "ts": "typescript",
    "tsx": "tsx",
    "py": "python",
    "java": "java",
    "cpp": "cpp",
    "cc": "cpp",
    "c": "c",
    "h": "c",
    "go": "go",
    "rs": "rust",
    "php": "php",
    "rb": "ruby",
    "swift": "swift",
    "kt": "kotlin",
    "scala": "scala",
    "cs": "csharp",
    "html": "html",
    "css": "css",
    "scss": "scss",
    "sass": "sass",
    "json": "json",
    "yaml": "yaml",
    "yml": "yaml",
    "toml": "toml",
    "xml": "xml",
    "md": "markdown",
    "txt": "text",
    "sql": "sql",
    "sh": "bash",
    "bash": "bash",
    "zsh": "zsh",
}

_MIME_TYPES: dict[str, str] = {
    "png": "image/png",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "gif": "image/gif",
    "svg": "image/svg+xml",
    "pdf": "application/pdf",
    "zip": "application/zip",
    "tar": "application/x-tar",
    "gz": "application/gzip",
    "mp4": "video/mp4",
    "mp3": "audio/mpeg",
    "wav": "audio/wav",
}


def _extension(path: str) -> str:
    return PurePosixPath(path).suffix.lstrip(".").lower()


def detect_language(path: str) -> str:
    """Language name from the file extension; ``"text"`` when unknown."""
    return _LANGUAGES.get(_extension(path), "text")


def detect_mime_type(path: str, is_binary: bool = False) -> str:
    if not is_binary:
        return "text/plain"
    return _MIME_TYPES.get(_extension(path), "application/octet-stream")


def is_binary(content: str | bytes, size_limit: int = BINARY_SIZE_LIMIT) -> bool:
    """True for content that is stored as metadata only.

    Binary means: any NUL, more than 10% control characters, or larger than
    *size_limit* bytes.
    """
    if isinstance(content, bytes):
        if len(content) > size_limit:
            return True
        if b"\0" in content:
            return True
        try:
            text = content.decode("utf-8")
        except UnicodeDecodeError:
            return True
    else:
        text = content
        if len(text.encode("utf-8")) > size_limit:
            return True
    if not text:
        return False
    if "\0" in text:
        return True
    return len(_NON_PRINTABLE_RE.findall(text)) / len(text) > _NON_PRINTABLE_RATIO


def normalize_content(text: str) -> str:
    """Unify line endings, strip per-line trailing whitespace, trim the ends."""
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    return _TRAILING_WS_RE.sub("", text).strip()
