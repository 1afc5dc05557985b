"""Shared utility functions for dealdocs services."""

import mimetypes
import posixpath
import re

_UNSAFE_NAME_CHARS = re.compile(r"[^a-zA-Z0-9._-]")


def format_file_size(size_bytes: int) -> str:
    """Format a file size in bytes to a human-readable string.

    Args:
        size_bytes: Size in bytes

    Returns:
        Human-readable size string (e.g., "1.5 GB")
    """
    size_float = float(size_bytes)
    for unit in ["B", "KB", "MB", "GB", "TB"]:
        if abs(size_float) < 1024.0:
            return f"{size_float:.1f} {unit}"
        size_float = size_float / 1024.0
    return f"{size_float:.1f} PB"


def guess_mime_type(filename: str) -> str:
    """Guess a MIME type from a filename, or "" when it cannot be determined."""
    mime_type, _ = mimetypes.guess_type(filename)
    return mime_type or ""


def normalize_relative_path(path: str) -> str:
    """Turn a browser- or OS-supplied relative path into a clean posix path.

    Backslashes become slashes, leading slashes and "." / ".." segments are
    dropped so the result can never point outside its folder.
    """
    parts = [p for p in path.replace("\\", "/").split("/") if p not in ("", ".", "..")]
    return posixpath.join(*parts) if parts else ""


def sanitize_filename(name: str, max_length: int = 100) -> str:
    """Replace unsafe characters in a file's base name, keeping its extension."""
    base, ext = posixpath.splitext(posixpath.basename(name.replace("\\", "/")))
    safe_base = _UNSAFE_NAME_CHARS.sub("_", base)[:max_length]
    return f"{safe_base}{ext.lower()}"
