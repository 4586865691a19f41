"""Path and size helpers shared by the command builder and the parsers."""

from __future__ import annotations

import logging
import os
import re
from pathlib import Path

logger = logging.getLogger(__name__)

# rsync reports sizes and rates with 1024-based multipliers.
BINARY_UNITS: dict[str, int] = {
    "": 1,
    "B": 1,
    "K": 1024,
    "KB": 1024,
    "M": 1024 ** 2,
    "MB": 1024 ** 2,
    "G": 1024 ** 3,
    "GB": 1024 ** 3,
    "T": 1024 ** 4,
    "TB": 1024 ** 4,
}

_SIZE_RE = re.compile(r"^([0-9]+(?:\.[0-9]+)?)\s*([KMGT]?B?)$", re.IGNORECASE)


def expand_home(path: str) -> str:
    """Expand a leading ``~`` or ``~/`` to the current user's home directory.

    Only the leading shorthand is touched; a ``~`` elsewhere in the path is
    part of the file name.  Trailing separators are preserved.
    """
    if path == "~":
        return str(Path.home())
    if path.startswith("~" + os.sep) or path.startswith("~/"):
        return str(Path.home()) + path[1:]
    return path


def has_trailing_separator(path: str) -> bool:
    """Return True if *path* ends with a path separator."""
    return path.endswith("/") or path.endswith(os.sep)


def strip_trailing_separator(path: str) -> str:
    """Remove trailing separators, keeping a bare root (``/``) intact."""
    stripped = path.rstrip("/" + os.sep)
    return stripped or path[:1]


def is_within(path: str | os.PathLike[str], root: str | os.PathLike[str]) -> bool:
    """Return True if *path* equals *root* or lies underneath it."""
    candidate = Path(path).expanduser().resolve()
    base = Path(root).expanduser().resolve()
    return candidate == base or base in candidate.parents


def parse_size(text: str) -> int:
    """Convert an rsync size figure to bytes.

    Accepts ``"1,234,567"``, ``"1,234,567 bytes"``, ``"1.23M"`` and
    ``"4.5GB"``.  Returns 0 for anything unparseable.
    """
    cleaned = text.replace(",", "").strip()
    if cleaned.lower().endswith("bytes"):
        cleaned = cleaned[: -len("bytes")].strip()
    match = _SIZE_RE.match(cleaned)
    if not match:
        return 0
    value, unit = match.groups()
    return int(float(value) * BINARY_UNITS.get(unit.upper(), 1))


def human_readable_size(size_bytes: int | float) -> str:
    """Convert a byte count to a human-readable string (e.g. "4.2 MB").

    Uses 1024-based units but labels them KB/MB/GB, the way rsync does.
    """
    if size_bytes < 0:
        return "0 B"
    for unit in ("B", "KB", "MB", "GB", "TB"):
        if size_bytes < 1024.0:
            if unit == "B":
                return f"{int(size_bytes)} B"
            return f"{size_bytes:.1f} {unit}"
        size_bytes /= 1024.0
    return f"{size_bytes:.1f} PB"


def format_duration(seconds: float) -> str:
    """Format *seconds* as ``H:MM:SS`` when there are hours, else ``M:SS``."""
    total = max(0, int(seconds))
    hours, rest = divmod(total, 3600)
    minutes, secs = divmod(rest, 60)
    if hours > 0:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"
