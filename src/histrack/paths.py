"""
Directory path normalization.

Every directory that reaches the store, on the write side and the read side,
goes through normalize_directory(). Two spellings of the same location must
normalize to the same string or their histories would never meet.

Normal form:
    - absolute (relative paths resolve against the current working directory)
    - cleaned: no ".", "..", duplicate or trailing separators
    - forward slashes on every platform, upper-case drive letter on Windows

Symlinks are not resolved: a user who cd's through a link sees the history
recorded under the link's path.
"""

import os
from pathlib import Path


def normalize_directory(directory: str | os.PathLike[str]) -> str:
    """
    Canonicalize a directory path.

    The function is idempotent: normalize_directory(normalize_directory(p))
    equals normalize_directory(p).

    Args:
        directory: Path in any spelling accepted by the host OS.

    Returns:
        The normalized absolute path using "/" separators.
    """
    raw = os.fspath(directory)
    cleaned = os.path.normpath(os.path.abspath(raw))

    if os.sep != "/":
        cleaned = cleaned.replace(os.sep, "/")
        if len(cleaned) >= 2 and cleaned[1] == ":":
            cleaned = cleaned[0].upper() + cleaned[1:]
    elif cleaned.startswith("//"):
        # POSIX keeps a leading double slash; it names the same root here
        cleaned = "/" + cleaned.lstrip("/")

    return cleaned


def is_normalized(directory: str) -> bool:
    """Return True if the path is already in normal form."""
    return normalize_directory(directory) == directory


def same_directory(first: str, second: str) -> bool:
    """Compare two directory spellings by their normal form."""
    return normalize_directory(first) == normalize_directory(second)


def shorten_home(directory: str, home: str | None = None) -> str:
    """Replace the user's home prefix with '~' for display."""
    home_dir = normalize_directory(home or Path.home())
    if directory == home_dir:
        return "~"
    if directory.startswith(home_dir.rstrip("/") + "/"):
        return "~" + directory[len(home_dir.rstrip("/")):]
    return directory
