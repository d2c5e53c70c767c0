"""
histrack - Per-directory shell command history.

histrack records every command a shell runs, together with the directory
it ran in, and keeps that history in a local SQLite store that many shell
processes can write at once.
It provides:
- A directory-scoped history store with retention cleanup
- Shell hook capture with automatic tagging
- A command-line interface for browsing and searching history

Example usage:
    $ histrack record --dir ~/src/app --shell bash --exit-code 0 -- git status
    $ histrack history
    $ histrack search docker --all
"""

__version__ = "0.1.0"
__author__ = "histrack Contributors"

__all__ = [
    "__version__",
    "__author__",
]
