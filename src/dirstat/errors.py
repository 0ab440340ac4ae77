"""Error taxonomy shared by the tree model, walker, codec and controller."""

from __future__ import annotations


class DirStatError(Exception):
    """Base class for all dirstat errors."""


class InvalidStateError(DirStatError):
    """Raised when an operation is not valid in the current lifecycle state."""


class InvalidParentError(DirStatError):
    """Raised when inserting under a node that is not a directory of this tree."""


class ScanRootError(DirStatError):
    """Raised when the top-level scan path cannot be stat'ed or listed."""


class CacheIOError(DirStatError):
    """Raised when a cache file cannot be read or written."""


class CacheParseError(DirStatError):
    """Raised when a cache file is malformed.

    ``line_no`` is 1-based; 0 means the problem is not tied to a line
    (e.g. an empty file).
    """

    def __init__(self, message: str, line_no: int = 0) -> None:
        self.message = message
        self.line_no = line_no
        super().__init__(f"line {line_no}: {message}" if line_no else message)
