"""dirstat data models."""

from dirstat.models.entry import Entry, EntryType, SortKey
from dirstat.models.session import ScanSession
from dirstat.models.tree import DirTree, ScanOutcome

__all__ = [
    "DirTree",
    "Entry",
    "EntryType",
    "ScanOutcome",
    "ScanSession",
    "SortKey",
]
