"""Scanned filesystem entry."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class EntryType(Enum):
    """Kind of filesystem object an entry represents."""

    FILE = "file"
    DIRECTORY = "directory"
    SYMLINK = "symlink"
    SPECIAL = "special"


class SortKey(Enum):
    """Orderings offered for browsing a directory's children."""

    NAME = "name"
    SIZE = "size"
    ITEMS = "items"
    MTIME = "mtime"


@dataclass(slots=True, eq=False)
class Entry:
    """One file, directory, symlink or special file in a scanned tree.

    ``size`` is the entry's own size; directories always own 0 bytes.
    The ``total_*`` fields are aggregates over the subtree and are only
    meaningful after :meth:`recalc` (or ``DirTree.recompute_aggregates``)
    has run on a directory whose children are final.

    ``error`` marks an entry whose stat, readlink or listing failed. Its
    ``unreadable_bytes`` estimate is tracked separately and never counted
    in ``total_size``.
    """

    name: str
    type: EntryType
    size: int = 0
    mtime: int = 0
    link_target: str = ""
    error: bool = False
    unreadable_bytes: int = 0
    excluded: bool = False
    partial: bool = False
    parent: Entry | None = field(default=None, repr=False)
    children: list[Entry] = field(default_factory=list, repr=False)

    total_size: int = field(default=0, init=False)
    total_items: int = field(default=0, init=False)
    total_unreadable_bytes: int = field(default=0, init=False)
    error_count: int = field(default=0, init=False)
    latest_mtime: int = field(default=0, init=False)

    def __post_init__(self) -> None:
        self.recalc()

    @property
    def is_dir(self) -> bool:
        return self.type is EntryType.DIRECTORY

    @property
    def path(self) -> str:
        """Full path, joined from the root's name down to this entry."""
        parts: list[str] = []
        node: Entry | None = self
        while node is not None:
            parts.append(node.name)
            node = node.parent
        return os.path.join(*reversed(parts))

    def recalc(self) -> None:
        """Recompute this entry's aggregates from its direct children."""
        self.total_size = 0 if self.error else self.size
        self.total_items = 0
        self.total_unreadable_bytes = self.unreadable_bytes
        self.error_count = 1 if self.error else 0
        self.latest_mtime = self.mtime
        for child in self.children:
            self.total_size += child.total_size
            self.total_items += 1 + child.total_items
            self.total_unreadable_bytes += child.total_unreadable_bytes
            self.error_count += child.error_count
            if child.latest_mtime > self.latest_mtime:
                self.latest_mtime = child.latest_mtime

    def sorted_children(self, key: SortKey = SortKey.SIZE, reverse: bool | None = None) -> list[Entry]:
        """Return children ordered for display.

        Sizes, item counts and times sort largest/newest first unless
        ``reverse`` says otherwise; names sort ascending.
        """
        if reverse is None:
            reverse = key is not SortKey.NAME
        return sorted(self.children, key=_SORT_KEYS[key], reverse=reverse)

    def content_key(self) -> tuple:
        """Everything that a cache file preserves about this entry (not its children)."""
        return (
            self.name,
            self.type,
            self.size,
            self.mtime,
            self.link_target,
            self.error,
            self.unreadable_bytes,
            self.excluded,
            self.partial,
        )

    def as_dict(self, depth: int = -1, sort: SortKey = SortKey.SIZE) -> dict[str, Any]:
        """JSON-friendly view of this entry, descending ``depth`` levels (-1 for all)."""
        result = self._own_dict()
        stack: list[tuple[Entry, dict[str, Any], int]] = [(self, result, depth)]
        while stack:
            entry, data, remaining = stack.pop()
            if not entry.is_dir or remaining == 0:
                continue
            children: list[dict[str, Any]] = []
            data["children"] = children
            for child in entry.sorted_children(sort):
                child_data = child._own_dict()
                children.append(child_data)
                stack.append((child, child_data, remaining - 1))
        return result

    def _own_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "name": self.name,
            "type": self.type.value,
            "size": self.size,
            "total_size": self.total_size,
            "total_items": self.total_items,
            "mtime": self.mtime,
        }
        if self.link_target:
            data["link_target"] = self.link_target
        if self.error:
            data["error"] = True
        if self.total_unreadable_bytes:
            data["unreadable_bytes"] = self.total_unreadable_bytes
        if self.excluded:
            data["excluded"] = True
        if self.partial:
            data["partial"] = True
        return data


_SORT_KEYS = {
    SortKey.NAME: lambda e: e.name,
    SortKey.SIZE: lambda e: (e.total_size, e.name),
    SortKey.ITEMS: lambda e: (e.total_items, e.name),
    SortKey.MTIME: lambda e: (e.latest_mtime, e.name),
}
