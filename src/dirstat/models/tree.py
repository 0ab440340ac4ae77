"""In-memory tree of scanned entries."""

from __future__ import annotations

import os
from enum import Enum
from typing import Iterator

from dirstat.errors import InvalidParentError, InvalidStateError
from dirstat.models.entry import Entry


class ScanOutcome(Enum):
    """How the walk or cache load that produced a tree ended."""

    NEVER_RUN = "never-run"
    IN_PROGRESS = "in-progress"
    FINISHED = "finished"
    ABORTED = "aborted"
    FAILED = "failed"


class DirTree:
    """Owns one root :class:`Entry` and everything below it.

    Entries are linked by :meth:`insert` only; a tree never shares nodes
    with another tree.
    """

    def __init__(self) -> None:
        self.root: Entry | None = None
        self.root_path = ""
        self.outcome = ScanOutcome.NEVER_RUN

    @property
    def partial(self) -> bool:
        """True if the root's subtree was not read completely."""
        return self.root is not None and self.root.partial

    def set_root(self, entry: Entry, root_path: str) -> None:
        """Install ``entry`` as the root of an empty tree."""
        if self.root is not None:
            raise InvalidStateError("Tree already has a root")
        entry.parent = None
        self.root = entry
        self.root_path = root_path

    def insert(self, parent: Entry, entry: Entry) -> None:
        """Append ``entry`` as a child of ``parent``."""
        if not parent.is_dir:
            raise InvalidParentError(f"'{parent.name}' is not a directory")
        if not self._owns(parent):
            raise InvalidParentError(f"'{parent.name}' does not belong to this tree")
        if entry.parent is not None or entry is self.root:
            raise InvalidParentError(f"'{entry.name}' is already linked into a tree")
        entry.parent = parent
        parent.children.append(entry)

    def recompute_aggregates(self, node: Entry) -> None:
        """Recompute ``node`` and every ancestor up to the root.

        Each level sums its direct children, which must already be final.
        """
        current: Entry | None = node
        while current is not None:
            current.recalc()
            current = current.parent

    def clear(self) -> None:
        """Drop the whole tree and return to the never-run state."""
        if self.outcome is ScanOutcome.IN_PROGRESS:
            raise InvalidStateError("Cannot clear a tree while a scan is in progress")
        self.root = None
        self.root_path = ""
        self.outcome = ScanOutcome.NEVER_RUN

    def iter_entries(self) -> Iterator[Entry]:
        """Yield all entries in pre-order, children in stored order."""
        if self.root is None:
            return
        stack = [self.root]
        while stack:
            entry = stack.pop()
            yield entry
            stack.extend(reversed(entry.children))

    def find(self, path: str) -> Entry | None:
        """Look up an entry by absolute path or by a path relative to the root."""
        if self.root is None:
            return None
        if os.path.isabs(path):
            rel = os.path.relpath(os.path.normpath(path), self.root_path)
            if rel == os.pardir or rel.startswith(os.pardir + os.sep):
                return None
        else:
            rel = os.path.normpath(path)
        if rel == os.curdir:
            return self.root
        node = self.root
        for part in rel.split(os.sep):
            node = next((c for c in node.children if c.name == part), None)
            if node is None:
                return None
        return node

    def _owns(self, entry: Entry) -> bool:
        node = entry
        while node.parent is not None:
            node = node.parent
        return node is self.root

    def __len__(self) -> int:
        return 0 if self.root is None else 1 + self.root.total_items

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, DirTree):
            return NotImplemented
        if self.root_path != other.root_path:
            return False
        return _same_subtree(self.root, other.root)

    __hash__ = None  # type: ignore[assignment]


def _same_subtree(a: Entry | None, b: Entry | None) -> bool:
    """Compare two subtrees by content, children in order, without recursion."""
    pairs = [(a, b)]
    while pairs:
        x, y = pairs.pop()
        if x is None or y is None:
            if x is not y:
                return False
            continue
        if x.content_key() != y.content_key() or len(x.children) != len(y.children):
            return False
        pairs.extend(zip(x.children, y.children))
    return True
