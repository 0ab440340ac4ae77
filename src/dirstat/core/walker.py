"""Depth-first filesystem walker that fills a DirTree."""

from __future__ import annotations

import logging
import os
import stat as statmod
import time
from dataclasses import dataclass
from typing import Callable

from dirstat.core.exclude import ExcludeRules
from dirstat.errors import ScanRootError
from dirstat.models.entry import Entry, EntryType
from dirstat.models.session import ScanSession
from dirstat.models.tree import DirTree, ScanOutcome
from dirstat.settings import Settings

log = logging.getLogger(__name__)

Visitor = Callable[[Entry], None]
ProgressCallback = Callable[[str], None]  # (directory currently being read)

DEFAULT_PROGRESS_INTERVAL = 0.1


def _lstat(dirent: os.DirEntry) -> os.stat_result:
    return dirent.stat(follow_symlinks=False)


def _list_dir(path: str) -> list[os.DirEntry]:
    with os.scandir(path) as it:
        return list(it)


@dataclass(slots=True)
class _Frame:
    """A directory whose children are still being visited."""

    entry: Entry
    path: str
    pending: list[os.DirEntry]
    index: int = 0


class DirWalker:
    """Walks a directory tree without following symlinks.

    Directories are finalized in post-order: a directory's aggregates are
    computed once, right after its last child is done. Errors on single
    entries are recorded on the entry and the walk goes on; only an
    unreadable root raises :class:`ScanRootError`.
    """

    def __init__(
        self,
        exclude_rules: ExcludeRules | None = None,
        cross_filesystems: bool = False,
        progress_interval: float = DEFAULT_PROGRESS_INTERVAL,
    ) -> None:
        self.exclude_rules = exclude_rules or ExcludeRules()
        self.cross_filesystems = cross_filesystems
        self.progress_interval = progress_interval

    @classmethod
    def from_settings(cls, settings: Settings) -> DirWalker:
        return cls(
            exclude_rules=ExcludeRules(settings.exclude_rules),
            cross_filesystems=settings.cross_filesystems,
            progress_interval=settings.progress_interval,
        )

    def walk(
        self,
        session: ScanSession,
        tree: DirTree,
        visitor: Visitor | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> ScanOutcome:
        """Scan ``session.target`` into the empty ``tree``.

        Args:
            session: Target path, cancellation token and counters.
            tree: Receives the entries; must not have a root yet.
            visitor: Called once per entry, after it is linked to its parent.
            on_progress: Called at most every ``progress_interval`` seconds.

        Returns:
            ``ScanOutcome.FINISHED`` or ``ScanOutcome.ABORTED``.

        Raises:
            ScanRootError: If the root cannot be stat'ed or listed.
        """
        root_path = os.path.abspath(session.target)
        last_emit: float | None = None

        def emit(path: str) -> None:
            nonlocal last_emit
            if on_progress is None:
                return
            now = time.monotonic()
            if last_emit is None or now - last_emit >= self.progress_interval:
                last_emit = now
                on_progress(path)

        try:
            # The root itself may be a symlink to the directory the user meant
            st = os.stat(root_path)
        except OSError as e:
            raise ScanRootError(f"Cannot access {root_path}: {e.strerror or e}") from e

        root = _entry_from_stat(root_path, root_path, st)
        listing: list[os.DirEntry] = []
        if root.is_dir:
            try:
                listing = _list_dir(root_path)
            except OSError as e:
                raise ScanRootError(f"Cannot read directory {root_path}: {e.strerror or e}") from e

        tree.set_root(root, root_path)
        tree.outcome = ScanOutcome.IN_PROGRESS
        session.entries_visited += 1
        session.bytes_accumulated += root.total_size
        session.current_dir = root_path
        if visitor:
            visitor(root)
        log.info("Scanning %s", root_path)

        if not root.is_dir:
            tree.outcome = ScanOutcome.FINISHED
            return ScanOutcome.FINISHED

        root_dev = st.st_dev
        stack = [_Frame(root, root_path, listing)]
        emit(root_path)

        while stack:
            frame = stack[-1]
            if session.cancelled:
                return self._abort(tree, stack)

            if frame.index >= len(frame.pending):
                stack.pop()
                frame.entry.recalc()
                if stack:
                    session.current_dir = stack[-1].path
                continue

            dirent = frame.pending[frame.index]
            frame.index += 1

            entry = self._make_entry(dirent, root_dev)
            tree.insert(frame.entry, entry)
            session.entries_visited += 1
            session.bytes_accumulated += entry.total_size
            if visitor:
                visitor(entry)

            if entry.is_dir and not entry.error and not entry.excluded:
                if session.cancelled:
                    entry.partial = True
                    continue
                try:
                    children = _list_dir(dirent.path)
                except OSError as e:
                    log.debug("Cannot read directory %s: %s", dirent.path, e)
                    entry.error = True
                    entry.recalc()
                else:
                    stack.append(_Frame(entry, dirent.path, children))
                    session.current_dir = dirent.path

            emit(session.current_dir)

        tree.outcome = ScanOutcome.FINISHED
        log.info(
            "Finished %s: %d entries, %d bytes, %d errors",
            root_path,
            session.entries_visited,
            root.total_size,
            root.error_count,
        )
        return ScanOutcome.FINISHED

    def _make_entry(self, dirent: os.DirEntry, root_dev: int) -> Entry:
        try:
            st = _lstat(dirent)
        except OSError as e:
            log.debug("Cannot stat %s: %s", dirent.path, e)
            return Entry(name=dirent.name, type=_guess_type(dirent), error=True)

        entry = _entry_from_stat(dirent.name, dirent.path, st)
        if entry.is_dir:
            if not self.cross_filesystems and st.st_dev != root_dev:
                log.debug("Not crossing into other filesystem at %s", dirent.path)
                entry.excluded = True
            elif self.exclude_rules.match(dirent.path):
                log.debug("Excluded %s", dirent.path)
                entry.excluded = True
        return entry

    @staticmethod
    def _abort(tree: DirTree, stack: list[_Frame]) -> ScanOutcome:
        """Flag every open directory as partial and settle the aggregates read so far."""
        for frame in stack:
            frame.entry.partial = True
        tree.recompute_aggregates(stack[-1].entry)
        tree.outcome = ScanOutcome.ABORTED
        log.info("Scan of %s aborted in %s", tree.root_path, stack[-1].path)
        return ScanOutcome.ABORTED


def _entry_from_stat(name: str, path: str, st: os.stat_result) -> Entry:
    mode = st.st_mode
    mtime = int(st.st_mtime)
    if statmod.S_ISDIR(mode):
        return Entry(name=name, type=EntryType.DIRECTORY, mtime=mtime)
    if statmod.S_ISREG(mode):
        return Entry(name=name, type=EntryType.FILE, size=st.st_size, mtime=mtime)
    if statmod.S_ISLNK(mode):
        try:
            target = os.readlink(path)
        except OSError as e:
            log.debug("Cannot read link %s: %s", path, e)
            return Entry(
                name=name,
                type=EntryType.SYMLINK,
                size=st.st_size,
                mtime=mtime,
                error=True,
                unreadable_bytes=st.st_size,
            )
        return Entry(name=name, type=EntryType.SYMLINK, size=st.st_size, mtime=mtime, link_target=target)
    return Entry(name=name, type=EntryType.SPECIAL, mtime=mtime)


def _guess_type(dirent: os.DirEntry) -> EntryType:
    """Best effort type for an entry that could not be stat'ed (uses d_type only)."""
    try:
        if dirent.is_symlink():
            return EntryType.SYMLINK
        if dirent.is_dir(follow_symlinks=False):
            return EntryType.DIRECTORY
        if dirent.is_file(follow_symlinks=False):
            return EntryType.FILE
    except OSError:
        pass
    return EntryType.SPECIAL
