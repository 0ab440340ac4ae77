"""Scan lifecycle: start, abort, cache load/save and event delivery."""

from __future__ import annotations

import logging
import os
import queue
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from dirstat.core.cache import read_cache, write_cache
from dirstat.core.walker import DirWalker
from dirstat.errors import CacheIOError, CacheParseError, InvalidStateError, ScanRootError
from dirstat.models.session import ScanSession
from dirstat.models.tree import DirTree, ScanOutcome
from dirstat.settings import Settings

log = logging.getLogger(__name__)

# Progress events beyond this many undelivered ones are dropped
_EVENT_QUEUE_SIZE = 256


class ScanState(Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    FINISHED = "finished"
    ABORTED = "aborted"
    FAILED = "failed"


class EventKind(Enum):
    STARTED = "started"
    PROGRESS = "progress"
    FINISHED = "finished"
    ABORTED = "aborted"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class ScanEvent:
    """A lifecycle notification.

    ``message`` is the directory being read for PROGRESS, the reason for
    FAILED and the scanned root path otherwise.
    """

    kind: EventKind
    message: str = ""


EventCallback = Callable[[ScanEvent], None]


@dataclass(slots=True)
class _SessionResult:
    tree: DirTree
    outcome: ScanOutcome
    reason: str = ""


class ScanController:
    """Runs one scan or cache load at a time on a background worker.

    The worker only ever touches its own session tree. Listeners are
    called from :meth:`process_events` and :meth:`wait`, i.e. on whichever
    thread drives the controller, and the finished tree is swapped in there.
    """

    def __init__(self, walker: DirWalker | None = None, settings: Settings | None = None) -> None:
        self._settings = settings or Settings.instance()
        self._walker = walker or DirWalker.from_settings(self._settings)
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="dirstat-scan")
        self._events: queue.Queue[ScanEvent] = queue.Queue(maxsize=_EVENT_QUEUE_SIZE)
        self._listeners: list[EventCallback] = []
        self._tree = DirTree()
        self._state = ScanState.IDLE
        self._session: ScanSession | None = None
        self._future: Future[_SessionResult] | None = None
        self._abort_requested = False
        self._loading = False
        self.last_error = ""

    # ── queries ──────────────────────────────────────────────────────────

    @property
    def state(self) -> ScanState:
        return self._state

    @property
    def tree(self) -> DirTree:
        """The current tree; empty while a scan runs. Treat as read-only."""
        return self._tree

    @property
    def root_path(self) -> str:
        if self._session is not None and self._state is ScanState.SCANNING:
            return os.path.abspath(self._session.target)
        return self._tree.root_path

    @property
    def session(self) -> ScanSession | None:
        """The running session, or the last one until the next start."""
        return self._session

    def is_busy(self) -> bool:
        return self._state is ScanState.SCANNING

    # ── listeners ────────────────────────────────────────────────────────

    def add_listener(self, callback: EventCallback) -> None:
        self._listeners.append(callback)

    def remove_listener(self, callback: EventCallback) -> None:
        if callback in self._listeners:
            self._listeners.remove(callback)

    # ── operations ───────────────────────────────────────────────────────

    def start_scan(self, path: str | os.PathLike[str]) -> None:
        """Begin walking ``path`` in the background."""
        session = self._begin(str(path), "start a scan")
        log.info("Starting scan of %s", path)
        self._future = self._executor.submit(self._run_walk, session)

    def refresh(self) -> None:
        """Re-walk the root of the current tree from scratch."""
        if not self._tree.root_path:
            raise InvalidStateError("Nothing to refresh: no tree has been loaded")
        self.start_scan(self._tree.root_path)

    def abort_scan(self) -> None:
        """Ask the running walk to stop; the session will end as ABORTED.

        Cache loads cannot be aborted.
        """
        if self._state is not ScanState.SCANNING or self._session is None:
            raise InvalidStateError(f"Cannot abort: controller is {self._state.value}")
        if self._loading:
            raise InvalidStateError("Cannot abort: cache loads are not cancellable")
        self._abort_requested = True
        self._session.cancel()
        log.info("Abort requested for %s", self._session.target)

    def load_cache(self, path: str | os.PathLike[str]) -> None:
        """Read a cache file in the background, with the same events as a scan."""
        session = self._begin(str(path), "load a cache file")
        self._loading = True
        log.info("Loading cache file %s", path)
        self._future = self._executor.submit(self._run_cache_load, session)

    def save_cache(self, path: str | os.PathLike[str] | None = None) -> bool:
        """Write the current tree to ``path``.

        Without a path the tree goes to the configured default cache name
        inside the scanned directory. Valid after a finished or aborted
        scan; an aborted tree is saved with its partial markers.

        Returns:
            True on success, False if the file could not be written.
        """
        if self._state not in (ScanState.FINISHED, ScanState.ABORTED):
            raise InvalidStateError(f"Cannot save cache: controller is {self._state.value}")
        if path is None:
            path = os.path.join(self._tree.root_path, self._settings.default_cache_name)
        try:
            write_cache(self._tree, path)
        except CacheIOError as e:
            log.warning("%s", e)
            self.last_error = str(e)
            return False
        return True

    def clear(self) -> None:
        """Drop the current tree and return to IDLE."""
        if self._state is ScanState.SCANNING:
            raise InvalidStateError("Cannot clear while a scan is in progress")
        self._tree.clear()
        self._state = ScanState.IDLE
        self.last_error = ""

    # ── event pump ───────────────────────────────────────────────────────

    def process_events(self) -> int:
        """Deliver pending events on the calling thread.

        Returns:
            Number of events delivered.
        """
        # Checked before draining so no progress event can trail the outcome
        done = self._state is ScanState.SCANNING and self._future is not None and self._future.done()
        delivered = 0
        while True:
            try:
                event = self._events.get_nowait()
            except queue.Empty:
                break
            self._dispatch(event)
            delivered += 1

        if done:
            self._finish(self._future.result())
            delivered += 1
        return delivered

    def wait(self, timeout: float | None = None, poll_interval: float = 0.02) -> ScanState:
        """Pump events until the current session ends or ``timeout`` expires."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            self.process_events()
            if self._state is not ScanState.SCANNING:
                return self._state
            if deadline is not None and time.monotonic() >= deadline:
                return self._state
            time.sleep(poll_interval)

    def close(self) -> None:
        """Abort any running scan and stop the worker (a cache load runs to completion)."""
        if self._state is ScanState.SCANNING and not self._loading:
            self.abort_scan()
        self._executor.shutdown(wait=True)

    def __enter__(self) -> ScanController:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # ── internals ────────────────────────────────────────────────────────

    def _begin(self, target: str, action: str) -> ScanSession:
        if self._state is ScanState.SCANNING:
            raise InvalidStateError(f"Cannot {action}: a scan is already in progress")

        # Leftovers from the previous session must not leak into this one
        while True:
            try:
                self._events.get_nowait()
            except queue.Empty:
                break

        self._tree = DirTree()
        self._tree.outcome = ScanOutcome.IN_PROGRESS
        self._session = ScanSession(target=target)
        self._abort_requested = False
        self._loading = False
        self.last_error = ""
        self._state = ScanState.SCANNING
        self._dispatch(ScanEvent(EventKind.STARTED, os.path.abspath(target)))
        return self._session

    def _run_walk(self, session: ScanSession) -> _SessionResult:
        """Worker side of a live scan."""
        tree = DirTree()

        def on_progress(path: str) -> None:
            try:
                self._events.put_nowait(ScanEvent(EventKind.PROGRESS, path))
            except queue.Full:
                pass

        try:
            outcome = self._walker.walk(session, tree, on_progress=on_progress)
        except ScanRootError as e:
            log.warning("Scan of %s failed: %s", session.target, e)
            return _SessionResult(DirTree(), ScanOutcome.FAILED, str(e))
        except Exception as e:
            log.exception("Scan of %s crashed", session.target)
            return _SessionResult(DirTree(), ScanOutcome.FAILED, f"Internal error: {e}")
        return _SessionResult(tree, outcome)

    def _run_cache_load(self, session: ScanSession) -> _SessionResult:
        """Worker side of a cache load."""
        try:
            tree = read_cache(session.target)
        except (CacheParseError, CacheIOError) as e:
            log.warning("Could not load cache file %s: %s", session.target, e)
            return _SessionResult(DirTree(), ScanOutcome.FAILED, str(e))
        except Exception as e:
            log.exception("Loading cache file %s crashed", session.target)
            return _SessionResult(DirTree(), ScanOutcome.FAILED, f"Internal error: {e}")
        session.entries_visited = len(tree)
        session.bytes_accumulated = tree.root.total_size if tree.root else 0
        return _SessionResult(tree, ScanOutcome.FINISHED)

    def _finish(self, result: _SessionResult) -> None:
        """Adopt the worker's tree and announce the outcome (caller thread)."""
        outcome = result.outcome
        if self._abort_requested and outcome is ScanOutcome.FINISHED:
            # The walk completed before it saw the cancel token
            outcome = ScanOutcome.ABORTED
            if result.tree.root is not None:
                result.tree.root.partial = True

        self._tree = result.tree
        self._tree.outcome = outcome
        elapsed = self._session.elapsed if self._session else 0.0

        match outcome:
            case ScanOutcome.FINISHED:
                self._state = ScanState.FINISHED
                event = ScanEvent(EventKind.FINISHED, self._tree.root_path)
            case ScanOutcome.ABORTED:
                self._state = ScanState.ABORTED
                event = ScanEvent(EventKind.ABORTED, self._tree.root_path)
            case _:
                self._state = ScanState.FAILED
                self.last_error = result.reason
                event = ScanEvent(EventKind.FAILED, result.reason)

        log.info("Session %s after %.2fs with %d entries", self._state.value, elapsed, len(self._tree))
        self._dispatch(event)

    def _dispatch(self, event: ScanEvent) -> None:
        for callback in list(self._listeners):
            try:
                callback(event)
            except Exception:
                log.exception("Listener failed while handling %s event", event.kind.value)
