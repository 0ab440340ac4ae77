"""D-Bus service exposing the scan controller to GUI front ends.

D-Bus methods use PascalCase per D-Bus convention, and type signatures
like "s" and "b" are D-Bus protocol types, not Python syntax.
"""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import contextmanager
from typing import Iterator

from dbus_next import BusType
from dbus_next.aio import MessageBus
from dbus_next.errors import DBusError
from dbus_next.service import ServiceInterface, method, signal

from dirstat.core.controller import EventKind, ScanController, ScanEvent
from dirstat.errors import InvalidStateError
from dirstat.models.entry import SortKey

log = logging.getLogger(__name__)

_BUS_NAME = "io.github.dirstat"
_OBJECT_PATH = "/io/github/dirstat"
_INTERFACE = "io.github.dirstat.Scanner"
_INVALID_STATE_ERROR = "io.github.dirstat.Error.InvalidState"
_TREE_TOO_DEEP_ERROR = "io.github.dirstat.Error.TreeTooDeep"

# How often queued scan events are forwarded as signals (seconds)
_PUMP_INTERVAL = 0.05


# noinspection PyPep8Naming
class DirStatDBusService(ServiceInterface):
    """D-Bus service interface for dirstat."""

    def __init__(self, controller: ScanController | None = None) -> None:
        super().__init__(_INTERFACE)
        self._controller = controller or ScanController()
        self._controller.add_listener(self._forward_event)

    @property
    def controller(self) -> ScanController:
        return self._controller

    @method()
    def StartScan(self, path: "s"):  # type: ignore[override]
        """Start scanning a directory."""
        with _invalid_state_as_dbus_error():
            self._controller.start_scan(path)

    @method()
    def AbortScan(self):  # type: ignore[override]
        """Abort the running scan."""
        with _invalid_state_as_dbus_error():
            self._controller.abort_scan()

    @method()
    def ReadCache(self, path: "s"):  # type: ignore[override]
        """Load a cache file in place of a scan."""
        with _invalid_state_as_dbus_error():
            self._controller.load_cache(path)

    @method()
    def WriteCache(self, path: "s") -> "b":  # type: ignore[override]
        """Write the current tree to a cache file; an empty path picks the default."""
        with _invalid_state_as_dbus_error():
            return self._controller.save_cache(path or None)

    @method()
    def IsBusy(self) -> "b":  # type: ignore[override]
        return self._controller.is_busy()

    @method()
    def RootPath(self) -> "s":  # type: ignore[override]
        return self._controller.root_path

    @method()
    def GetTree(self, depth: "i") -> "s":  # type: ignore[override]
        """Return the current tree as JSON, ``depth`` levels deep (-1 for all)."""
        tree = self._controller.tree
        data = {
            "root_path": tree.root_path,
            "state": self._controller.state.value,
            "partial": tree.partial,
            "tree": tree.root.as_dict(depth, SortKey.SIZE) if tree.root else None,
        }
        try:
            return json.dumps(data)
        except RecursionError as e:
            raise DBusError(_TREE_TOO_DEEP_ERROR, "Tree is too deep for JSON output; use a smaller depth") from e

    @signal()
    def ScanStarted(self):  # type: ignore[override]
        """Emitted when a scan or cache load begins."""

    @signal()
    def Progress(self, current_path: str) -> "s":  # type: ignore[override]
        return current_path

    @signal()
    def ScanFinished(self):  # type: ignore[override]
        """Emitted when the tree is complete and can be fetched."""

    @signal()
    def ScanAborted(self):  # type: ignore[override]
        """Emitted when an aborted scan has settled."""

    @signal()
    def ScanFailed(self, reason: str) -> "s":  # type: ignore[override]
        return reason

    def _forward_event(self, event: ScanEvent) -> None:
        match event.kind:
            case EventKind.STARTED:
                self.ScanStarted()
            case EventKind.PROGRESS:
                self.Progress(event.message)
            case EventKind.FINISHED:
                self.ScanFinished()
            case EventKind.ABORTED:
                self.ScanAborted()
            case EventKind.FAILED:
                self.ScanFailed(event.message)


@contextmanager
def _invalid_state_as_dbus_error() -> Iterator[None]:
    """Turn InvalidStateError into a D-Bus error reply."""
    try:
        yield
    except InvalidStateError as e:
        raise DBusError(_INVALID_STATE_ERROR, str(e)) from e


async def _pump_events(controller: ScanController) -> None:
    """Deliver controller events on the event loop thread."""
    while True:
        controller.process_events()
        await asyncio.sleep(_PUMP_INTERVAL)


async def run_service() -> None:
    """Start the D-Bus service."""
    bus = await MessageBus(bus_type=BusType.SESSION).connect()
    service = DirStatDBusService()
    bus.export(_OBJECT_PATH, service)
    await bus.request_name(_BUS_NAME)
    log.info("D-Bus service started on %s", _BUS_NAME)
    pump = asyncio.create_task(_pump_events(service.controller))
    try:
        await bus.wait_for_disconnect()
    finally:
        pump.cancel()
        service.controller.close()


def start_service() -> None:
    """Entry point to start the D-Bus service."""
    asyncio.run(run_service())
