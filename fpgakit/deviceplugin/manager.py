"""Life cycle of per-device-type servers driven by a scanner's results."""

from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass, field
from typing import Any, Callable

from fpgakit.deviceplugin.api import DeviceTree
from fpgakit.deviceplugin.server import DevicePluginServer, ServerError

logger = logging.getLogger(__name__)


@dataclass
class UpdateInfo:
    """Device types added, updated and removed since the previous scan."""

    added: DeviceTree = field(default_factory=DeviceTree)
    updated: DeviceTree = field(default_factory=DeviceTree)
    removed: DeviceTree = field(default_factory=DeviceTree)


class Notifier:
    """Receives device trees from a scanner and sends out what changed."""

    def __init__(
        self,
        send: Callable[[UpdateInfo], None],
        device_tree: DeviceTree | None = None,
    ) -> None:
        self._send = send
        self._device_tree = DeviceTree(device_tree or {})

    def notify(self, new_tree: DeviceTree) -> None:
        """Compare ``new_tree`` with the previous tree and send any differences."""
        remaining = DeviceTree(self._device_tree)
        added = DeviceTree()
        updated = DeviceTree()
        for dev_type, devices in new_tree.items():
            if dev_type in remaining:
                if remaining.pop(dev_type) != devices:
                    updated[dev_type] = devices
            else:
                added[dev_type] = devices

        if added or updated or remaining:
            self._send(UpdateInfo(added=added, updated=updated, removed=remaining))

        self._device_tree = DeviceTree(new_tree)


@dataclass
class _Failure:
    error: BaseException


_DONE = object()


class Manager:
    """Runs a device scanner and keeps one server per discovered device type."""

    def __init__(
        self,
        namespace: str,
        device_plugin: Any,
        create_server: Callable[..., Any] | None = None,
    ) -> None:
        self.namespace = namespace
        self.device_plugin = device_plugin
        self.servers: dict[str, Any] = {}
        self._create_server = create_server or DevicePluginServer
        self._events: queue.Queue | None = None

    def run(self) -> None:
        """Scan in the background and apply updates until the scanner returns.

        An exception raised by the scanner, or by a server failing to serve
        while running, is raised from here.
        """
        events: queue.Queue = queue.Queue()
        self._events = events

        def scan() -> None:
            try:
                self.device_plugin.scan(Notifier(events.put))
            except BaseException as exc:
                logger.error("Device scan failed: %s", exc)
                events.put(_Failure(exc))
            else:
                events.put(_DONE)

        threading.Thread(target=scan, name="device-scan", daemon=True).start()
        try:
            while (event := events.get()) is not _DONE:
                if isinstance(event, _Failure):
                    raise event.error
                self.handle_update(event)
        finally:
            self._events = None

    def _hook(self, name: str) -> Callable | None:
        hook = getattr(self.device_plugin, name, None)
        return hook if callable(hook) else None

    def _serve(self, dev_type: str, server: Any) -> None:
        try:
            server.serve(self.namespace)
        except Exception as exc:
            error = ServerError(f"Failed to serve {self.namespace}/{dev_type}: {exc}")
            error.__cause__ = exc
            logger.error("%s", error)
            events = self._events
            if events is not None:
                events.put(_Failure(error))

    def handle_update(self, update: UpdateInfo) -> None:
        """Start, update and stop servers according to ``update``."""
        logger.debug("Received dev updates: %s", update)
        for dev_type, devices in update.added.items():
            server = self._create_server(
                dev_type,
                self._hook("post_allocate"),
                self._hook("pre_start_container"),
                self._hook("get_preferred_allocation"),
            )
            self.servers[dev_type] = server
            threading.Thread(
                target=self._serve,
                args=(dev_type, server),
                name=f"serve-{dev_type}",
                daemon=True,
            ).start()
            server.update(devices)
        for dev_type, devices in update.updated.items():
            self.servers[dev_type].update(devices)
        for dev_type in update.removed:
            server = self.servers.pop(dev_type)
            try:
                server.stop()
            except ServerError as exc:
                logger.error("Unable to stop server for %r: %s", dev_type, exc)