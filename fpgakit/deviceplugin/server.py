"""Per-resource device plugin server that reports devices and serves allocations."""

from __future__ import annotations

import json
import logging
import os
import socket
import threading
import time
from collections import deque
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Callable, Iterator

from fpgakit.deviceplugin.api import HEALTHY, DeviceInfo, DeviceSpec, Mount

logger = logging.getLogger(__name__)

DEVICE_PLUGIN_PATH = "/var/lib/kubelet/device-plugins/"
KUBELET_SOCKET = DEVICE_PLUGIN_PATH + "kubelet.sock"
API_VERSION = "v1beta1"

_PROBE_INTERVAL = 0.05
_WATCH_INTERVAL = 0.1
_ACCEPT_TIMEOUT = 0.2
_REGISTER_TIMEOUT = 10.0
_IN_USE_TIMEOUT = 1.0
_START_TIMEOUT = 10.0


class ServerError(Exception):
    """Raised when a device plugin server cannot serve, register or allocate."""


class _State(Enum):
    UNINITIALIZED = "uninitialized"
    SERVING = "serving"
    TERMINATING = "terminating"


@dataclass(frozen=True)
class DevicePluginOptions:
    """Optional features of a device plugin announced to the kubelet."""

    pre_start_required: bool = False
    get_preferred_allocation_available: bool = False


@dataclass(frozen=True)
class Device:
    """A device as reported to the kubelet."""

    id: str
    health: str
    topology: Any = None


@dataclass
class ContainerAllocateRequest:
    """Devices requested for one container."""

    devices_ids: list[str] = field(default_factory=list)


@dataclass
class AllocateRequest:
    """An allocation request covering several containers."""

    container_requests: list[ContainerAllocateRequest] = field(default_factory=list)


@dataclass
class ContainerAllocateResponse:
    """What a container gets for its allocated devices."""

    devices: list[DeviceSpec] = field(default_factory=list)
    mounts: list[Mount] = field(default_factory=list)
    envs: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)


@dataclass
class AllocateResponse:
    """Allocation results, one per requested container."""

    container_responses: list[ContainerAllocateResponse] = field(default_factory=list)


class _Channel:
    """Bounded, closable queue of device updates."""

    def __init__(self, capacity: int) -> None:
        self._capacity = capacity
        self._items: deque = deque()
        self._closed = False
        self._cond = threading.Condition()

    def put(self, item) -> None:
        with self._cond:
            while len(self._items) >= self._capacity and not self._closed:
                self._cond.wait()
            if self._closed:
                raise ServerError("update sent to a stopped server")
            self._items.append(item)
            self._cond.notify_all()

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    def __iter__(self) -> Iterator:
        while True:
            with self._cond:
                while not self._items and not self._closed:
                    self._cond.wait()
                if not self._items:
                    return
                item = self._items.popleft()
                self._cond.notify_all()
            yield item


def _write_message(conn: socket.socket, message: dict) -> None:
    conn.sendall(json.dumps(message).encode("utf-8") + b"\n")


def _read_message(reader) -> dict | None:
    line = reader.readline()
    if not line:
        return None
    message = json.loads(line)
    if not isinstance(message, dict):
        raise ValueError("message is not a JSON object")
    return message


def _server_alive(path: str, timeout: float) -> bool:
    """Return True if something accepts connections at ``path`` within ``timeout``."""
    deadline = time.monotonic() + timeout
    while True:
        with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as probe:
            probe.settimeout(max(deadline - time.monotonic(), _PROBE_INTERVAL))
            try:
                probe.connect(path)
            except OSError:
                pass
            else:
                return True
        if time.monotonic() >= deadline:
            return False
        time.sleep(_PROBE_INTERVAL)


def _watch_file(path: str) -> None:
    """Block until ``path`` is removed or renamed away."""
    while os.path.lexists(path):
        time.sleep(_WATCH_INTERVAL)


def _allocate_request_from(params: dict) -> AllocateRequest:
    return AllocateRequest(
        [
            ContainerAllocateRequest(list(request.get("devices_ids") or []))
            for request in params.get("container_requests") or []
        ]
    )


class _SocketStream:
    """Sends device lists of ListAndWatch over a client connection."""

    def __init__(self, conn: socket.socket) -> None:
        self._conn = conn

    def send(self, devices: list[Device]) -> None:
        _write_message(self._conn, {"result": {"devices": [asdict(d) for d in devices]}})


class _PluginListener:
    """Unix socket endpoint answering JSON-line requests for one server."""

    def __init__(self, path: str, server: DevicePluginServer) -> None:
        self._path = path
        self._server = server
        self._sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            self._sock.bind(path)
            self._sock.listen()
        except OSError:
            self._sock.close()
            raise
        self._sock.settimeout(_ACCEPT_TIMEOUT)
        self._lock = threading.Lock()
        self._connections: set[socket.socket] = set()
        self._closed = False
        self._handlers: dict[str, Callable[[dict], Any]] = {
            "GetDevicePluginOptions": lambda params: asdict(
                server.get_device_plugin_options()
            ),
            "Allocate": lambda params: asdict(
                server.allocate(_allocate_request_from(params))
            ),
            "PreStartContainer": self._pre_start_container,
            "GetPreferredAllocation": server.get_preferred_allocation,
        }

    def _pre_start_container(self, params: dict) -> dict:
        self._server.pre_start_container(params)
        return {}

    def start(self) -> None:
        threading.Thread(target=self._accept_loop, daemon=True).start()

    def _accept_loop(self) -> None:
        while True:
            with self._lock:
                if self._closed:
                    return
            try:
                conn, _ = self._sock.accept()
            except socket.timeout:
                continue
            except OSError:
                return
            conn.settimeout(None)
            with self._lock:
                if self._closed:
                    conn.close()
                    return
                self._connections.add(conn)
            threading.Thread(target=self._handle, args=(conn,), daemon=True).start()

    def _handle(self, conn: socket.socket) -> None:
        try:
            with conn.makefile("rb") as reader:
                while (message := _read_message(reader)) is not None:
                    self._dispatch(conn, message)
        except (OSError, ValueError):
            pass
        finally:
            with self._lock:
                self._connections.discard(conn)
            conn.close()

    def _dispatch(self, conn: socket.socket, message: dict) -> None:
        method = message.get("method")
        params = message.get("params") or {}
        if method == "ListAndWatch":
            try:
                self._server.list_and_watch(_SocketStream(conn))
            except ServerError as exc:
                logger.warning("ListAndWatch for %s ended: %s", self._server.dev_type, exc)
            return
        handler = self._handlers.get(method)
        if handler is None:
            _write_message(conn, {"error": f"unknown method {method!r}"})
            return
        try:
            result = handler(params)
        except Exception as exc:  # reported to the client, the server keeps running
            _write_message(conn, {"error": str(exc)})
            return
        _write_message(conn, {"result": result})

    def stop(self) -> None:
        with self._lock:
            self._closed = True
            connections = list(self._connections)
        self._sock.close()
        for conn in connections:
            try:
                conn.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            conn.close()
        try:
            os.unlink(self._path)
        except FileNotFoundError:
            pass


PostAllocateHook = Callable[[AllocateResponse], None]
PreStartContainerHook = Callable[[Any], None]
PreferredAllocationHook = Callable[[Any], Any]


class DevicePluginServer:
    """Serves one device type to the kubelet and keeps its device list current."""

    def __init__(
        self,
        dev_type: str,
        post_allocate: PostAllocateHook | None = None,
        pre_start_container: PreStartContainerHook | None = None,
        get_preferred_allocation: PreferredAllocationHook | None = None,
        *,
        plugin_dir: str = DEVICE_PLUGIN_PATH,
        kubelet_socket: str = KUBELET_SOCKET,
    ) -> None:
        self.dev_type = dev_type
        self.devices: dict[str, DeviceInfo] = {}
        self.post_allocate = post_allocate
        self.pre_start_container_hook = pre_start_container
        self.preferred_allocation_hook = get_preferred_allocation
        self.plugin_dir = plugin_dir
        self.kubelet_socket = kubelet_socket
        self._updates = _Channel(1)
        self._state = _State.UNINITIALIZED
        self._state_lock = threading.Lock()
        self._listener: _PluginListener | None = None

    def get_device_plugin_options(self) -> DevicePluginOptions:
        """Return the optional features this plugin supports."""
        return DevicePluginOptions(
            pre_start_required=self.pre_start_container_hook is not None,
            get_preferred_allocation_available=self.preferred_allocation_hook is not None,
        )

    def _send_devices(self, stream) -> None:
        devices = [
            Device(id=dev_id, health=info.state, topology=info.topology)
            for dev_id, info in self.devices.items()
        ]
        logger.debug("Sending to kubelet %s", devices)
        try:
            stream.send(devices)
        except Exception as exc:
            try:
                self.stop()
            except ServerError:
                pass
            raise ServerError(f"Cannot update device list: {exc}") from exc

    def list_and_watch(self, stream) -> None:
        """Send the device list to ``stream`` now and after every update until stopped."""
        logger.debug("Started ListAndWatch for %s", self.dev_type)
        self._send_devices(stream)
        for devices in self._updates:
            self.devices = devices
            self._send_devices(stream)

    def allocate(self, request: AllocateRequest) -> AllocateResponse:
        """Return device nodes, mounts and environment for the requested devices."""
        response = AllocateResponse()
        for container_request in request.container_requests:
            container_response = ContainerAllocateResponse()
            for dev_id in container_request.devices_ids:
                device = self.devices.get(dev_id)
                if device is None:
                    raise ServerError(
                        f"Invalid allocation request with non-existing device {dev_id}"
                    )
                if device.state != HEALTHY:
                    raise ServerError(
                        f"Invalid allocation request with unhealthy device {dev_id}"
                    )
                container_response.devices.extend(device.nodes)
                container_response.mounts.extend(device.mounts)
                container_response.envs.update(device.envs)
            response.container_responses.append(container_response)
        if self.post_allocate is not None:
            self.post_allocate(response)
        return response

    def pre_start_container(self, request) -> None:
        """Run the plugin's pre-start hook for a container."""
        if self.pre_start_container_hook is None:
            raise ServerError(
                "pre_start_container() should not be called as this device plugin "
                "doesn't implement it"
            )
        self.pre_start_container_hook(request)

    def get_preferred_allocation(self, request):
        """Return the plugin's preferred allocation for ``request``."""
        if self.preferred_allocation_hook is None:
            raise ServerError(
                "get_preferred_allocation() should not be called as this device plugin "
                "doesn't implement it"
            )
        return self.preferred_allocation_hook(request)

    def serve(self, namespace: str) -> None:
        """Serve the device type under ``namespace`` until stopped."""
        self._setup_and_serve(namespace, self.plugin_dir, self.kubelet_socket)

    def stop(self) -> None:
        """Stop serving and end all ListAndWatch streams."""
        if self._listener is None:
            raise ServerError("Can't stop a server that was never started; call serve() first")
        self._set_state(_State.TERMINATING)
        self._listener.stop()
        self._updates.close()

    def update(self, devices: dict[str, DeviceInfo]) -> None:
        """Hand a new device list to the ListAndWatch loop."""
        self._updates.put(devices)

    def _set_state(self, state: _State) -> None:
        with self._state_lock:
            self._state = state

    def _get_state(self) -> _State:
        with self._state_lock:
            return self._state

    def _setup_and_serve(self, namespace: str, plugin_dir: str, kubelet_socket: str) -> None:
        resource_name = f"{namespace}/{self.dev_type}"
        plugin_prefix = f"{namespace}-{self.dev_type}"
        self._set_state(_State.SERVING)

        while self._get_state() is _State.SERVING:
            endpoint = plugin_prefix + ".sock"
            plugin_socket = os.path.join(plugin_dir, endpoint)

            if _server_alive(plugin_socket, _IN_USE_TIMEOUT):
                raise ServerError(f"Socket {plugin_socket} is already in use")
            try:
                os.remove(plugin_socket)
            except OSError:
                pass

            try:
                listener = _PluginListener(plugin_socket, self)
            except OSError as exc:
                raise ServerError(f"Failed to listen to plugin socket: {exc}") from exc
            self._listener = listener
            logger.info("Start server for %s at: %s", self.dev_type, plugin_socket)
            listener.start()

            try:
                if not _server_alive(plugin_socket, _START_TIMEOUT):
                    raise ServerError(f"Failed dial context at {plugin_socket}")
                self._register_with_kubelet(kubelet_socket, endpoint, resource_name)
            except BaseException:
                listener.stop()
                raise
            logger.info("Device plugin for %s registered", self.dev_type)

            # The kubelet removes plugin sockets when it (re)starts.
            _watch_file(plugin_socket)

            if self._get_state() is _State.SERVING:
                listener.stop()
                logger.info("Socket %s removed, restarting", plugin_socket)
            else:
                logger.info("Socket %s shut down", plugin_socket)

    def _register_with_kubelet(
        self, kubelet_socket: str, endpoint: str, resource_name: str
    ) -> None:
        request = {
            "method": "Register",
            "params": {
                "version": API_VERSION,
                "endpoint": endpoint,
                "resource_name": resource_name,
                "options": asdict(self.get_device_plugin_options()),
            },
        }
        try:
            with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as conn:
                conn.settimeout(_REGISTER_TIMEOUT)
                conn.connect(kubelet_socket)
                _write_message(conn, request)
                with conn.makefile("rb") as reader:
                    reply = _read_message(reader)
        except OSError as exc:
            raise ServerError(f"Cannot connect to kubelet service: {exc}") from exc
        except ValueError as exc:
            raise ServerError(f"Cannot register to kubelet service: {exc}") from exc
        if reply is None:
            raise ServerError("Cannot register to kubelet service: no reply")
        if "error" in reply:
            raise ServerError(f"Cannot register to kubelet service: {reply['error']}")