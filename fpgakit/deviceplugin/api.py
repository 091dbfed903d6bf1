"""Data types for reporting available devices to the kubelet."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

HEALTHY = "Healthy"
UNHEALTHY = "Unhealthy"


@dataclass(frozen=True)
class DeviceSpec:
    """A device node to expose inside a container."""

    host_path: str = ""
    container_path: str = ""
    permissions: str = ""


@dataclass(frozen=True)
class Mount:
    """A host path to mount inside a container."""

    container_path: str = ""
    host_path: str = ""
    read_only: bool = False


@dataclass
class DeviceInfo:
    """Information about one device maintained by a device plugin."""

    state: str = ""
    nodes: list[DeviceSpec] = field(default_factory=list)
    mounts: list[Mount] = field(default_factory=list)
    envs: dict[str, str] = field(default_factory=dict)
    topology: Any = None


class DeviceTree(dict[str, dict[str, DeviceInfo]]):
    """Mapping of device type to device ID to device information."""

    def add_device(self, dev_type: str, dev_id: str, info: DeviceInfo) -> None:
        """Add or replace the information for ``dev_id`` under ``dev_type``."""
        self.setdefault(dev_type, {})[dev_id] = info