"""PCI device discovery through sysfs and small sysfs helpers."""

from __future__ import annotations

import glob
import os
import re
import stat
from dataclasses import dataclass

SYSFS_PCI_PREFIX = "/sys/devices/pci"
SYSFS_DEV_ROOT = "/sys/dev"
FPGA_CLASS = "0x120000"

_PCI_ADDRESS_RE = re.compile(
    r"([0-9a-fA-F]{4}):([0-9a-fA-F]{2}):([0-9a-fA-F]{2})\.([0-9a-fA-F])"
)
_DECIMAL_RE = re.compile(r"[+-]?[0-9]+")
_WILDCARDS = "?*["

_PCI_FILES = (
    "vendor",
    "device",
    "class",
    "local_cpulist",
    "numa_node",
    "sriov_numvfs",
    "sriov_totalvfs",
)


class FpgaError(Exception):
    """Raised when an FPGA or PCI device cannot be found or inspected."""


def read_files_in_directory(names, directory: str | os.PathLike) -> dict[str, str]:
    """Read several small files below ``directory`` and return their stripped contents.

    Names (or the directory) may hold glob wildcards; a pattern that does not
    match exactly one file is skipped, as are files that do not exist.
    """
    directory = os.fspath(directory)
    values: dict[str, str] = {}
    for name in names:
        fname = os.path.join(directory, name)
        if any(char in fname for char in _WILDCARDS):
            matches = glob.glob(fname)
            if len(matches) != 1:
                continue
            fname = matches[0]
        try:
            with open(fname, "rb") as handle:
                content = handle.read()
        except FileNotFoundError:
            continue
        except OSError as exc:
            raise FpgaError(f"{directory}: unable to read file {name!r}: {exc}") from exc
        values[name] = content.decode("utf-8", errors="replace").strip()
    return values


def clean_basename(name: str | os.PathLike) -> str:
    """Return the base name of ``name`` after resolving symlinks, if possible."""
    try:
        real_path = os.path.realpath(name, strict=True)
    except OSError:
        real_path = os.fspath(name)
    return os.path.basename(real_path)


@dataclass
class PCIDevice:
    """The most useful sysfs information about a PCI device."""

    sysfs_path: str = ""
    bdf: str = ""
    vendor: str = ""
    device: str = ""
    pci_class: str = ""
    cpus: str = ""
    numa: str = ""
    vfs: str = ""
    total_vfs: str = ""
    driver: str = ""
    phys_fn: PCIDevice | None = None

    def num_vfs(self) -> int:
        """Return the number of configured virtual functions, or -1 if unknown."""
        if _DECIMAL_RE.fullmatch(self.vfs):
            value = int(self.vfs)
            if -(2**31) <= value < 2**31:
                return value
        return -1

    def get_vfs(self) -> list[PCIDevice]:
        """Return the PCI devices of the configured virtual functions."""
        if self.num_vfs() <= 0:
            return []
        dirs = sorted(glob.glob(os.path.join(self.sysfs_path, "virtfn*")))
        return [find_pci_device(path) for path in dirs]


def find_pci_device(dev_path: str | os.PathLike) -> PCIDevice:
    """Return the PCI device that owns the given sysfs entry."""
    try:
        real_path = os.path.realpath(dev_path, strict=True)
    except OSError as exc:
        raise FpgaError(f"failed get realpath for {os.fspath(dev_path)}: {exc}") from exc

    sysfs_path = bdf = ""
    path = real_path
    while path.startswith(SYSFS_PCI_PREFIX):
        match = _PCI_ADDRESS_RE.fullmatch(os.path.basename(path))
        if match is not None:
            sysfs_path, bdf = path, match.group(0)
            break
        parent = os.path.dirname(path)
        if parent == path:
            break
        path = parent
    if not sysfs_path or not bdf:
        raise FpgaError(f"can't find PCI device address for sysfs entry {real_path}")

    values = read_files_in_directory(_PCI_FILES, sysfs_path)
    pci = PCIDevice(
        sysfs_path=sysfs_path,
        bdf=bdf,
        vendor=values.get("vendor", ""),
        device=values.get("device", ""),
        pci_class=values.get("class", ""),
        cpus=values.get("local_cpulist", ""),
        numa=values.get("numa_node", ""),
        vfs=values.get("sriov_numvfs", ""),
        total_vfs=values.get("sriov_totalvfs", ""),
    )
    if not pci.vendor or not pci.device:
        raise FpgaError(
            f"{sysfs_path} vendor or device id can't be empty "
            f"({pci.vendor!r}/{pci.device!r})"
        )
    try:
        pci.phys_fn = find_pci_device(os.path.join(sysfs_path, "physfn"))
    except FpgaError:
        pass
    try:
        driver = os.path.realpath(os.path.join(sysfs_path, "driver"), strict=True)
    except OSError:
        pass
    else:
        pci.driver = os.path.basename(driver)
    return pci


def find_sysfs_device(dev: str | os.PathLike) -> str:
    """Return the sysfs entry for a device node or for the device holding a file.

    Returns "" if ``dev`` does not exist; raises for virtual devices.
    """
    try:
        info = os.stat(dev)
    except FileNotFoundError:
        return ""
    except OSError as exc:
        raise FpgaError(f"unable to get stat for {os.fspath(dev)}: {exc}") from exc

    dev_type = "block"
    rdev = info.st_dev
    if stat.S_ISCHR(info.st_mode) or stat.S_ISBLK(info.st_mode):
        rdev = info.st_rdev
        if stat.S_ISCHR(info.st_mode):
            dev_type = "char"

    major = os.major(rdev)
    minor = os.minor(rdev)
    if major == 0:
        raise FpgaError(f"{os.fspath(dev)} is a virtual device node")
    dev_path = f"{SYSFS_DEV_ROOT}/{dev_type}/{major}:{minor}"
    try:
        return os.path.realpath(dev_path, strict=True)
    except OSError as exc:
        raise FpgaError(f"failed get realpath for {dev_path}: {exc}") from exc


def check_pci_device_type(device) -> None:
    """Raise unless the device's PCI function is of the FPGA class."""
    pci = device.pci_device()
    if pci.pci_class != FPGA_CLASS:
        raise FpgaError(
            f"unsupported PCI class device {pci.bdf}  VID={pci.vendor} "
            f"PID={pci.device} Class={pci.pci_class}"
        )