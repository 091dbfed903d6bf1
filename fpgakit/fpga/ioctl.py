"""FPGA driver ioctl request codes, argument layouts and the ioctl call."""

from __future__ import annotations

import fcntl
import os
import struct

# Upstream FPGA DFL kernel driver requests.
DFL_FPGA_GET_API_VERSION = 0xB600
DFL_FPGA_CHECK_EXTENSION = 0xB601
DFL_FPGA_PORT_RESET = 0xB640
DFL_FPGA_PORT_GET_INFO = 0xB641
DFL_FPGA_PORT_GET_REGION_INFO = 0xB642
DFL_FPGA_PORT_DMA_MAP = 0xB643
DFL_FPGA_PORT_DMA_UNMAP = 0xB644
DFL_FPGA_FME_PORT_PR = 0xB680
DFL_FPGA_FME_PORT_RELEASE = 0x4004B681
DFL_FPGA_FME_PORT_ASSIGN = 0x4004B682

DFL_PORT_REGION_READ = 0x1
DFL_PORT_REGION_WRITE = 0x2
DFL_PORT_REGION_MMAP = 0x4

DFL_PORT_REGION_INDEX_AFU = 0x0
DFL_PORT_REGION_INDEX_STP = 0x1

# Argument layouts of the DFL driver requests.
DFL_PORT_INFO_LAYOUT = struct.Struct("=4I")  # argsz, flags, regions, umsgs
DFL_PORT_REGION_INFO_LAYOUT = struct.Struct("=4I2Q")  # argsz, flags, index, padding, size, offset
DFL_PORT_DMA_MAP_LAYOUT = struct.Struct("=2I3Q")  # argsz, flags, addr, length, iova
DFL_PORT_DMA_UNMAP_LAYOUT = struct.Struct("=2IQ")  # argsz, flags, iova
DFL_FME_PORT_PR_LAYOUT = struct.Struct("=4IQ")  # argsz, flags, port_id, buffer_size, buffer_address
DFL_FME_PORT_ID_LAYOUT = struct.Struct("=I")  # port id for release/assign

# Out-of-tree Intel FPGA kernel driver requests.
FPGA_GET_API_VERSION = 0xB500
FPGA_CHECK_EXTENSION = 0xB501
FPGA_PORT_RESET = 0xB540
FPGA_PORT_GET_INFO = 0xB541
FPGA_PORT_GET_REGION_INFO = 0xB542
FPGA_PORT_DMA_MAP = 0xB543
FPGA_PORT_DMA_UNMAP = 0xB544
FPGA_PORT_UMSG_ENABLE = 0xB545
FPGA_PORT_UMSG_DISABLE = 0xB546
FPGA_PORT_UMSG_SET_MODE = 0xB547
FPGA_PORT_UMSG_SET_BASE_ADDR = 0xB548
FPGA_PORT_ERR_SET_IRQ = 0xB549
FPGA_PORT_UAFU_SET_IRQ = 0xB54A
FPGA_FME_PORT_PR = 0xB580
FPGA_FME_PORT_RELEASE = 0xB581
FPGA_FME_PORT_ASSIGN = 0xB582
FPGA_FME_GET_INFO = 0xB583
FPGA_FME_ERR_SET_IRQ = 0xB584

FPGA_PORT_CAP_ERR_IRQ = 0x1
FPGA_PORT_CAP_UAFU_IRQ = 0x2

FPGA_REGION_READ = 0x1
FPGA_REGION_WRITE = 0x2
FPGA_REGION_MMAP = 0x4

FPGA_PORT_INDEX_UAFU = 0x0
FPGA_PORT_INDEX_STP = 0x1

FPGA_DMA_TO_DEV = 0x1
FPGA_DMA_FROM_DEV = 0x2

FPGA_FME_CAP_ERR_IRQ = 0x1

# Argument layouts of the Intel FPGA driver requests.
INTEL_PORT_INFO_LAYOUT = struct.Struct("=6I")  # argsz, flags, capability, regions, umsgs, uafu_irqs
INTEL_PORT_REGION_INFO_LAYOUT = struct.Struct("=4I2Q")  # argsz, flags, index, padding, size, offset
INTEL_PORT_DMA_MAP_LAYOUT = struct.Struct("=2I3Q")  # argsz, flags, addr, length, iova
INTEL_PORT_DMA_UNMAP_LAYOUT = struct.Struct("=2IQ")  # argsz, flags, iova
INTEL_PORT_UMSG_CFG_LAYOUT = struct.Struct("=3I")  # argsz, flags, bitmap
INTEL_PORT_UMSG_BASE_ADDR_LAYOUT = struct.Struct("=2IQ")  # argsz, flags, iova
INTEL_PORT_ERR_IRQ_SET_LAYOUT = struct.Struct("=2Ii")  # argsz, flags, evtfd
INTEL_PORT_UAFU_IRQ_SET_LAYOUT = struct.Struct("=4I")  # argsz, flags, start, count
INTEL_FME_PORT_PR_LAYOUT = struct.Struct("=4I2Q")  # argsz, flags, port_id, buffer_size, buffer_address, status
INTEL_FME_PORT_RELEASE_LAYOUT = struct.Struct("=3I")  # argsz, flags, id
INTEL_FME_PORT_ASSIGN_LAYOUT = struct.Struct("=3I")  # argsz, flags, id
INTEL_FME_INFO_LAYOUT = struct.Struct("=3I")  # argsz, flags, capability
INTEL_FME_ERR_IRQ_SET_LAYOUT = struct.Struct("=2Ii")  # argsz, flags, evtfd


def ioctl_dev(dev: str | os.PathLike, request: int, arg: int | bytearray | memoryview) -> int:
    """Open ``dev`` read-write for a single ioctl call and return its result.

    ``arg`` is either an integer or a mutable buffer that the driver may fill
    in place. Failures raise :class:`OSError`.
    """
    if isinstance(arg, (bytes, str)):
        raise TypeError("ioctl argument buffer must be mutable")
    fd = os.open(dev, os.O_RDWR)
    try:
        if isinstance(arg, int):
            return fcntl.ioctl(fd, request, arg)
        return fcntl.ioctl(fd, request, arg, True)
    finally:
        os.close(fd)