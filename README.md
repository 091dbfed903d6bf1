# fpgakit

Building blocks for working with FPGA accelerators on Linux hosts:

- **Bitstream files** (`fpgakit.bitstream`) — read GBS and AOCX bitstreams,
  inspect their interface and accelerator UUIDs and get at the raw
  bitstream payload.
- **PCI and driver helpers** (`fpgakit.fpga`) — find PCI devices and device
  nodes through sysfs, and the request codes and argument layouts of the
  DFL and out-of-tree FPGA drivers together with a one-shot ioctl call.
- **Device-plugin core** (`fpgakit.deviceplugin`) — keep a tree of devices
  by type, detect what was added, changed or removed between scans, and run
  one server per device type that answers allocation requests.

The package has no third-party dependencies. It uses `fcntl` and Unix
sockets, so it runs on Linux.

## Installation

```
pip install fpgakit
```

Running the tests needs the `test` extra:

```
pip install "fpgakit[test]"
pytest
```

## Bitstreams

```python
from fpgakit.bitstream.loader import get_fpga_bitstream, open_bitstream

path = "/srv/fpga/69528db6eb31577a8c3668f9faa081f6/d8424dc4a4a3c413f89e433683f9040b.gbs"
with open_bitstream(path) as bs:
    print(bs.interface_uuid())          # '69528db6eb31577a8c3668f9faa081f6'
    print(bs.accelerator_type_uuid())   # 'd8424dc4a4a3c413f89e433683f9040b'
    print(bs.install_path("/srv/fpga"))
    print(bs.extra_metadata())          # {'Size': '...'}
    payload = bs.raw_bitstream_data()

bs = get_fpga_bitstream("/srv/fpga", "69528db6eb31577a8c3668f9faa081f6",
                        "d8424dc4a4a3c413f89e433683f9040b")
bs.close()
```

- `open_bitstream(fname)` picks the format from the file extension: `.gbs`
  goes to `fpgakit.bitstream.gbs.open_gbs`, `.aocx` to
  `fpgakit.bitstream.aocx.open_aocx`; anything else raises `BitstreamError`.
- `get_fpga_bitstream(bitstream_dir, region, afu)` looks for
  `<dir>/<region>/<afu>.gbs` first and then `<afu>.aocx`, and raises
  `BitstreamError` if neither exists.
- `parse_gbs(fileobj)` and `parse_aocx(fileobj)` parse from any seekable
  binary file object; the `open_*` functions own the file they open and
  close it in `close()` (both result types are context managers).

Both `FileGBS` and `FileAOCX` implement the abstract `BitstreamFile`:
`raw_bitstream_reader()`, `raw_bitstream_data()`, `interface_uuid()`,
`accelerator_type_uuid()`, `unique_uuid()`, `install_path(root)` and
`extra_metadata()`. UUIDs are returned lower case without dashes.

A GBS file must carry the expected magic GUIDs, a metadata length between 1
and 4095 bytes, JSON metadata and exactly one accelerator cluster; anything
else raises `BitstreamError`. `FileGBS.header` holds the parsed `Header`,
`FileGBS.metadata` the metadata as a dict and `FileGBS.bitstream` a
`Bitstream` whose `open()` returns an independent seekable reader and whose
`data()` returns the whole payload.

An AOCX file is an ELF container. Its `.acl.*` text sections fill the
`FileAOCX` fields (`board`, `target`, `hash`, `version` and so on) and its
`.acl.fpga.bin` section must hold a gzip-compressed GBS whose AFU UUID is
the OpenCL UUID `18b79ffa2ee54aa096ef4230dafacb5f`; that GBS is kept in
`FileAOCX.gbs`. For AOCX files `unique_uuid()` is the `hash` field.

## PCI devices and sysfs

```python
from fpgakit.fpga.pci import find_pci_device, find_sysfs_device, FpgaError

sysfs = find_sysfs_device("/dev/dfl-port.0")   # "" if the node does not exist
pci = find_pci_device(sysfs)
print(pci.bdf, pci.vendor, pci.device, pci.pci_class, pci.driver)
for vf in pci.get_vfs():
    print(vf.bdf)
```

- `find_pci_device(dev_path)` walks up from a sysfs entry to the PCI
  function that owns it and reads its `vendor`, `device`, `class`,
  `local_cpulist`, `numa_node`, `sriov_numvfs` and `sriov_totalvfs` files,
  its `physfn` (as another `PCIDevice`) and its driver name.
- `PCIDevice.num_vfs()` returns the configured number of virtual functions
  or -1; `get_vfs()` returns their `PCIDevice` objects.
- `find_sysfs_device(dev)` maps a device node (or the device holding a
  file) to its `/sys/dev/...` entry and raises for virtual devices.
- `read_files_in_directory(names, directory)` reads small files (names may
  contain glob wildcards that must match exactly one file) into a dict of
  stripped strings, skipping missing ones.
- `clean_basename(name)` returns the base name after resolving symlinks.
- `check_pci_device_type(device)` calls `device.pci_device()` and raises
  `FpgaError` unless its class is `0x120000`.

`fpgakit.fpga.ioctl` holds the request codes and `struct.Struct` argument
layouts of both FPGA drivers (`DFL_FPGA_*`, `FPGA_*`, `DFL_*_LAYOUT`,
`INTEL_*_LAYOUT`) and `ioctl_dev(dev, request, arg)`, which opens the node
read-write for one ioctl call with an integer or a mutable buffer.

## Device-plugin core

```python
from fpgakit.deviceplugin.api import HEALTHY, DeviceInfo, DeviceSpec, DeviceTree
from fpgakit.deviceplugin.server import (
    AllocateRequest, ContainerAllocateRequest, DevicePluginServer,
)

tree = DeviceTree()
tree.add_device("region-ce48969398f05f33946d560708be108a", "dfl-port.0",
                DeviceInfo(state=HEALTHY,
                           nodes=[DeviceSpec("/dev/dfl-port.0", "/dev/dfl-port.0", "rw")]))

server = DevicePluginServer("region-ce48969398f05f33946d560708be108a")
server.devices = tree["region-ce48969398f05f33946d560708be108a"]
response = server.allocate(AllocateRequest([ContainerAllocateRequest(["dfl-port.0"])]))
print(response.container_responses[0].devices)
```

`DevicePluginServer` serves one device type:

- `allocate(request)` collects device nodes, mounts and environment of the
  requested devices, raises `ServerError` for unknown or unhealthy devices,
  and passes the response to the optional `post_allocate` hook.
- `list_and_watch(stream)` calls `stream.send(devices)` with the current
  list of `Device` objects and again after every `update(devices)`, until
  `stop()`.
- `pre_start_container(request)` and `get_preferred_allocation(request)`
  call the hooks given to the constructor, or raise `ServerError` if there
  are none; `get_device_plugin_options()` reports which hooks exist.
- `serve(namespace)` listens on `<plugin_dir>/<namespace>-<dev_type>.sock`,
  registers `<namespace>/<dev_type>` with the socket given as
  `kubelet_socket`, and starts over whenever the socket file is removed,
  until `stop()` is called. `stop()` before `serve()` raises `ServerError`.

`fpgakit.deviceplugin.manager` ties this to a scanner. A scanner is any
object with a `scan(notifier)` method that calls `notifier.notify(tree)`
with `DeviceTree` objects; it may also offer `post_allocate`,
`pre_start_container` and `get_preferred_allocation` methods, which are
passed to each server. `Notifier.notify` sends an `UpdateInfo` (`added`,
`updated`, `removed`) whenever the tree changes. `Manager(namespace,
scanner).run()` runs the scan in the background, starts a server for each
added device type, updates and stops servers as types change, and returns
when the scan returns (raising its exception if it failed).
`Manager.handle_update(update)` applies a single `UpdateInfo`.

## What this package does not do

- It has no FME or Port device objects: it does not enumerate FPGA
  devices, read their properties, reset ports or program bitstreams into
  them. `fpgakit.fpga` only offers the PCI/sysfs helpers and the raw ioctl
  call described above.
- It does not derive extended resource names for accelerator functions.
- The plugin server and its registration speak newline-delimited JSON over
  Unix sockets, not the kubelet's gRPC device-plugin protocol, so it talks
  only to peers that use the same messages.
- There is no command-line program; everything is used from Python.