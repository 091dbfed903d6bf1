import threading

import pytest

from fpgakit.deviceplugin.api import HEALTHY, DeviceInfo, DeviceSpec, DeviceTree
from fpgakit.deviceplugin.manager import Manager, Notifier, UpdateInfo
from fpgakit.deviceplugin.server import ServerError


def _port_info(n):
    path = f"/dev/intel-fpga-port.{n}"
    return DeviceInfo(
        state=HEALTHY,
        nodes=[DeviceSpec(host_path=path, container_path=path, permissions="rw")],
    )


def _tree(mapping):
    return DeviceTree(mapping) if mapping is not None else None


@pytest.mark.parametrize(
    "oldmap, newmap, added, updated, removed",
    [
        (None, DeviceTree(), 0, 0, 0),
        (None, {"someDeviceType": {"intel-fpga-port.0": _port_info(0)}}, 1, 0, 0),
        (
            {"someDeviceType": {"intel-fpga-port.0": _port_info(0)}},
            {"someDeviceType": {"intel-fpga-port.1": _port_info(1)}},
            0,
            1,
            0,
        ),
        ({"someDeviceType": {"intel-fpga-port.0": _port_info(0)}}, DeviceTree(), 0, 0, 1),
    ],
)
def test_notify(oldmap, newmap, added, updated, removed):
    sent = []
    notifier = Notifier(sent.append, _tree(oldmap))
    notifier.notify(DeviceTree(newmap))
    update = sent[0] if sent else UpdateInfo()
    assert len(sent) <= 1
    assert len(update.added) == added
    assert len(update.updated) == updated
    assert len(update.removed) == removed


def test_notify_unchanged_tree_sends_nothing():
    sent = []
    notifier = Notifier(sent.append)
    tree = DeviceTree({"t": {"d": _port_info(0)}})
    notifier.notify(tree)
    notifier.notify(DeviceTree({"t": {"d": _port_info(0)}}))
    assert len(sent) == 1
    assert list(sent[0].added) == ["t"]


class _ServerStub:
    def __init__(self, stop_error=None):
        self.updates = []
        self.served = threading.Event()
        self.stopped = False
        self.stop_error = stop_error

    def serve(self, namespace):
        self.served.set()

    def update(self, devices):
        self.updates.append(devices)

    def stop(self):
        self.stopped = True
        if self.stop_error is not None:
            raise self.stop_error


class _DevicePluginStub:
    def scan(self, notifier):
        tree = DeviceTree()
        tree.add_device("testdevice", "dev1", DeviceInfo(state=HEALTHY))
        notifier.notify(tree)

    def post_allocate(self, response):
        pass

    def pre_start_container(self, request):
        pass

    def get_preferred_allocation(self, request):
        return None


class _Factory:
    def __init__(self):
        self.created = []

    def __call__(self, dev_type, post_allocate, pre_start, preferred):
        server = _ServerStub()
        self.created.append((dev_type, post_allocate, pre_start, preferred, server))
        return server


_TYPE = "ce48969398f05f33946d560708be108a"
_DEVICES = {"intel-fpga-fme.0": _port_info(0), "intel-fpga-fme.1": _port_info(1)}


@pytest.mark.parametrize(
    "existing, update, expected_servers",
    [
        (False, UpdateInfo(), 0),
        (False, UpdateInfo(added=DeviceTree({_TYPE: _DEVICES})), 1),
        (True, UpdateInfo(updated=DeviceTree({_TYPE: _DEVICES})), 1),
        (True, UpdateInfo(removed=DeviceTree({_TYPE: {}})), 0),
    ],
)
def test_handle_update(existing, update, expected_servers):
    mgr = Manager("testnamespace", _DevicePluginStub(), create_server=_Factory())
    if existing:
        mgr.servers[_TYPE] = _ServerStub()
    mgr.handle_update(update)
    assert len(mgr.servers) == expected_servers


def test_handle_update_added_server_is_served_and_updated():
    factory = _Factory()
    plugin = _DevicePluginStub()
    mgr = Manager("ns", plugin, create_server=factory)
    mgr.handle_update(UpdateInfo(added=DeviceTree({_TYPE: _DEVICES})))
    dev_type, post, pre, preferred, server = factory.created[0]
    assert dev_type == _TYPE
    assert post == plugin.post_allocate
    assert pre == plugin.pre_start_container
    assert preferred == plugin.get_preferred_allocation
    assert server.served.wait(5)
    assert server.updates == [_DEVICES]
    assert mgr.servers[_TYPE] is server


def test_handle_update_without_optional_hooks():
    class _Plain:
        def scan(self, notifier):
            pass

    factory = _Factory()
    mgr = Manager("ns", _Plain(), create_server=factory)
    mgr.handle_update(UpdateInfo(added=DeviceTree({_TYPE: {}})))
    assert factory.created[0][1:4] == (None, None, None)


def test_handle_update_updated_forwards_devices():
    stub = _ServerStub()
    mgr = Manager("ns", _DevicePluginStub(), create_server=_Factory())
    mgr.servers[_TYPE] = stub
    mgr.handle_update(UpdateInfo(updated=DeviceTree({_TYPE: _DEVICES})))
    assert stub.updates == [_DEVICES]


def test_handle_update_removed_stops_server_even_on_error():
    stub = _ServerStub(stop_error=ServerError("boom"))
    mgr = Manager("ns", _DevicePluginStub(), create_server=_Factory())
    mgr.servers[_TYPE] = stub
    mgr.handle_update(UpdateInfo(removed=DeviceTree({_TYPE: {}})))
    assert stub.stopped is True
    assert mgr.servers == {}


def test_run():
    factory = _Factory()
    mgr = Manager("testnamespace", _DevicePluginStub(), create_server=factory)
    mgr.run()
    assert list(mgr.servers) == ["testdevice"]
    server = mgr.servers["testdevice"]
    assert server.updates == [{"dev1": DeviceInfo(state=HEALTHY)}]


def test_run_propagates_scan_error():
    class _Failing:
        def scan(self, notifier):
            raise RuntimeError("scan broke")

    mgr = Manager("ns", _Failing(), create_server=_Factory())
    with pytest.raises(RuntimeError, match="scan broke"):
        mgr.run()
    assert mgr.servers == {}