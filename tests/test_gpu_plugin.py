import pytest

from accelplugins.devicetree import DeviceSpec, Health
from accelplugins.gpu_plugin import (
    DEVICE_TYPE,
    MONITOR_ID,
    MONITOR_TYPE,
    GpuDevicePlugin,
    Options,
)

CASES = [
    ("no sysfs mounted", [], [], {}, Options(), 0, 0),
    ("no device installed", [], ["card0"], {}, Options(), 0, 0),
    (
        "missing dev node",
        [],
        ["card0/device"],
        {"card0/device/vendor": b"0x8086"},
        Options(),
        0,
        0,
    ),
    (
        "one device",
        ["card0"],
        ["card0/device/drm/card0", "card0/device/drm/controlD64"],
        {"card0/device/vendor": b"0x8086"},
        Options(),
        1,
        0,
    ),
    (
        "sriov-1-pf-no-vfs + monitoring",
        ["card0"],
        ["card0/device/drm/card0", "card0/device/drm/controlD64"],
        {"card0/device/vendor": b"0x8086", "card0/device/sriov_numvfs": b"0"},
        Options(enable_monitoring=True),
        1,
        1,
    ),
    (
        "two sysfs records but one dev node",
        ["card0"],
        ["card0/device/drm/card0", "card1/device/drm/card1"],
        {"card0/device/vendor": b"0x8086", "card1/device/vendor": b"0x8086"},
        Options(),
        1,
        0,
    ),
    (
        "sriov-1-pf-and-2-vfs",
        ["card0", "card1", "card2"],
        ["card0/device/drm/card0", "card1/device/drm/card1", "card2/device/drm/card2"],
        {
            "card0/device/vendor": b"0x8086",
            "card0/device/sriov_numvfs": b"2",
            "card1/device/vendor": b"0x8086",
            "card2/device/vendor": b"0x8086",
        },
        Options(),
        2,
        0,
    ),
    (
        "two devices with 13 shares + monitoring",
        ["card0", "card1"],
        ["card0/device/drm/card0", "card1/device/drm/card1"],
        {"card0/device/vendor": b"0x8086", "card1/device/vendor": b"0x8086"},
        Options(shared_dev_num=13, enable_monitoring=True),
        26,
        1,
    ),
    (
        "wrong vendor",
        ["card0"],
        ["card0/device/drm/card0"],
        {"card0/device/vendor": b"0xbeef"},
        Options(),
        0,
        0,
    ),
    (
        "wrong vendor with 13 shares + monitoring",
        ["card0"],
        ["card0/device/drm/card0"],
        {"card0/device/vendor": b"0xbeef"},
        Options(shared_dev_num=13, enable_monitoring=True),
        0,
        0,
    ),
    ("no sysfs records", [], ["non_gpu_card"], {}, Options(), 0, 0),
]


def _create(root, devfsdirs, sysfsdirs, sysfsfiles):
    sysfs = root / "sys"
    devfs = root / "dev"
    for name in devfsdirs:
        (devfs / name).mkdir(parents=True, exist_ok=True)
    for name in sysfsdirs:
        (sysfs / name).mkdir(parents=True, exist_ok=True)
    for name, body in sysfsfiles.items():
        (sysfs / name).write_bytes(body)
    return str(sysfs), str(devfs)


@pytest.mark.parametrize(
    "name,devfsdirs,sysfsdirs,sysfsfiles,options,devs,monitors",
    CASES,
    ids=[c[0] for c in CASES],
)
def test_scan(tmp_path, name, devfsdirs, sysfsdirs, sysfsfiles, options, devs, monitors):
    sysfs, devfs = _create(tmp_path, devfsdirs, sysfsdirs, sysfsfiles)
    plugin = GpuDevicePlugin(sysfs, devfs, options)
    trees = []
    plugin.stop()
    plugin.scan(trees.append)
    assert len(trees) == 1
    tree = trees[0]
    assert len(tree.get(DEVICE_TYPE, {})) == devs
    assert len(tree.get(MONITOR_TYPE, {})) == monitors


def test_scan_devices_node_details(tmp_path):
    sysfs, devfs = _create(
        tmp_path,
        ["card0"],
        ["card0/device/drm/card0", "card0/device/drm/controlD64"],
        {"card0/device/vendor": b"0x8086"},
    )
    plugin = GpuDevicePlugin(sysfs, devfs, Options(enable_monitoring=True))
    tree = plugin.scan_devices()
    dev_path = str(tmp_path / "dev" / "card0")
    expected_nodes = (DeviceSpec(dev_path, dev_path, "rw"),)
    assert set(tree[DEVICE_TYPE]) == {"card0-0"}
    assert tree[DEVICE_TYPE]["card0-0"].nodes == expected_nodes
    assert tree[DEVICE_TYPE]["card0-0"].health is Health.HEALTHY
    assert tree[MONITOR_TYPE][MONITOR_ID].nodes == expected_nodes


def test_scan_devices_missing_sysfs_raises(tmp_path):
    plugin = GpuDevicePlugin(str(tmp_path / "sys"), str(tmp_path / "dev"))
    with pytest.raises(OSError):
        plugin.scan_devices()


def test_is_compatible_device(tmp_path):
    sysfs, devfs = _create(
        tmp_path,
        [],
        ["card0/device", "card1/device", "renderD128"],
        {"card0/device/vendor": b"0x8086\n", "card1/device/vendor": b"0xbeef"},
    )
    plugin = GpuDevicePlugin(sysfs, devfs)
    assert plugin.is_compatible_device("card0") is True
    assert plugin.is_compatible_device("card1") is False
    assert plugin.is_compatible_device("renderD128") is False
    assert plugin.is_compatible_device("card9") is False


def test_stop_before_scan_reports_once(tmp_path):
    plugin = GpuDevicePlugin(str(tmp_path / "sys"), str(tmp_path / "dev"))
    reports = []
    plugin.stop()
    plugin.scan(reports.append)
    assert len(reports) == 1
    assert reports[0] == {}


def test_options_reject_zero_shares():
    with pytest.raises(ValueError):
        Options(shared_dev_num=0)