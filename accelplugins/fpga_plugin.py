"""Device plugin discovering FPGA regions and accelerator functions."""

from __future__ import annotations

import functools
import logging
import os
import re
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterable, MutableMapping, Protocol

from accelplugins.devicetree import DeviceInfo, DeviceSpec, DeviceTree, Health

logger = logging.getLogger(__name__)

DEVFS_DIRECTORY = "/dev"
SYSFS_DIRECTORY_OPAE = "/sys/class/fpga"
SYSFS_DIRECTORY_DFL = "/sys/class/fpga_region"

NAMESPACE = "fpga.intel.com"
ANNOTATION_NAME = "com.intel.fpga.mode"

UNHEALTHY_AFU_ID = "ffffffffffffffffffffffffffffffff"
UNHEALTHY_INTERFACE_ID = "ffffffffffffffffffffffffffffffff"

SCAN_PERIOD = 5.0

OPAE_DEVICE_RE = r"intel-fpga-dev.[0-9]+"
OPAE_PORT_RE = r"intel-fpga-port.[0-9]+"
DFL_DEVICE_RE = r"region[0-9]+"
DFL_PORT_RE = r"dfl-port\.[0-9]+"


class Mode(str, Enum):
    """How FPGA resources are advertised."""

    AF = "af"
    REGION = "region"
    REGION_DEVEL = "regiondevel"


class FmeInfo(Protocol):
    """What the plugin needs to know about an FPGA management engine."""

    name: str
    dev_path: str
    interface_uuid: str


class PortInfo(Protocol):
    """What the plugin needs to know about an FPGA port."""

    name: str
    dev_path: str
    accelerator_type_uuid: str

    def fme(self) -> FmeInfo:
        """Return the management engine the port belongs to."""
        ...


NewPort = Callable[[str], PortInfo]
AfuDevType = Callable[[str, str], str]
Notifier = Callable[[DeviceTree], None]


@dataclass(frozen=True)
class Afu:
    """An accelerator function unit reachable through a port."""

    id: str
    afu_id: str
    dev_node: str


@dataclass
class Region:
    """A reconfigurable region with its ports."""

    id: str
    interface_id: str
    dev_node: str
    afus: list[Afu] = field(default_factory=list)


@dataclass
class Device:
    """An FPGA device found in sysfs."""

    name: str
    regions: list[Region] = field(default_factory=list)


GetDevTree = Callable[[Iterable[Device]], DeviceTree]


def _spec(dev_node: str) -> DeviceSpec:
    return DeviceSpec(dev_node, dev_node, "rw")


def _region_health(region: Region) -> Health:
    if region.interface_id == UNHEALTHY_INTERFACE_ID:
        return Health.UNHEALTHY
    return Health.HEALTHY


def get_region_devel_tree(devices: Iterable[Device]) -> DeviceTree:
    """Map region interface IDs to their AF ports and FME device."""
    tree = DeviceTree()
    for device in devices:
        for region in device.regions:
            nodes = [_spec(afu.dev_node) for afu in region.afus]
            nodes.append(_spec(region.dev_node))
            tree.add_device(
                f"{Mode.REGION.value}-{region.interface_id}",
                region.id,
                DeviceInfo(_region_health(region), nodes),
            )
    return tree


def get_region_tree(devices: Iterable[Device]) -> DeviceTree:
    """Map region interface IDs to their AF ports only."""
    tree = DeviceTree()
    for device in devices:
        for region in device.regions:
            nodes = [_spec(afu.dev_node) for afu in region.afus]
            tree.add_device(
                f"{Mode.REGION.value}-{region.interface_id}",
                region.id,
                DeviceInfo(_region_health(region), nodes),
            )
    return tree


def get_afu_tree(devices: Iterable[Device], dev_type: AfuDevType) -> DeviceTree:
    """Map AFU device types, as named by ``dev_type``, to AF ports."""
    tree = DeviceTree()
    for device in devices:
        for region in device.regions:
            for afu in region.afus:
                health = (
                    Health.UNHEALTHY if afu.afu_id == UNHEALTHY_AFU_ID else Health.HEALTHY
                )
                try:
                    resource = dev_type(region.interface_id, afu.afu_id)
                except ValueError as exc:
                    logger.warning("failed to get devtype: %s", exc)
                    continue
                tree.add_device(
                    resource, afu.id, DeviceInfo(health, [_spec(afu.dev_node)])
                )
    return tree


def plugin_params(
    mode: Mode | str, afu_dev_type: AfuDevType | None = None
) -> tuple[GetDevTree, str]:
    """Return the tree builder and the container annotation value for ``mode``."""
    try:
        selected = Mode(mode)
    except ValueError:
        raise ValueError(f"Wrong mode: '{mode}'") from None

    if selected is Mode.AF:
        if afu_dev_type is None:
            raise ValueError("af mode needs a function naming AFU device types")
        return functools.partial(get_afu_tree, dev_type=afu_dev_type), ""
    if selected is Mode.REGION:
        return get_region_tree, f"{NAMESPACE}/{Mode.REGION.value}"
    return get_region_devel_tree, ""


class FpgaDevicePlugin:
    """Periodically scans sysfs for FPGA devices and reports them."""

    def __init__(
        self,
        name: str,
        sysfs_dir: str,
        devfs_dir: str,
        device_pattern: str,
        port_pattern: str,
        get_dev_tree: GetDevTree,
        new_port: NewPort,
        annotation_value: str = "",
        scan_period: float = SCAN_PERIOD,
    ) -> None:
        self.name = name
        self.sysfs_dir = sysfs_dir
        self.devfs_dir = devfs_dir
        self.device_re = re.compile(device_pattern)
        self.port_re = re.compile(port_pattern)
        self.get_dev_tree = get_dev_tree
        self.new_port = new_port
        self.annotation_value = annotation_value
        self.scan_period = scan_period
        self._stopped = threading.Event()

    def post_allocate(self, response: Iterable[MutableMapping[str, object]]) -> None:
        """Annotate each container response when programming is allowed."""
        if not self.annotation_value:
            return
        for container in response:
            container["annotations"] = {ANNOTATION_NAME: self.annotation_value}

    def _regions(self, device_files: Iterable[str]) -> list[Region]:
        regions: dict[str, Region] = {}
        for name in device_files:
            if not self.port_re.fullmatch(name):
                continue
            try:
                port = self.new_port(name)
            except (OSError, ValueError) as exc:
                raise OSError(f"can't get port info for {name}: {exc}") from exc
            try:
                fme = port.fme()
            except (OSError, ValueError) as exc:
                raise OSError(f"can't get FME info for {name}: {exc}") from exc

            afu = Afu(port.name, port.accelerator_type_uuid, port.dev_path)
            region = regions.get(fme.name)
            if region is None:
                regions[fme.name] = Region(
                    fme.name, fme.interface_uuid, fme.dev_path, [afu]
                )
            else:
                region.afus.append(afu)
        return list(regions.values())

    def scan_fpgas(self) -> DeviceTree:
        """Build the device tree from the current state of sysfs."""
        try:
            names = sorted(os.listdir(self.sysfs_dir))
        except OSError:
            logger.warning(
                "Can't read folder %s. Kernel driver not loaded?", self.sysfs_dir
            )
            return self.get_dev_tree([])

        devices = []
        for name in names:
            if not self.device_re.fullmatch(name):
                continue
            device_files = sorted(os.listdir(os.path.join(self.sysfs_dir, name)))
            regions = self._regions(device_files)
            if regions:
                devices.append(Device(name, regions))
        return self.get_dev_tree(devices)

    def scan(self, notifier: Notifier) -> None:
        """Report the device tree to ``notifier`` until ``stop`` is called."""
        try:
            while True:
                notifier(self.scan_fpgas())
                if self._stopped.wait(self.scan_period):
                    return
        finally:
            self._stopped.clear()

    def stop(self) -> None:
        """Make a running or upcoming ``scan`` return after its next report."""
        self._stopped.set()


def _new_plugin(
    name: str,
    sysfs_dir: str,
    devfs_dir: str,
    device_pattern: str,
    port_pattern: str,
    mode: Mode | str,
    new_port: NewPort,
    afu_dev_type: AfuDevType | None,
) -> FpgaDevicePlugin:
    get_dev_tree, annotation_value = plugin_params(mode, afu_dev_type)
    return FpgaDevicePlugin(
        name=name,
        sysfs_dir=sysfs_dir,
        devfs_dir=devfs_dir,
        device_pattern=device_pattern,
        port_pattern=port_pattern,
        get_dev_tree=get_dev_tree,
        new_port=new_port,
        annotation_value=annotation_value,
    )


def new_device_plugin_opae(
    sysfs_dir: str,
    devfs_dir: str,
    mode: Mode | str,
    new_port: NewPort,
    afu_dev_type: AfuDevType | None = None,
) -> FpgaDevicePlugin:
    """Create a plugin for the OPAE kernel driver layout."""
    return _new_plugin(
        "OPAE", sysfs_dir, devfs_dir, OPAE_DEVICE_RE, OPAE_PORT_RE,
        mode, new_port, afu_dev_type,
    )


def new_device_plugin_dfl(
    sysfs_dir: str,
    devfs_dir: str,
    mode: Mode | str,
    new_port: NewPort,
    afu_dev_type: AfuDevType | None = None,
) -> FpgaDevicePlugin:
    """Create a plugin for the DFL kernel driver layout."""
    return _new_plugin(
        "DFL", sysfs_dir, devfs_dir, DFL_DEVICE_RE, DFL_PORT_RE,
        mode, new_port, afu_dev_type,
    )


def _under_root(root: str, path: str) -> str:
    if not root:
        return path
    return os.path.join(root, path.lstrip("/"))


def new_device_plugin(
    mode: Mode | str,
    root_path: str,
    new_port: NewPort,
    afu_dev_type: AfuDevType | None = None,
) -> FpgaDevicePlugin:
    """Create a plugin for whichever FPGA kernel driver is loaded under ``root_path``."""
    sysfs_opae = _under_root(root_path, SYSFS_DIRECTORY_OPAE)
    devfs = _under_root(root_path, DEVFS_DIRECTORY)
    if os.path.exists(sysfs_opae):
        return new_device_plugin_opae(sysfs_opae, devfs, mode, new_port, afu_dev_type)

    sysfs_dfl = _under_root(root_path, SYSFS_DIRECTORY_DFL)
    if not os.path.exists(sysfs_dfl):
        raise FileNotFoundError(
            f"kernel driver is not loaded: neither {sysfs_opae} nor {sysfs_dfl} "
            "sysfs entry exists"
        )
    return new_device_plugin_dfl(sysfs_dfl, devfs, mode, new_port, afu_dev_type)