"""Device plugin discovering Intel GPUs through sysfs."""

from __future__ import annotations

import logging
import os
import re
import threading
from dataclasses import dataclass
from typing import Callable

from accelplugins.devicetree import DeviceInfo, DeviceSpec, DeviceTree, Health

logger = logging.getLogger(__name__)

SYSFS_DRM_DIRECTORY = "/sys/class/drm"
DEVFS_DRI_DIRECTORY = "/dev/dri"
VENDOR_STRING = "0x8086"

NAMESPACE = "gpu.intel.com"
DEVICE_TYPE = "i915"
MONITOR_TYPE = "i915_monitoring"
MONITOR_ID = "all"

SCAN_PERIOD = 5.0

_GPU_DEVICE_RE = re.compile(r"card[0-9]+")
_CONTROL_DEVICE_RE = re.compile(r"controlD[0-9]+")

Notifier = Callable[[DeviceTree], None]


@dataclass(frozen=True)
class Options:
    """Command-line options of the GPU plugin."""

    shared_dev_num: int = 1
    enable_monitoring: bool = False

    def __post_init__(self) -> None:
        if self.shared_dev_num < 1:
            raise ValueError(
                "The number of containers sharing the same GPU must be greater than zero"
            )


class GpuDevicePlugin:
    """Periodically scans sysfs for Intel GPUs and reports them."""

    def __init__(
        self,
        sysfs_dir: str,
        devfs_dir: str,
        options: Options | None = None,
        scan_period: float = SCAN_PERIOD,
    ) -> None:
        self.sysfs_dir = sysfs_dir
        self.devfs_dir = devfs_dir
        self.options = options or Options()
        self.scan_period = scan_period
        self._stopped = threading.Event()

    def is_compatible_device(self, name: str) -> bool:
        """Tell whether ``name`` is an Intel GPU card."""
        if not _GPU_DEVICE_RE.fullmatch(name):
            logger.debug("Not compatible device: %s", name)
            return False
        vendor_path = os.path.join(self.sysfs_dir, name, "device/vendor")
        try:
            with open(vendor_path, encoding="utf-8") as vendor_file:
                vendor = vendor_file.read().strip()
        except OSError as exc:
            logger.warning("Skipping. Can't read vendor file: %s", exc)
            return False
        if vendor != VENDOR_STRING:
            logger.debug("Non-Intel GPU: %s", name)
            return False
        return True

    def _has_virtual_functions(self, name: str) -> bool:
        path = os.path.join(self.sysfs_dir, name, "device/sriov_numvfs")
        try:
            with open(path, encoding="utf-8") as numvfs_file:
                return numvfs_file.read().strip() != "0"
        except OSError:
            return False

    def scan_devices(self) -> DeviceTree:
        """Build the device tree from the current state of sysfs and devfs."""
        try:
            names = sorted(os.listdir(self.sysfs_dir))
        except OSError as exc:
            raise OSError(f"Can't read sysfs folder: {exc}") from exc

        tree = DeviceTree()
        monitor: list[DeviceSpec] = []
        for name in names:
            if not self.is_compatible_device(name):
                continue
            try:
                drm_files = sorted(
                    os.listdir(os.path.join(self.sysfs_dir, name, "device/drm"))
                )
            except OSError as exc:
                raise OSError(f"Can't read device folder: {exc}") from exc

            is_pf_with_vfs = self._has_virtual_functions(name)
            nodes: list[DeviceSpec] = []
            for drm_file in drm_files:
                if _CONTROL_DEVICE_RE.fullmatch(drm_file):
                    continue
                dev_path = os.path.join(self.devfs_dir, drm_file)
                if not os.path.exists(dev_path):
                    continue
                spec = DeviceSpec(dev_path, dev_path, "rw")
                if not is_pf_with_vfs:
                    logger.debug("Adding %s to GPU %s", dev_path, name)
                    nodes.append(spec)
                if self.options.enable_monitoring:
                    logger.debug(
                        "Adding %s to GPU %s/%s", dev_path, MONITOR_TYPE, MONITOR_ID
                    )
                    monitor.append(spec)

            if nodes:
                info = DeviceInfo(Health.HEALTHY, nodes)
                for share in range(self.options.shared_dev_num):
                    tree.add_device(DEVICE_TYPE, f"{name}-{share}", info)

        if monitor:
            tree.add_device(MONITOR_TYPE, MONITOR_ID, DeviceInfo(Health.HEALTHY, monitor))
        return tree

    def scan(self, notifier: Notifier) -> None:
        """Report the device tree to ``notifier`` until ``stop`` is called."""
        previously_found = -1
        try:
            while True:
                try:
                    tree = self.scan_devices()
                except OSError as exc:
                    logger.warning("Failed to scan: %s", exc)
                    tree = DeviceTree()

                if len(tree) != previously_found:
                    logger.info("GPU scan update: devices found: %d", len(tree))
                    previously_found = len(tree)

                notifier(tree)

                if self._stopped.wait(self.scan_period):
                    return
        finally:
            self._stopped.clear()

    def stop(self) -> None:
        """Make a running or upcoming ``scan`` return after its next report."""
        self._stopped.set()