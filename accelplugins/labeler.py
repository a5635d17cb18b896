"""Node feature labels for Intel GPUs found in sysfs."""

from __future__ import annotations

import glob
import logging
import os
import re
import sys
from typing import Callable, MutableMapping

logger = logging.getLogger(__name__)

LABEL_NAMESPACE = "gpu.intel.com/"
GPU_LIST_LABEL_NAME = "cards"
MILLICORE_LABEL_NAME = "millicores"
MILLICORES_PER_GPU = 1000
MEMORY_OVERRIDE_ENV = "GPU_MEMORY_OVERRIDE"
MEMORY_RESERVED_ENV = "GPU_MEMORY_RESERVED"
VENDOR_STRING = "0x8086"

SYSFS_DIRECTORY = "/host-sys"
SYSFS_DRM_DIRECTORY = SYSFS_DIRECTORY + "/class/drm"
DEBUGFS_DRI_DIRECTORY = SYSFS_DIRECTORY + "/kernel/debug/dri"

_GPU_DEVICE_RE = re.compile(r"card[0-9]+")
_DECIMAL_RE = re.compile(r"[0-9]+")
_LEADING_INT_RE = re.compile(r"\s*([+-]?[0-9]+)")
_UINT64_MASK = (1 << 64) - 1


def _as_int64(value: int) -> int:
    return ((value + (1 << 63)) & _UINT64_MASK) - (1 << 63)


def _parse_uint_auto(text: str) -> int:
    """Parse an unsigned integer, honouring 0x/0o/0b and leading-zero octal."""
    if not text or text[0] in "+- \t":
        raise ValueError(f"invalid unsigned integer {text!r}")
    if re.fullmatch(r"0[0-7_]+", text):
        value = int(text.replace("_", ""), 8)
    else:
        value = int(text, 0)
    if value > _UINT64_MASK:
        raise ValueError(f"value out of range: {text!r}")
    return value


def env_number(name: str) -> int:
    """Return the environment variable as an unsigned number, or 0."""
    value = os.environ.get(name, "")
    if _DECIMAL_RE.fullmatch(value):
        number = int(value)
        if number <= _UINT64_MASK:
            return number
    return 0


def _fallback() -> int:
    return env_number(MEMORY_OVERRIDE_ENV)


def add_numeric_label(
    labels: MutableMapping[str, str], name: str, value: int
) -> None:
    """Create a numeric label, or add ``value`` to an existing one."""
    current = 0
    if name in labels:
        match = _LEADING_INT_RE.match(labels[name])
        if match:
            current = int(match.group(1))
    labels[name] = str(current + value)


class Labeler:
    """Builds label/value pairs describing the GPUs of a node."""

    def __init__(self, sysfs_drm_dir: str, debugfs_dri_dir: str) -> None:
        self.sysfs_drm_dir = sysfs_drm_dir
        self.debugfs_dri_dir = debugfs_dri_dir
        self.labels: dict[str, str] = {}

    def scan(self) -> list[str]:
        """Return the names of Intel GPU cards, sorted by name."""
        try:
            names = sorted(os.listdir(self.sysfs_drm_dir))
        except OSError as exc:
            raise OSError(f"Can't read sysfs folder: {exc}") from exc

        gpus = []
        for name in names:
            if not _GPU_DEVICE_RE.fullmatch(name):
                logger.debug("Not compatible device %s", name)
                continue
            vendor_path = os.path.join(self.sysfs_drm_dir, name, "device/vendor")
            try:
                with open(vendor_path, encoding="utf-8") as vendor_file:
                    vendor = vendor_file.read().strip()
            except OSError as exc:
                logger.warning("Skipping. Can't read vendor file: %s", exc)
                continue
            if vendor != VENDOR_STRING:
                logger.debug("Non-Intel GPU %s", name)
                continue
            try:
                os.listdir(os.path.join(self.sysfs_drm_dir, name, "device/drm"))
            except OSError as exc:
                raise OSError(f"Can't read device folder: {exc}") from exc
            gpus.append(name)
        return gpus

    def tile_memory_amount(self, gpu_name: str) -> tuple[int, int]:
        """Return the total tile memory of a GPU and its tile count."""
        reserved = env_number(MEMORY_RESERVED_ENV)
        pattern = os.path.join(self.sysfs_drm_dir, gpu_name, "gt/gt*/addr_range")

        memory = 0
        tiles = 0
        for file_name in sorted(glob.glob(pattern)):
            try:
                with open(file_name, encoding="utf-8") as range_file:
                    text = range_file.read().strip()
            except OSError as exc:
                logger.warning("Skipping. Can't read file: %s", exc)
                continue
            try:
                amount = _parse_uint_auto(text)
            except ValueError as exc:
                logger.warning("Skipping. Can't convert addr_range: %s", exc)
                continue
            tiles += 1
            memory = (memory + amount) & _UINT64_MASK

        if memory == 0:
            return _fallback(), 1
        return (memory - reserved) & _UINT64_MASK, tiles

    def create_capability_labels(self, card_num: str, num_tiles: int) -> None:
        """Add labels taken from the card's i915_capabilities debugfs file."""
        path = os.path.join(self.debugfs_dri_dir, card_num, "i915_capabilities")
        try:
            cap_file = open(path, encoding="utf-8", errors="replace")
        except OSError as exc:
            logger.debug("Couldn't open file:%s", exc)
            return

        def platform(name: str) -> None:
            prefix = f"{LABEL_NAMESPACE}platform_{name}"
            add_numeric_label(self.labels, prefix + ".count", 1)
            self.labels[prefix + ".tiles"] = str(num_tiles)
            self.labels[prefix + ".present"] = "true"

        def generation(name: str) -> None:
            self.labels[LABEL_NAMESPACE + "platform_gen"] = name

        actions: dict[re.Pattern[str], Callable[[str], None]] = {
            re.compile(r"platform:[ \t]*(\S+)"): platform,
            re.compile(r"gen:[ \t]*(\S+)"): generation,
        }

        with cap_file:
            for line in cap_file:
                line = line.rstrip("\r\n")
                for pattern, action in actions.items():
                    match = pattern.match(line)
                    if match:
                        action(match.group(1))
                        del actions[pattern]
                        break
                if not actions:
                    return

    def create_labels(self) -> None:
        """Scan the GPUs and fill ``labels``."""
        gpus = self.scan()
        for gpu_name in gpus:
            gpu_num = gpu_name[len("card"):]
            memory, tiles = self.tile_memory_amount(gpu_name)
            self.create_capability_labels(gpu_num, tiles)
            add_numeric_label(
                self.labels, LABEL_NAMESPACE + "memory.max", _as_int64(memory)
            )
        self.labels[LABEL_NAMESPACE + GPU_LIST_LABEL_NAME] = ".".join(gpus)
        add_numeric_label(
            self.labels,
            LABEL_NAMESPACE + MILLICORE_LABEL_NAME,
            MILLICORES_PER_GPU * len(gpus),
        )

    def format_labels(self) -> list[str]:
        """Return the labels as ``key=value`` lines."""
        return [f"{key}={value}" for key, value in self.labels.items()]


def main(argv: list[str] | None = None) -> int:
    """Print GPU labels for node feature discovery."""
    labeler = Labeler(SYSFS_DRM_DIRECTORY, DEBUGFS_DRI_DIRECTORY)
    try:
        labeler.create_labels()
    except OSError as exc:
        logger.error("%s", exc)
        return 1
    for line in labeler.format_labels():
        sys.stdout.write(line + "\n")
    return 0


if __name__ == "__main__":
    sys.exit(main())