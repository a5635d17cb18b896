"""Device tree data types shared by the device plugins."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Mapping


class Health(str, Enum):
    """Health state reported for a device."""

    HEALTHY = "Healthy"
    UNHEALTHY = "Unhealthy"


@dataclass(frozen=True)
class DeviceSpec:
    """A device node exposed to a container."""

    host_path: str
    container_path: str
    permissions: str = "rw"


@dataclass(frozen=True)
class DeviceInfo:
    """Everything a container needs to use one allocatable device."""

    health: Health
    nodes: tuple[DeviceSpec, ...] = ()
    mounts: tuple[Any, ...] = ()
    envs: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "nodes", tuple(self.nodes))
        object.__setattr__(self, "mounts", tuple(self.mounts))
        object.__setattr__(self, "envs", dict(self.envs))


class DeviceTree(dict):
    """Mapping of device type to a mapping of device id to DeviceInfo."""

    def add_device(self, dev_type: str, dev_id: str, info: DeviceInfo) -> None:
        """Register ``info`` under ``dev_type`` with identifier ``dev_id``."""
        self.setdefault(dev_type, {})[dev_id] = info

    @classmethod
    def from_items(
        cls, items: Iterable[tuple[str, str, DeviceInfo]]
    ) -> "DeviceTree":
        """Build a tree from (type, id, info) triples."""
        tree = cls()
        for dev_type, dev_id, info in items:
            tree.add_device(dev_type, dev_id, info)
        return tree