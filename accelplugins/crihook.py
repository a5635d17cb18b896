"""OCI hook that programs FPGA regions before a container starts."""

from __future__ import annotations

import contextlib
import json
import os
import re
from dataclasses import dataclass, field
from typing import IO, Any, Callable, Protocol

FPGA_BITSTREAM_DIRECTORY = "/srv/intel.com/fpga"
CONFIG_JSON = "config.json"
FPGA_REGION_ENV_PREFIX = "FPGA_REGION_"
FPGA_AFU_ENV_PREFIX = "FPGA_AFU_"

ANNOTATION_NAME = "com.intel.fpga.mode"
ANNOTATION_VALUE = "fpga.intel.com/region"

_FPGA_PORT_RE = re.compile(r"(?:intel-fpga-port|dfl-port)\.[0-9]+")


class HookError(Exception):
    """Raised when the hook cannot prepare the FPGA for the container."""


class Bitstream(Protocol):
    """An opened bitstream file."""

    accelerator_type_uuid: str

    def close(self) -> None:
        """Release the file."""
        ...


class ProgrammablePort(Protocol):
    """An FPGA port that can be queried and reprogrammed."""

    def interface_uuid(self) -> str:
        """Return the interface UUID of the port's region."""
        ...

    def accelerator_type_uuid(self) -> str:
        """Return the UUID of the function currently programmed."""
        ...

    def program(self, bitstream: Bitstream, dry_run: bool = False) -> None:
        """Program ``bitstream`` into the port's region."""
        ...


NewPort = Callable[[str], ProgrammablePort]
OpenBitstream = Callable[[str, str, str], Bitstream]


def canonical_id(value: str) -> str:
    """Normalise a UUID: no surrounding space, no dashes, lower case."""
    return value.strip().replace("-", "").lower()


def is_fpga_port(name: str) -> bool:
    """Tell whether ``name`` is an FPGA port device name."""
    return _FPGA_PORT_RE.fullmatch(name) is not None


def _decode_first(text: str | bytes, what: str) -> Any:
    if isinstance(text, bytes):
        text = text.decode("utf-8", errors="replace")
    try:
        value, _ = json.JSONDecoder().raw_decode(text.lstrip())
    except json.JSONDecodeError as exc:
        raise HookError(f"can't decode {what}: {exc}") from exc
    return value


def _object(value: Any, where: str) -> dict:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise HookError(f"{where}: expected a JSON object")
    return value


def _string(value: Any, where: str) -> str:
    if value is None:
        return ""
    if not isinstance(value, str):
        raise HookError(f"{where}: expected a string")
    return value


def _integer(value: Any, where: str) -> int:
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, int):
        raise HookError(f"{where}: expected an integer")
    return value


def _array(value: Any, where: str) -> list:
    if value is None:
        return []
    if not isinstance(value, list):
        raise HookError(f"{where}: expected an array")
    return value


@dataclass(frozen=True)
class StdinInfo:
    """The container state the runtime passes to the hook."""

    mode: str
    bundle: str


@dataclass(frozen=True)
class ConfigDevice:
    """One entry of ``linux.devices`` in the container configuration."""

    path: str = ""
    type: str = ""
    major: int = 0
    minor: int = 0
    uid: int = 0
    gid: int = 0

    @property
    def name(self) -> str:
        """Base name of the device node."""
        return os.path.basename(self.path.rstrip("/")) or self.path

    @classmethod
    def from_json(cls, data: Any, where: str) -> "ConfigDevice":
        """Build a device entry from its decoded JSON object."""
        obj = _object(data, where)
        return cls(
            path=_string(obj.get("path"), f"{where}.path"),
            type=_string(obj.get("type"), f"{where}.type"),
            major=_integer(obj.get("major"), f"{where}.major"),
            minor=_integer(obj.get("minor"), f"{where}.minor"),
            uid=_integer(obj.get("uid"), f"{where}.uid"),
            gid=_integer(obj.get("gid"), f"{where}.gid"),
        )


@dataclass(frozen=True)
class HookConfig:
    """The parts of the container configuration the hook uses."""

    env: list[str] = field(default_factory=list)
    devices: list[ConfigDevice] = field(default_factory=list)


@dataclass(frozen=True)
class FpgaParams:
    """A region to program, the function to program and the port to use."""

    region: str
    afu: str
    port_device: str


def parse_stdin(stream: IO[str] | IO[bytes]) -> StdinInfo:
    """Read and validate the container state given on the hook's input."""
    data = _object(_decode_first(stream.read(), "stdin"), "stdin")
    annotations = _object(data.get("annotations"), "annotations")
    mode = _string(annotations.get(ANNOTATION_NAME), f"annotations.{ANNOTATION_NAME}")
    bundle = _string(data.get("bundle"), "bundle")

    if not mode:
        raise HookError(f"annotation {ANNOTATION_NAME} is not set")
    if mode != ANNOTATION_VALUE:
        raise HookError(f"annotation {ANNOTATION_NAME} has incorrect value '{mode}'")
    if not bundle:
        raise HookError("'bundle' field is not set in the stdin JSON")
    try:
        os.stat(bundle)
    except OSError as exc:
        raise HookError(f"bundle directory {bundle}: stat error: {exc}") from exc
    return StdinInfo(mode=mode, bundle=bundle)


class HookEnv:
    """Where the hook finds bitstreams, configuration and ports."""

    def __init__(
        self,
        bitstream_dir: str,
        config: str,
        new_port: NewPort,
        open_bitstream: OpenBitstream | None = None,
    ) -> None:
        self.bitstream_dir = bitstream_dir
        self.config = config
        self.new_port = new_port
        self.open_bitstream = open_bitstream

    def _port(self, name: str) -> ProgrammablePort:
        try:
            return self.new_port(name)
        except (OSError, ValueError) as exc:
            raise HookError(f"can't open port {name}: {exc}") from exc

    def load_config(self, stdin: StdinInfo) -> HookConfig:
        """Read the container configuration from the bundle directory."""
        config_path = os.path.join(stdin.bundle, self.config)
        try:
            with open(config_path, "rb") as config_file:
                raw = config_file.read()
        except OSError as exc:
            raise HookError(f"can't open {config_path}: {exc}") from exc

        try:
            data = _object(_decode_first(raw, config_path), "config")
            process = _object(data.get("process"), "process")
            env = [
                _string(entry, "process.env")
                for entry in _array(process.get("env"), "process.env")
            ]
            linux = _object(data.get("linux"), "linux")
            devices = [
                ConfigDevice.from_json(entry, "linux.devices")
                for entry in _array(linux.get("devices"), "linux.devices")
            ]
        except HookError as exc:
            raise HookError(f"can't decode {config_path}: {exc}") from exc

        if not env:
            raise HookError(f"{config_path}: process.env is empty")
        if not devices:
            raise HookError(f"{config_path}: linux.devices is empty")
        return HookConfig(env=env, devices=devices)

    def fpga_params(self, config: HookConfig) -> list[FpgaParams]:
        """Pair each requested region and function with a matching port."""
        region_env: dict[str, str] = {}
        afu_env: dict[str, str] = {}
        for entry in config.env:
            name, _, value = entry.partition("=")
            if name.startswith(FPGA_REGION_ENV_PREFIX):
                region_env[name.split(FPGA_REGION_ENV_PREFIX)[1]] = canonical_id(value)
            elif name.startswith(FPGA_AFU_ENV_PREFIX):
                afu_env[name.split(FPGA_AFU_ENV_PREFIX)[1]] = canonical_id(value)

        if not region_env:
            raise HookError(f"No {FPGA_REGION_ENV_PREFIX}* environment variables are set")
        if not afu_env:
            raise HookError(f"No {FPGA_AFU_ENV_PREFIX}* environment variables are set")

        params: list[FpgaParams] = []
        used: set[int] = set()
        for num, region in region_env.items():
            afu = afu_env.get(num)
            if afu is None:
                raise HookError(
                    f"Environment variable {FPGA_AFU_ENV_PREFIX}{num} is not set"
                )
            for index, device in enumerate(config.devices):
                name = device.name
                if index in used or not is_fpga_port(name):
                    continue
                interface = self._port(name).interface_uuid()
                if interface == region:
                    params.append(FpgaParams(region=interface, afu=afu, port_device=name))
                    used.add(index)
                    break
            else:
                raise HookError(f"can't find appropriate device for region {region}")
        return params

    def process(self, stream: IO[str] | IO[bytes]) -> None:
        """Program the functions the container asks for into its FPGA regions."""
        stdin = parse_stdin(stream)
        config = self.load_config(stdin)
        try:
            params_list = self.fpga_params(config)
        except HookError as exc:
            raise HookError(
                f"couldn't get FPGA region, AFU and device node: {exc}"
            ) from exc

        for params in params_list:
            port = self._port(params.port_device)
            if port.accelerator_type_uuid() == params.afu:
                # The function is already programmed.
                return

            if self.open_bitstream is None:
                raise HookError("no way to open bitstreams is configured")
            try:
                bitstream = self.open_bitstream(
                    self.bitstream_dir, params.region, params.afu
                )
            except (OSError, ValueError) as exc:
                raise HookError(
                    f"can't get bitstream for region {params.region}, "
                    f"function {params.afu}: {exc}"
                ) from exc

            with contextlib.closing(bitstream):
                try:
                    port.program(bitstream, False)
                except (OSError, ValueError) as exc:
                    raise HookError(
                        f"can't program {params.port_device}: {exc}"
                    ) from exc
                programmed = port.accelerator_type_uuid()
                if programmed != bitstream.accelerator_type_uuid:
                    raise HookError(
                        f"programmed function {programmed} instead of "
                        f"{bitstream.accelerator_type_uuid}"
                    )