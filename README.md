# accelplugins

Tools for finding GPU and FPGA accelerators on a Linux node by reading
sysfs and devfs, and for describing them as resources that a cluster
scheduler can hand out to containers.

## Modules

### `accelplugins.devicetree`

The resource model. A `DeviceTree` is a dict mapping a resource type to a
dict of device id to `DeviceInfo`; devices are added with
`DeviceTree.add_device(dev_type, dev_id, info)` or built in one go with
`DeviceTree.from_items`. A `DeviceInfo` holds a `Health` state
(`Health.HEALTHY` or `Health.UNHEALTHY`), the `DeviceSpec` nodes (host
path, container path, permissions, `"rw"` by default) a container needs,
and optional mounts and environment variables.

### `accelplugins.gpu_plugin`

`GpuDevicePlugin(sysfs_dir, devfs_dir, options)` looks for Intel GPUs:
`card<N>` entries of the sysfs directory whose `device/vendor` is
`0x8086` (`is_compatible_device`). For each card, the entries of
`device/drm` other than `controlD<N>` that also exist under the devfs
directory become its device nodes.

`scan_devices` returns a `DeviceTree` with:

- an `i915` resource holding `card<N>-<k>` for `k` from 0 up to
  `Options.shared_dev_num`, so that many containers may share one card;
  cards that are physical functions with virtual functions enabled
  (`device/sriov_numvfs` other than `0`) are left out of it;
- when `Options.enable_monitoring` is set, an `i915_monitoring` resource
  with the single device `all` holding the nodes of every card.

`Options` raises `ValueError` if `shared_dev_num` is less than 1.
`scan(notifier)` calls `notifier` with a fresh tree every five seconds
(the `scan_period` argument changes this) until `stop()` is called; a
failed scan is logged and reported as an empty tree.

### `accelplugins.fpga_plugin`

`FpgaDevicePlugin` scans FPGA devices for the OPAE layout
(`/sys/class/fpga`, `intel-fpga-dev.<N>` devices with
`intel-fpga-port.<N>` ports) and the DFL layout
(`/sys/class/fpga_region`, `region<N>` devices with `dfl-port.<N>`
ports). Create one with `new_device_plugin_opae`,
`new_device_plugin_dfl`, or `new_device_plugin(mode, root_path, new_port)`,
which picks whichever layout exists under `root_path` and raises
`FileNotFoundError` if neither does.

Ports are grouped by their management engine into `Region`s, and regions
into `Device`s. How they are offered depends on the `Mode`:

- `af`: each port becomes a device of a resource named by the
  `afu_dev_type(interface_id, afu_id)` callable (`get_afu_tree`);
- `region`: each region becomes a device of `region-<interface id>`,
  holding its port nodes (`get_region_tree`); `post_allocate` then adds
  the `com.intel.fpga.mode: fpga.intel.com/region` annotation to every
  container response;
- `regiondevel`: as `region`, with the management device node added
  (`get_region_devel_tree`).

Regions or ports reporting an all-`f` ID are marked unhealthy.
`plugin_params` raises `ValueError` for an unknown mode, or for `af` mode
without `afu_dev_type`. `scan` and `stop` work as for the GPU plugin.

### `accelplugins.crihook`

Logic for a container-runtime hook that programs FPGA regions.
`parse_stdin` reads the hook input, checking the
`com.intel.fpga.mode` annotation and the bundle directory.
`HookEnv.load_config` reads the bundle's configuration and requires
non-empty `process.env` and `linux.devices`. `HookEnv.fpga_params` pairs
each `FPGA_REGION_<N>` with its `FPGA_AFU_<N>` and with an unused port
device whose interface matches. `HookEnv.process` does all of this and
programs each port whose function differs, checking the result
afterwards. Every problem is raised as `HookError`.

### `accelplugins.labeler`

`Labeler` produces node labels for the Intel GPUs present: the list of
cards, the millicores offered (1000 per card), the maximum memory and,
where the debugfs `i915_capabilities` file can be read, the platform
name, generation and tile count. `add_numeric_label` and `env_number` are
the helpers it uses.

## Node labels for GPUs

The `gpu-nfdhook` command prints one `name=value` label per line:

```
gpu-nfdhook
```

It reads `/host-sys/class/drm` and `/host-sys/kernel/debug/dri`, so the
host's `/sys` should be mounted at `/host-sys`. For one card the output
looks like:

```
gpu.intel.com/platform_new.count=1
gpu.intel.com/platform_new.tiles=1
gpu.intel.com/platform_new.present=true
gpu.intel.com/platform_gen=9
gpu.intel.com/memory.max=8086
gpu.intel.com/cards=card0
gpu.intel.com/millicores=1000
```

GPU memory is the sum of the card's `gt/gt*/addr_range` values. Two
environment variables adjust it:

- `GPU_MEMORY_OVERRIDE`: memory per GPU to report when the tiles give no
  figure.
- `GPU_MEMORY_RESERVED`: memory to subtract from the tile total.

The command exits with status 1 if the sysfs directory cannot be read.

## What this package does not do

- It does not register with or serve the kubelet device-plugin API; the
  plugins only build device trees and hand them to a notifier callable.
- It does not talk to FPGA hardware. The FPGA plugin takes a `new_port`
  callable giving each port's name, device path, function ID and
  management engine; in `af` mode the resource names come from the
  `afu_dev_type` callable you supply. The hook likewise takes port
  objects that can be queried and programmed, and an `open_bitstream`
  callable; it does not read bitstream files itself.
- Apart from `gpu-nfdhook`, it installs no commands: the GPU plugin, the
  FPGA plugin and the hook are used from Python.

## Running the tests

```
pip install -e ".[test]"
pytest
```