"""Discovery, resource trees and node labels for GPU and FPGA accelerators."""

__version__ = "0.19.0"
__all__ = ["crihook", "devicetree", "fpga_plugin", "gpu_plugin", "labeler"]