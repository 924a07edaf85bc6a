"""
Enumerates compute devices and their current free memory.
"""
from typing import List, Optional

import psutil

from llama_lifecycle.entities.device_budget import DeviceBudget
from llama_lifecycle.frameworks_drivers.config import PlacementConfig
from llama_lifecycle.frameworks_drivers.gpu_monitor import GPUMonitor
from llama_lifecycle.shared.errors import DeviceInventoryError
from llama_lifecycle.shared.logger import Logger

logger = Logger.get(__name__)


class DeviceInventory:
    """Builds a fresh list of device budgets for every placement decision.

    Accelerators come first in ordinal order, the CPU last. Budgets are never
    cached since free memory drifts.
    """

    def __init__(self, config: Optional[PlacementConfig] = None, gpu_monitor: Optional[GPUMonitor] = None):
        self.config = config or PlacementConfig()
        self.gpu_monitor = gpu_monitor or GPUMonitor(enabled=self.config.enable_gpu)

    def cpu_budget(self) -> DeviceBudget:
        try:
            memory = psutil.virtual_memory()
        except (OSError, RuntimeError) as e:
            raise DeviceInventoryError(f"Unable to query system memory: {e}") from e

        # Some platforms report available above total - used; trust the smaller value
        free = min(memory.total - memory.used, memory.available)
        return DeviceBudget(
            kind="cpu",
            name="cpu",
            total_bytes=int(memory.total),
            free_bytes=max(int(free), 0),
            headroom=self.config.cpu_headroom,
        )

    def accelerator_budgets(self) -> List[DeviceBudget]:
        if not self.config.enable_gpu:
            return []
        return self.gpu_monitor.get_device_budgets(self.config.gpu_headroom)

    def snapshot(self) -> List[DeviceBudget]:
        budgets = self.accelerator_budgets()
        budgets.append(self.cpu_budget())
        logger.debug(
            "Device budgets: " + ", ".join(f"{b.label}={b.free_bytes}/{b.total_bytes}" for b in budgets)
        )
        return budgets

    def close(self) -> None:
        """Release the NVML session held by the GPU monitor."""
        self.gpu_monitor.shutdown()
