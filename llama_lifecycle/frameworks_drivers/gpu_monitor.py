"""
GPU memory probe using nvidia-ml-py (imported as pynvml).

A missing library, a missing driver or a failing device is never fatal: the
affected accelerators are simply left out and placement degrades to CPU.
"""
import logging
from typing import List, Optional

# nvidia-ml-py installs the pynvml module; the NVIDIA driver itself may still be absent
try:
    import pynvml
except ImportError:
    pynvml = None

from llama_lifecycle.entities.device_budget import DeviceBudget


class GPUMonitor:
    """Service for reading free memory of NVIDIA GPUs using pynvml."""

    def __init__(self, enabled: bool = True):
        self.logger = logging.getLogger(__name__)
        self.initialized = False

        if not enabled:
            self.logger.info("GPU probing disabled by configuration")
            return

        if pynvml is None:
            self.logger.warning("nvidia-ml-py not available, GPU probing disabled")
            return

        try:
            pynvml.nvmlInit()
            self.initialized = True
            self.logger.info("GPU probing initialized successfully")
        except pynvml.NVMLError as e:
            self.logger.warning(f"GPU probing not available: {e}")

    def get_gpu_count(self) -> int:
        """Get the number of visible GPUs."""
        if not self.initialized:
            return 0

        try:
            return pynvml.nvmlDeviceGetCount()
        except pynvml.NVMLError as e:
            self.logger.warning(f"Error getting GPU count: {e}")
            return 0

    def get_device_budget(self, gpu_id: int, headroom: float = 0.0) -> Optional[DeviceBudget]:
        """Get the memory budget of one GPU, or None if it cannot be queried."""
        if not self.initialized:
            return None

        try:
            handle = pynvml.nvmlDeviceGetHandleByIndex(gpu_id)
            raw_name = pynvml.nvmlDeviceGetName(handle)
            # Older pynvml releases return bytes
            name = raw_name.decode("utf-8") if isinstance(raw_name, bytes) else raw_name
            memory_info = pynvml.nvmlDeviceGetMemoryInfo(handle)
        except pynvml.NVMLError as e:
            self.logger.warning(f"Omitting GPU {gpu_id}: {e}")
            return None

        return DeviceBudget(
            kind="gpu",
            ordinal=gpu_id,
            name=name,
            total_bytes=int(memory_info.total),
            free_bytes=int(memory_info.free),
            headroom=headroom,
        )

    def get_device_budgets(self, headroom: float = 0.0) -> List[DeviceBudget]:
        """Get budgets of all GPUs that answered the probe, in ordinal order."""
        budgets = []
        for gpu_id in range(self.get_gpu_count()):
            budget = self.get_device_budget(gpu_id, headroom)
            if budget is not None:
                budgets.append(budget)
        return budgets

    def shutdown(self) -> None:
        if not self.initialized:
            return
        try:
            pynvml.nvmlShutdown()
        except pynvml.NVMLError as e:
            self.logger.warning(f"Error shutting down NVML: {e}")
        self.initialized = False
