"""
Layer placement strategy interface and implementations.
"""
import logging
from abc import ABC, abstractmethod
from typing import Optional, Sequence

from llama_lifecycle.entities.device_budget import DeviceBudget
from llama_lifecycle.entities.model_metadata import ModelMetadata
from llama_lifecycle.entities.placement_plan import DevicePlacement, PlacementPlan
from llama_lifecycle.shared.vram_estimator import VramEstimator


class LayerAllocationStrategy(ABC):
    """Interface for layer placement strategies."""

    @abstractmethod
    def allocate(
        self,
        layer_sizes: Sequence[int],
        overhead_bytes: int,
        budgets: Sequence[DeviceBudget],
    ) -> PlacementPlan:
        """
        Assign model layers to devices.

        Args:
            layer_sizes: Byte size of each layer in model order
            overhead_bytes: Fixed bytes a device needs before it can hold any layer
            budgets: Device budgets, accelerators first and CPU last

        Returns:
            PlacementPlan covering every layer
        """
        pass


class GreedyLayerAllocator(LayerAllocationStrategy):
    """Fills each accelerator in order with whole layers, spilling the rest to the CPU.

    The CPU is an unlimited fallback: a plan is infeasible only when a known
    CPU budget cannot hold what is left for it.
    """

    def __init__(self):
        self.logger = logging.getLogger(__name__)

    def allocate(
        self,
        layer_sizes: Sequence[int],
        overhead_bytes: int,
        budgets: Sequence[DeviceBudget],
    ) -> PlacementPlan:
        if not layer_sizes:
            raise ValueError("Cannot place a model with no layers")
        if overhead_bytes < 0:
            raise ValueError(f"overhead_bytes must not be negative, got {overhead_bytes}")

        accelerators = [b for b in budgets if b.kind == "gpu"]
        cpu = next((b for b in budgets if b.kind == "cpu"), None)
        if cpu is None:
            cpu = DeviceBudget(kind="cpu", name="cpu", total_bytes=0, free_bytes=0)
            cpu_known = False
        else:
            cpu_known = True

        placements: list[DevicePlacement] = []
        next_layer = 0
        for device in accelerators:
            available = device.usable_bytes - overhead_bytes
            layers = 0
            used = 0
            if available > 0:
                while next_layer < len(layer_sizes) and used + layer_sizes[next_layer] <= available:
                    used += layer_sizes[next_layer]
                    next_layer += 1
                    layers += 1
            resident = used + overhead_bytes if layers else 0
            placements.append(DevicePlacement(device=device, layers=layers, resident_bytes=resident))
            self.logger.debug(
                f"{device.label}: usable={device.usable_bytes} overhead={overhead_bytes} -> {layers} layers"
            )

        cpu_layers = len(layer_sizes) - next_layer
        cpu_layer_bytes = sum(layer_sizes[next_layer:])
        accelerated = any(p.layers for p in placements)
        cpu_resident = cpu_layer_bytes + (overhead_bytes if cpu_layers or not accelerated else 0)
        placements.append(DevicePlacement(device=cpu, layers=cpu_layers, resident_bytes=cpu_resident))

        feasible = not cpu_known or cpu_resident <= cpu.usable_bytes
        if not feasible:
            self.logger.warning(
                f"Placement infeasible: CPU needs {cpu_resident} bytes but only {cpu.usable_bytes} usable"
            )

        return PlacementPlan(
            placements=placements,
            layer_count=len(layer_sizes),
            overhead_bytes=overhead_bytes,
            feasible=feasible,
        )


class MemoryEstimator:
    """Combines the overhead estimate with a placement strategy."""

    def __init__(self, strategy: Optional[LayerAllocationStrategy] = None, cache_type: str = "f16"):
        self.strategy = strategy or GreedyLayerAllocator()
        self.cache_type = cache_type
        self.logger = logging.getLogger(__name__)

    def plan(
        self,
        metadata: ModelMetadata,
        context_size: int,
        batch_size: int,
        budgets: Sequence[DeviceBudget],
    ) -> PlacementPlan:
        overhead = VramEstimator.estimate_context_overhead(metadata, context_size, batch_size, self.cache_type)
        plan = self.strategy.allocate(metadata.layer_sizes, overhead, budgets)
        self.logger.info(
            f"Placement for {metadata.path} (ctx={context_size}, batch={batch_size}): "
            f"{plan.offloaded_layers}/{metadata.layer_count} layers offloaded, feasible={plan.feasible}"
        )
        return plan
