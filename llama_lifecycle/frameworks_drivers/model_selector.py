"""
Chooses among quantizations of the same model the one the devices can hold.
"""
from typing import Callable, NamedTuple, Sequence

from llama_lifecycle.entities.device_budget import DeviceBudget
from llama_lifecycle.entities.model_metadata import ModelMetadata
from llama_lifecycle.entities.placement_plan import PlacementPlan
from llama_lifecycle.frameworks_drivers.gpu_allocator import MemoryEstimator
from llama_lifecycle.shared.errors import InfeasiblePlacement
from llama_lifecycle.shared.gguf_reader import read_model_metadata
from llama_lifecycle.shared.logger import Logger

logger = Logger.get(__name__)


class ModelSelection(NamedTuple):
    metadata: ModelMetadata
    plan: PlacementPlan


class QuantizationSelector:
    """
    Picks the highest-precision candidate file that fits the current budgets.

    Candidates are plans for the same model at different quantizations, so the
    larger file is taken as the better one. When accelerators are present a
    candidate that fits entirely on them beats a larger one that spills layers
    to the CPU.
    """

    def __init__(
        self,
        estimator: MemoryEstimator,
        reader: Callable[[str], ModelMetadata] = read_model_metadata,
    ):
        self.estimator = estimator
        self.reader = reader

    def select(
        self,
        candidates: Sequence[str],
        context_size: int,
        batch_size: int,
        budgets: Sequence[DeviceBudget],
    ) -> ModelSelection:
        """
        Args:
            candidates: GGUF paths, in any order
            context_size: Context the server will be launched with
            batch_size: Batch the server will be launched with
            budgets: Device budgets from the inventory

        Returns:
            The chosen metadata and the plan computed for it

        Raises:
            ValueError: if ``candidates`` is empty
            InfeasiblePlacement: if no candidate fits
        """
        if not candidates:
            raise ValueError("At least one model candidate is required")

        options = []
        for path in candidates:
            metadata = self.reader(path)
            options.append(ModelSelection(metadata, self.estimator.plan(metadata, context_size, batch_size, budgets)))

        feasible = [o for o in options if o.plan.feasible]
        if any(b.kind == "gpu" for b in budgets):
            offloaded = [o for o in feasible if o.plan.cpu_layers == 0]
            feasible = offloaded or feasible

        if not feasible:
            smallest = min(options, key=lambda o: o.metadata.total_bytes)
            raise InfeasiblePlacement({
                "candidates": len(options),
                "smallest_model": smallest.metadata.path,
                "smallest_bytes": smallest.metadata.total_bytes,
                "context_size": context_size,
                "batch_size": batch_size,
                "budgets": {b.label: b.usable_bytes for b in budgets},
            })

        choice = max(feasible, key=lambda o: o.metadata.total_bytes)
        logger.info(
            f"Selected {choice.metadata.path} ({choice.metadata.quantization}) from {len(options)} candidates"
        )
        return choice
