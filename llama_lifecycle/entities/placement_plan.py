from pydantic import BaseModel, Field, model_validator

from .device_budget import DeviceBudget


class DevicePlacement(BaseModel):
    """Layers and predicted resident bytes assigned to one device."""
    device: DeviceBudget
    layers: int = Field(ge=0)
    resident_bytes: int = Field(ge=0)


class PlacementPlan(BaseModel):
    """Assignment of model layers to devices.

    Placements are ordered accelerators first, CPU last. An infeasible plan is
    advisory: it describes the best attempt so the caller can report it.
    """

    placements: list[DevicePlacement]
    layer_count: int = Field(gt=0)
    overhead_bytes: int = Field(ge=0)
    feasible: bool

    @model_validator(mode="after")
    def _check_layers(self) -> "PlacementPlan":
        placed = sum(p.layers for p in self.placements)
        if placed > self.layer_count:
            raise ValueError(f"Plan places {placed} layers but the model has {self.layer_count}")
        return self

    @property
    def accelerator_placements(self) -> list[DevicePlacement]:
        return [p for p in self.placements if p.device.kind == "gpu"]

    @property
    def offloaded_layers(self) -> int:
        """Layers placed on accelerators (the --n-gpu-layers value)."""
        return sum(p.layers for p in self.accelerator_placements)

    @property
    def cpu_layers(self) -> int:
        return sum(p.layers for p in self.placements if p.device.kind == "cpu")

    def signature(self) -> tuple[tuple[str, int], ...]:
        return tuple((p.device.label, p.layers) for p in self.placements)

    def summary(self) -> dict:
        return {
            "feasible": self.feasible,
            "overhead_bytes": self.overhead_bytes,
            "devices": [
                {"device": p.device.label, "layers": p.layers, "resident_bytes": p.resident_bytes}
                for p in self.placements
            ],
        }
