import math
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class DeviceBudget(BaseModel):
    """Free-memory budget of one compute device at a point in time."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["cpu", "gpu"]
    ordinal: Optional[int] = None  # accelerator index, None for the CPU
    name: str = ""
    total_bytes: int = Field(ge=0)
    free_bytes: int = Field(ge=0)
    headroom: float = Field(0.0, ge=0.0, lt=1.0)  # fraction of free memory left unused

    @property
    def usable_bytes(self) -> int:
        return math.floor(self.free_bytes * (1.0 - self.headroom))

    @property
    def label(self) -> str:
        if self.kind == "cpu":
            return "cpu"
        return f"gpu{self.ordinal}"
