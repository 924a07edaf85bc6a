from __future__ import annotations

import subprocess
from dataclasses import dataclass, field
from typing import Any, Optional, TYPE_CHECKING

from .health_state import HealthState
from .placement_plan import PlacementPlan

if TYPE_CHECKING:
    from llama_lifecycle.shared.protocols import ServerClient


@dataclass
class ServerProcessHandle:
    """A spawned engine process and the channel used to reach it."""

    stable_id: str
    pid: int
    command: list[str]
    launched_at: float
    create_time: Optional[float] = None
    host: str = "127.0.0.1"
    port: Optional[int] = None
    socket_path: Optional[str] = None
    client: Optional["ServerClient"] = None
    process: Optional[subprocess.Popen] = None
    log_path: Optional[str] = None
    model_path: Optional[str] = None
    health: HealthState = field(default_factory=HealthState.starting)
    plan: Optional[PlacementPlan] = None
    signature: Optional[tuple[Any, ...]] = None

    @property
    def endpoint(self) -> str:
        if self.socket_path:
            return f"unix://{self.socket_path}"
        return f"http://{self.host}:{self.port}"

    def summary(self) -> dict[str, Any]:
        return {
            "id": self.stable_id,
            "pid": self.pid,
            "endpoint": self.endpoint,
            "model": self.model_path,
            "launched_at": self.launched_at,
            "health": str(self.health),
            "plan": self.plan.summary() if self.plan else None,
        }
