from enum import Enum

from pydantic import BaseModel, ConfigDict


class HealthStatus(str, Enum):
    STARTING = "starting"
    ALIVE = "alive"
    DEGRADED = "degraded"
    UNREACHABLE = "unreachable"


class HealthState(BaseModel):
    """Result of a health poll over the IPC channel."""

    model_config = ConfigDict(frozen=True)

    status: HealthStatus
    reason: str = ""

    @classmethod
    def starting(cls, reason: str = "") -> "HealthState":
        return cls(status=HealthStatus.STARTING, reason=reason)

    @classmethod
    def alive(cls) -> "HealthState":
        return cls(status=HealthStatus.ALIVE)

    @classmethod
    def degraded(cls, reason: str) -> "HealthState":
        return cls(status=HealthStatus.DEGRADED, reason=reason)

    @classmethod
    def unreachable(cls, reason: str) -> "HealthState":
        return cls(status=HealthStatus.UNREACHABLE, reason=reason)

    @property
    def is_alive(self) -> bool:
        return self.status is HealthStatus.ALIVE

    def __str__(self) -> str:
        if self.reason:
            return f"{self.status.value} ({self.reason})"
        return self.status.value
