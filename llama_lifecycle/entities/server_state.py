from enum import Enum

from llama_lifecycle.shared.errors import LifecycleError


class ServerState(str, Enum):
    NOT_STARTED = "not_started"
    STARTING = "starting"
    READY = "ready"
    DEGRADED = "degraded"
    STOPPING = "stopping"
    STOPPED = "stopped"
    FAILED = "failed"


_TRANSITIONS: dict[ServerState, set[ServerState]] = {
    ServerState.NOT_STARTED: {ServerState.STARTING},
    ServerState.STARTING: {ServerState.READY, ServerState.FAILED},
    ServerState.READY: {ServerState.DEGRADED},
    ServerState.DEGRADED: {ServerState.READY},
    ServerState.STOPPING: {ServerState.STOPPED, ServerState.FAILED},
    ServerState.STOPPED: {ServerState.STARTING},
    ServerState.FAILED: {ServerState.STARTING},
}


def can_transition(current: ServerState, target: ServerState) -> bool:
    # Explicit shutdown is allowed from anywhere
    if target is ServerState.STOPPING:
        return True
    return target in _TRANSITIONS[current]


def transition(current: ServerState, target: ServerState) -> ServerState:
    if current is target:
        return current
    if not can_transition(current, target):
        raise LifecycleError(f"Illegal server state transition {current.value} -> {target.value}")
    return target
