"""
Exception hierarchy for the llama.cpp lifecycle manager.

Every error carries its structured fields as attributes so callers can act on
them (shrink the context, retry with a longer timeout, report leaked pids)
without parsing messages.
"""
from typing import Any, Iterable, Optional


class LifecycleError(Exception):
    """Base class for all lifecycle manager errors."""


class FormatError(LifecycleError):
    """The model file is not a well-formed GGUF file."""

    def __init__(self, message: str, offset: Optional[int] = None):
        self.offset = offset
        if offset is not None:
            message = f"{message} (at byte {offset})"
        super().__init__(message)


class SchemaError(LifecycleError):
    """A required metadata key is missing or has the wrong type."""

    def __init__(self, key: str, expected: str, actual: Optional[str] = None):
        self.key = key
        self.expected = expected
        self.actual = actual
        if actual is None:
            message = f"Required metadata key '{key}' is missing (expected {expected})"
        else:
            message = f"Metadata key '{key}' has type {actual}, expected {expected}"
        super().__init__(message)


class DeviceInventoryError(LifecycleError):
    """The CPU memory budget could not be determined."""


class InfeasiblePlacement(LifecycleError):
    """The model does not fit the detected device budgets."""

    def __init__(self, requirements: dict[str, Any]):
        self.requirements = requirements
        summary = ", ".join(f"{k}={v}" for k, v in requirements.items())
        super().__init__(f"Model does not fit available memory; reduce context or batch size ({summary})")


class SpawnError(LifecycleError):
    """The OS refused to launch the engine, or it exited during startup."""

    def __init__(self, command: str, cause: Any, exit_code: Optional[int] = None, log_tail: str = ""):
        self.command = command
        self.cause = cause
        self.exit_code = exit_code
        self.log_tail = log_tail
        message = f"Failed to spawn '{command}': {cause}"
        if exit_code is not None:
            message += f" (exit code {exit_code})"
        if log_tail:
            message += f"\n{log_tail}"
        super().__init__(message)


class HealthTimeout(LifecycleError):
    """The engine never reported healthy within the allotted time."""

    def __init__(self, last_state: Any, elapsed: float):
        self.last_state = last_state
        self.elapsed = elapsed
        super().__init__(f"Server not ready after {elapsed:.2f}s; last state: {last_state}")


class TerminationTimeout(LifecycleError):
    """One or more processes survived graceful and forceful termination."""

    def __init__(self, operation: str, elapsed: float, pids: Iterable[int]):
        self.operation = operation
        self.elapsed = elapsed
        self.pids = list(pids)
        super().__init__(
            f"{operation} timed out after {elapsed:.2f}s; still alive: {', '.join(map(str, self.pids))}"
        )


class ProcessError(LifecycleError):
    """An OS-level process operation failed."""

    def __init__(self, action: str, cause: Any):
        self.action = action
        self.cause = cause
        super().__init__(f"Failed to {action}: {cause}")


class ClientError(LifecycleError):
    """Base class for IPC transport errors."""


class ClientIoError(ClientError):
    """The transport failed mid-request (refused connection, reset, broken pipe)."""


class ClientTimeout(ClientError):
    def __init__(self, duration: float):
        self.duration = duration
        super().__init__(f"Request timed out after {duration:.2f}s")


class ClientSerdeError(ClientError):
    """The response body could not be decoded."""


class ClientRemoteError(ClientError):
    def __init__(self, code: int, message: str):
        self.code = code
        self.message = message
        super().__init__(f"Remote error {code}: {message}")


class ClientSetupError(ClientError):
    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Client setup failed: {reason}")


TransportError = ClientError
