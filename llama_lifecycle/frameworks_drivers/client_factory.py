from pathlib import Path

from llama_lifecycle.frameworks_drivers.config import EngineConfig
from llama_lifecycle.frameworks_drivers.http_client import HttpServerClient, sanitize_id
from llama_lifecycle.frameworks_drivers.uds_client import UdsServerClient
from llama_lifecycle.shared.protocols import ServerClient


class ClientFactory:
    """Creates the IPC client selected by configuration."""

    def __init__(self, config: EngineConfig):
        self.config = config

    @property
    def exe_name(self) -> str:
        return Path(self.config.binary).stem

    def identity(self) -> str:
        """Stable identifier of the logical server this configuration describes.

        Unlike a client's own id it does not change between launches, so it keys
        both the process record and the orchestrator's slot.
        """
        if self.config.transport == "uds":
            return sanitize_id(f"{self.exe_name}_uds")
        port = self.config.port if self.config.port is not None else "auto"
        return sanitize_id(f"{self.exe_name}_http_{self.config.host}_{port}")

    def create(self) -> ServerClient:
        if self.config.transport == "uds":
            return UdsServerClient(self.exe_name)
        return HttpServerClient(self.exe_name, self.config.host, self.config.port)

    def record_pattern(self) -> str:
        """Glob matching the process records of servers launched from this binary."""
        return f"{sanitize_id(self.exe_name)}_*"
