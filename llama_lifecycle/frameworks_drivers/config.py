import json
import tempfile
from pathlib import Path
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

from llama_lifecycle.shared.quantization import KV_CACHE_TYPE_BYTES


class EngineConfig(BaseModel):
    """Configuration for the llama.cpp server process.

    Attributes:
        binary: Path or name of the llama-server executable.
        transport: IPC transport used to reach the server ("http" or "uds").
        host: Loopback host the server binds to for the http transport.
        port: Port for the http transport (None picks a free ephemeral port).
        default_context_size: Context size used when a request does not give one.
        default_batch_size: Batch size used when a request does not give one.
        extra_args: Additional command-line arguments passed through unchanged.
    """

    binary: str = Field("llama-server", description="Path or name of the llama-server executable")
    transport: Literal["http", "uds"] = Field("http", description="IPC transport used to reach the server")
    host: str = Field("127.0.0.1", description="Loopback host the server binds to")
    port: Optional[int] = Field(None, ge=1, le=65535, description="Port for the http transport (None = ephemeral)")
    default_context_size: int = Field(4096, gt=0, description="Context size used when a request does not give one")
    default_batch_size: int = Field(512, gt=0, description="Batch size used when a request does not give one")
    extra_args: List[str] = Field(default_factory=list, description="Additional command-line arguments")


class PlacementConfig(BaseModel):
    """Configuration for layer placement.

    Attributes:
        enable_gpu: Whether accelerators are probed at all (False = CPU only).
        gpu_headroom: Fraction of free accelerator memory left unused.
        cpu_headroom: Fraction of free RAM left unused.
        cache_type: KV cache type passed to --cache-type-k/v and used for estimates.
    """

    enable_gpu: bool = Field(True, description="Whether accelerators are probed")
    gpu_headroom: float = Field(0.1, ge=0.0, lt=1.0, description="Fraction of free accelerator memory left unused")
    cpu_headroom: float = Field(0.3, ge=0.0, lt=1.0, description="Fraction of free RAM left unused")
    cache_type: str = Field("f16", description="KV cache type")

    @field_validator("cache_type")
    @classmethod
    def _known_cache_type(cls, value: str) -> str:
        if value.lower() not in KV_CACHE_TYPE_BYTES:
            raise ValueError(f"Unsupported cache type '{value}'")
        return value.lower()


class SupervisorConfig(BaseModel):
    """Configuration for process supervision.

    Attributes:
        record_dir: Directory holding process records and server logs.
        poll_interval: Seconds between health polls during startup.
        health_timeout: Seconds to wait for a server to become healthy.
        probe_timeout: Timeout of a single health request in seconds.
        grace_period: Seconds to wait after SIGTERM before escalating to SIGKILL.
        force_kill_timeout: Seconds to wait for the process to be reaped after SIGKILL.
    """

    record_dir: str = Field(
        default_factory=lambda: str(Path(tempfile.gettempdir()) / "llama_lifecycle"),
        description="Directory holding process records and server logs",
    )
    poll_interval: float = Field(0.1, gt=0, description="Seconds between health polls")
    health_timeout: float = Field(45.0, gt=0, description="Seconds to wait for a server to become healthy")
    probe_timeout: float = Field(2.0, gt=0, description="Timeout of a single health request")
    grace_period: float = Field(2.0, ge=0, description="Seconds between SIGTERM and SIGKILL")
    force_kill_timeout: float = Field(1.0, ge=0, description="Seconds to wait after SIGKILL")


class ServerConfig(BaseModel):
    """Configuration for the control API server.

    Attributes:
        host: Host for the control API.
        port: Port for the control API.
    """

    host: str = Field("127.0.0.1", description="Host for the control API")
    port: int = Field(8000, ge=1, le=65535, description="Port for the control API")


class Config(BaseModel):
    """Main configuration class.

    Attributes:
        engine: llama-server process configuration.
        placement: Layer placement configuration.
        supervisor: Process supervision configuration.
        server: Control API configuration.
    """

    engine: EngineConfig = Field(default_factory=EngineConfig)
    placement: PlacementConfig = Field(default_factory=PlacementConfig)
    supervisor: SupervisorConfig = Field(default_factory=SupervisorConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)

    @classmethod
    def load(cls, config_path: str = "config.json") -> "Config":
        """Load and validate configuration from JSON file."""
        path = Path(config_path)
        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        with open(path) as f:
            data = json.load(f)

        return cls(**data)
