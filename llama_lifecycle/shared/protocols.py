import json
from typing import Any, Optional, Protocol, TypedDict

from llama_lifecycle.shared.errors import ClientSerdeError


class HandleDTO(TypedDict):
    id: str
    pid: int
    endpoint: str
    model: Optional[str]
    launched_at: float
    health: str
    plan: Optional[dict]


class ServerClient(Protocol):
    """Request/response channel to a running llama-server."""

    @property
    def host(self) -> str: ...

    @property
    def stable_id(self) -> str: ...

    def get(self, path: str, timeout: float) -> bytes: ...

    def post(self, path: str, body: bytes, timeout: float) -> bytes: ...

    def stop(self) -> None: ...

    def close(self) -> None: ...


def decode_json(raw: bytes) -> Any:
    try:
        return json.loads(raw)
    except (ValueError, UnicodeDecodeError) as e:
        raise ClientSerdeError(f"Malformed response body: {e}") from e


def get_json(client: ServerClient, path: str, timeout: float) -> Any:
    return decode_json(client.get(path, timeout))


def post_json(client: ServerClient, path: str, body: Any, timeout: float) -> Any:
    return decode_json(client.post(path, json.dumps(body).encode("utf-8"), timeout))
