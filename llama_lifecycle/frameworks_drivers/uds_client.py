"""
HTTP-over-Unix-socket transport to a llama-server.

llama-server treats a --host value ending in ".sock" as a Unix socket path.
"""
import os
import secrets
import tempfile
from pathlib import Path
from typing import Optional

import httpx

from llama_lifecycle.frameworks_drivers.http_client import remote_error, sanitize_id
from llama_lifecycle.shared.errors import (
    ClientIoError,
    ClientSetupError,
    ClientTimeout,
)
from llama_lifecycle.shared.logger import Logger

logger = Logger.get(__name__)


class UdsServerClient:
    """Talks to llama-server through a Unix domain socket using httpx."""

    def __init__(self, exe_name: str, socket_path: Optional[str] = None):
        if not hasattr(os, "fork"):
            raise ClientSetupError("Unix domain sockets are not supported on this platform")
        if socket_path is None:
            socket_path = str(Path(tempfile.gettempdir()) / f"{exe_name}-{secrets.token_hex(4)}.sock")
        self.socket_path = socket_path
        self._stable_id = sanitize_id(Path(socket_path).stem)
        try:
            self.client = httpx.Client(
                transport=httpx.HTTPTransport(uds=socket_path),
                base_url="http://localhost",
            )
        except (OSError, httpx.HTTPError) as e:
            raise ClientSetupError(f"could not open socket transport {socket_path}: {e}") from e

    @property
    def host(self) -> str:
        return self.socket_path

    @property
    def stable_id(self) -> str:
        return self._stable_id

    def _request(self, method: str, path: str, body: Optional[bytes], timeout: float) -> bytes:
        url = f"/{path.lstrip('/')}"
        headers = {"Content-Type": "application/json"} if body is not None else None
        try:
            response = self.client.request(method, url, content=body, headers=headers, timeout=timeout)
        except httpx.TimeoutException as e:
            raise ClientTimeout(timeout) from e
        except httpx.TransportError as e:
            raise ClientIoError(f"{method} unix:{self.socket_path}{url}: {e}") from e

        if not response.is_success:
            raise remote_error(response.status_code, response.content)
        return response.content

    def get(self, path: str, timeout: float) -> bytes:
        return self._request("GET", path, None, timeout)

    def post(self, path: str, body: bytes, timeout: float) -> bytes:
        return self._request("POST", path, body, timeout)

    def stop(self) -> None:
        self.client.close()

    def close(self) -> None:
        self.client.close()
        try:
            os.unlink(self.socket_path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Could not remove socket {self.socket_path}: {e}")
