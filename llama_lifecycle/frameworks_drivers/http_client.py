"""
HTTP transport to a llama-server bound on a loopback port.
"""
import json
import re
import socket
from typing import Optional

import requests

from llama_lifecycle.shared.errors import (
    ClientIoError,
    ClientRemoteError,
    ClientSetupError,
    ClientTimeout,
)
from llama_lifecycle.shared.logger import Logger

logger = Logger.get(__name__)

MAX_ID_LENGTH = 240
_UNSAFE_ID_CHARS = re.compile(r"[^a-z0-9_.-]")


def sanitize_id(raw: str) -> str:
    """Lower-case ``raw`` and reduce it to characters safe in a file name."""
    return _UNSAFE_ID_CHARS.sub("_", raw.lower())[:MAX_ID_LENGTH]


def find_free_port(host: str = "127.0.0.1") -> int:
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            s.bind((host, 0))
            return s.getsockname()[1]
    except OSError as e:
        raise ClientSetupError(f"could not reserve a port on {host}: {e}") from e


def remote_error(status_code: int, body: bytes) -> ClientRemoteError:
    """Build a ClientRemoteError, preferring llama-server's JSON error message."""
    message = body.decode("utf-8", errors="replace")
    try:
        payload = json.loads(body)
    except ValueError:
        return ClientRemoteError(status_code, message)
    if isinstance(payload, dict) and isinstance(payload.get("error"), dict):
        message = payload["error"].get("message", message)
    return ClientRemoteError(status_code, message)


class HttpServerClient:
    """Talks to llama-server over http://host:port using a requests session."""

    def __init__(self, exe_name: str, host: str = "127.0.0.1", port: Optional[int] = None):
        self._host = host
        self.port = port if port is not None else find_free_port(host)
        self._stable_id = sanitize_id(f"{exe_name}_http_{host}_{self.port}")
        self.base_url = f"http://{host}:{self.port}"
        self.session = requests.Session()
        # Loopback traffic must never go through an environment proxy
        self.session.trust_env = False

    @property
    def host(self) -> str:
        return self._host

    @property
    def stable_id(self) -> str:
        return self._stable_id

    def _request(self, method: str, path: str, body: Optional[bytes], timeout: float) -> bytes:
        url = f"{self.base_url}/{path.lstrip('/')}"
        headers = {"Content-Type": "application/json"} if body is not None else None
        try:
            response = self.session.request(method, url, data=body, headers=headers, timeout=timeout)
        except requests.Timeout as e:
            raise ClientTimeout(timeout) from e
        except requests.ConnectionError as e:
            raise ClientIoError(f"{method} {url}: {e}") from e
        except requests.RequestException as e:
            raise ClientSetupError(f"{method} {url}: {e}") from e

        if not 200 <= response.status_code < 300:
            raise remote_error(response.status_code, response.content)
        return response.content

    def get(self, path: str, timeout: float) -> bytes:
        return self._request("GET", path, None, timeout)

    def post(self, path: str, body: bytes, timeout: float) -> bytes:
        return self._request("POST", path, body, timeout)

    def stop(self) -> None:
        # llama-server has no shutdown endpoint; the supervisor follows up with signals
        self.close()

    def close(self) -> None:
        self.session.close()
