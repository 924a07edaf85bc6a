import math
import re
import subprocess
from difflib import SequenceMatcher
from pathlib import PurePath
from typing import Optional

from llama_lifecycle.entities.health_state import HealthState
from llama_lifecycle.shared.errors import (
    ClientError,
    ClientRemoteError,
    ClientSerdeError,
)
from llama_lifecycle.shared.logger import Logger
from llama_lifecycle.shared.protocols import ServerClient, decode_json, get_json

logger = Logger.get(__name__)

HEALTH_ENDPOINT = "/health"
PROPS_ENDPOINT = "/props"


def _canonical_model_id(name: str) -> str:
    stem = PurePath(name).name.lower()
    if "." in stem:
        stem = stem.rsplit(".", 1)[0]
    stem = stem.replace("gguf", "")
    return re.sub(r"[^a-z0-9]+", "_", stem).strip("_")


def model_ids_match(a: str, b: str) -> bool:
    """
    Compare two model file names or identifiers loosely.

    Case, separators, the extension and any "gguf" marker are ignored. Names that
    still differ match when they share a run of at least 75% of the shorter one,
    so "Llama-3-8B-Instruct:q4_k_m" matches "llama-3_8b-instruct.Q4_K_M.gguf".
    """
    ca, cb = _canonical_model_id(a), _canonical_model_id(b)
    if ca == cb:
        return True
    if not ca or not cb:
        return False
    short, long = sorted((ca, cb), key=len)
    match = SequenceMatcher(None, short, long, autojunk=False).find_longest_match(0, len(short), 0, len(long))
    return match.size >= math.ceil(len(short) * 0.75)


class HealthChecker:
    """
    Utility class for performing health checks on servers and processes.
    Health is decided by the IPC channel only; a running process may still be unresponsive.
    """

    @staticmethod
    def probe(client: ServerClient, timeout: float = 2.0) -> HealthState:
        """
        Poll the health endpoint once and classify the result.

        Args:
            client: IPC client of the server
            timeout: Request timeout in seconds

        Returns:
            Alive on a 200 with status "ok", Starting while the model loads (503),
            Degraded on other remote or malformed answers, Unreachable on transport failure
        """
        try:
            body = decode_json(client.get(HEALTH_ENDPOINT, timeout))
        except ClientRemoteError as e:
            if e.code == 503:
                logger.debug(f"{client.stable_id} is loading: {e.message}")
                return HealthState.starting(e.message)
            logger.warning(f"Health check failed for {client.stable_id}: {e}")
            return HealthState.degraded(str(e))
        except ClientSerdeError as e:
            logger.warning(f"Health check failed for {client.stable_id}: {e}")
            return HealthState.degraded(str(e))
        except ClientError as e:
            logger.debug(f"Health check failed for {client.stable_id}: {e}")
            return HealthState.unreachable(str(e))

        status = body.get("status") if isinstance(body, dict) else None
        if status == "ok":
            return HealthState.alive()
        if status in ("loading", "loading model"):
            return HealthState.starting(status)
        return HealthState.degraded(f"unexpected health status {status!r}")

    @staticmethod
    def loaded_model(client: ServerClient, timeout: float = 2.0) -> Optional[str]:
        """Model file the server reports in /props, or None if it reports none.

        Raises:
            ClientError: if /props cannot be fetched or decoded
        """
        body = get_json(client, PROPS_ENDPOINT, timeout)
        model_path = body.get("model_path") if isinstance(body, dict) else None
        if isinstance(model_path, str) and model_path:
            return model_path
        return None

    @staticmethod
    def check_process_running(process: Optional[subprocess.Popen]) -> bool:
        """
        Check if a subprocess is still running.

        Args:
            process: The subprocess to check

        Returns:
            True if the process is running, False otherwise
        """
        if process is None:
            return False

        return_code = process.poll()
        if return_code is not None:
            logger.warning(f"Process has terminated with return code {return_code}")
            return False

        return True
