from fastapi import HTTPException, Request, Response
from fastapi.responses import JSONResponse

from llama_lifecycle.frameworks_drivers.server_lifecycle_manager import ServerLifecycleManager
from llama_lifecycle.shared.error_utils import ErrorUtils
from llama_lifecycle.shared.errors import ClientRemoteError, LifecycleError
from llama_lifecycle.shared.logger import Logger
from llama_lifecycle.use_cases.ensure_server_ready import EnsureServerReady
from llama_lifecycle.use_cases.reap_orphans import ReapOrphans
from llama_lifecycle.use_cases.stop_server import StopServer

logger = Logger.get(__name__)


def error_response(error: Exception) -> JSONResponse:
    status_code, error_type = ErrorUtils.classify(error)
    return JSONResponse(status_code=status_code, content=ErrorUtils.format_error_response(str(error), error_type))


class ServerController:
    def __init__(self, manager: ServerLifecycleManager):
        self.manager = manager
        self.ensure_server_ready_use_case = EnsureServerReady(manager)
        self.stop_server_use_case = StopServer(manager)
        self.reap_orphans_use_case = ReapOrphans(manager)

    async def ensure_ready(self, request: dict):
        self._validate_ensure_request(request)
        try:
            return await self.ensure_server_ready_use_case.execute(
                request.get("model_path"),
                request.get("context_size"),
                request.get("batch_size"),
                request.get("timeout"),
                request.get("model_candidates"),
            )
        except FileNotFoundError as e:
            raise HTTPException(status_code=404, detail=f"Model file not found: {e.filename or e}")
        except LifecycleError as e:
            logger.error(f"ensure_ready failed for {request.get('model_path') or request['model_candidates']}: {e}")
            return error_response(e)

    async def stop(self, stable_id: str):
        try:
            return await self.stop_server_use_case.execute(stable_id)
        except (LifecycleError, KeyError) as e:
            return error_response(e)

    async def reap(self, pattern: str | None = None, sweep: bool = False):
        try:
            return await self.reap_orphans_use_case.execute(pattern, sweep)
        except LifecycleError as e:
            return error_response(e)

    async def forward(self, stable_id: str, path: str, request: Request) -> Response:
        slot = self.manager.slots.get(stable_id)
        if slot is None or slot.handle is None:
            return error_response(KeyError(f"No tracked server with id '{stable_id}'"))

        body = None if request.method == "GET" else await request.body()
        try:
            content = await self.manager.send(slot.handle, path, body)
        except ClientRemoteError as e:
            return JSONResponse(
                status_code=e.code,
                content=ErrorUtils.format_error_response(e.message, "remote_error"),
            )
        except LifecycleError as e:
            return error_response(e)
        return Response(content=content, media_type="application/json")

    def _validate_ensure_request(self, request: dict) -> None:
        if not isinstance(request, dict):
            raise HTTPException(status_code=400, detail="Request must be a JSON object")

        model_path = request.get("model_path")
        candidates = request.get("model_candidates")
        if (model_path is None) == (candidates is None):
            raise HTTPException(status_code=400, detail="Exactly one of model_path or model_candidates is required")

        if candidates is not None:
            if (
                not isinstance(candidates, list)
                or not candidates
                or not all(isinstance(c, str) and c.strip() for c in candidates)
            ):
                raise HTTPException(status_code=400, detail="model_candidates must be a non-empty list of paths")
            request["model_candidates"] = [c.strip() for c in candidates]
        else:
            if not isinstance(model_path, str) or not model_path.strip():
                raise HTTPException(status_code=400, detail="model_path must be a non-empty string")
            request["model_path"] = model_path.strip()

        for key in ("context_size", "batch_size"):
            value = request.get(key)
            if value is not None and (not isinstance(value, int) or isinstance(value, bool) or value <= 0):
                raise HTTPException(status_code=400, detail=f"{key} must be a positive integer")

        timeout = request.get("timeout")
        if timeout is not None and (not isinstance(timeout, (int, float)) or timeout <= 0):
            raise HTTPException(status_code=400, detail="timeout must be a positive number")
