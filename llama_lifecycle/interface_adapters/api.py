from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Request, Response

from llama_lifecycle.frameworks_drivers.device_inventory import DeviceInventory
from llama_lifecycle.frameworks_drivers.server_lifecycle_manager import ServerLifecycleManager
from llama_lifecycle.interface_adapters.health_controller import HealthController
from llama_lifecycle.interface_adapters.server_controller import ServerController
from llama_lifecycle.shared.logger import Logger
from llama_lifecycle.use_cases.get_health import GetHealth

logger = Logger.get(__name__)


class API:
    def __init__(self, manager: ServerLifecycleManager, inventory: DeviceInventory):
        self.manager = manager
        self.inventory = inventory
        self.app = FastAPI(title="llama-lifecycle", version="0.1.0", lifespan=self._lifespan)

        # Dependency functions for per-request instances
        self.get_server_controller = lambda: ServerController(self.manager)
        self.get_health_controller = lambda: HealthController(GetHealth(self.manager, self.inventory))

        self._register_routes()

    @asynccontextmanager
    async def _lifespan(self, app: FastAPI):
        yield
        logger.info("Shutting down tracked servers...")
        await self.manager.shutdown()
        self.inventory.close()

    def _register_routes(self):
        async def ensure_ready_handler(request: dict, controller=Depends(self.get_server_controller)):
            return await controller.ensure_ready(request)

        async def stop_handler(stable_id: str, controller=Depends(self.get_server_controller)):
            return await controller.stop(stable_id)

        async def reap_handler(
            pattern: Optional[str] = None, sweep: bool = False, controller=Depends(self.get_server_controller)
        ):
            return await controller.reap(pattern, sweep)

        async def health_handler(controller=Depends(self.get_health_controller)):
            return await controller.health()

        async def forward_request_handler(
            stable_id: str, path: str, request: Request, controller=Depends(self.get_server_controller)
        ) -> Response:
            return await controller.forward(stable_id, path, request)

        self.app.post("/servers")(ensure_ready_handler)
        self.app.post("/servers/reap")(reap_handler)
        self.app.delete("/servers/{stable_id}")(stop_handler)
        self.app.get("/health")(health_handler)
        self.app.api_route("/servers/{stable_id}/{path:path}", methods=["GET", "POST"])(forward_request_handler)
