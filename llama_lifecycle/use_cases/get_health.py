from typing import Any

from llama_lifecycle.frameworks_drivers.device_inventory import DeviceInventory
from llama_lifecycle.frameworks_drivers.server_lifecycle_manager import ServerLifecycleManager
from llama_lifecycle.shared.errors import DeviceInventoryError
from llama_lifecycle.shared.logger import Logger

logger = Logger.get(__name__)


class GetHealth:
    def __init__(self, manager: ServerLifecycleManager, inventory: DeviceInventory):
        self.manager = manager
        self.inventory = inventory

    async def execute(self) -> dict[str, Any]:
        servers = await self.manager.check_health()

        try:
            devices = [
                {**budget.model_dump(), "usable_bytes": budget.usable_bytes}
                for budget in self.inventory.snapshot()
            ]
        except DeviceInventoryError as e:
            logger.error(f"Device inventory unavailable: {e}")
            devices = None

        status = "ok"
        if devices is None or any(s["state"] in ("degraded", "failed") for s in servers.values()):
            status = "degraded"

        return {"status": status, "servers": servers, "devices": devices}
