from llama_lifecycle.frameworks_drivers.server_lifecycle_manager import ServerLifecycleManager


class StopServer:
    def __init__(self, manager: ServerLifecycleManager):
        self.manager = manager

    async def execute(self, stable_id: str) -> dict:
        await self.manager.stop(stable_id)
        return {"stopped": stable_id}
