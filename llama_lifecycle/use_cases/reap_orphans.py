from typing import Optional

from llama_lifecycle.frameworks_drivers.server_lifecycle_manager import ServerLifecycleManager


class ReapOrphans:
    def __init__(self, manager: ServerLifecycleManager):
        self.manager = manager

    async def execute(self, pattern: Optional[str] = None, sweep: bool = False) -> dict:
        reaped = await self.manager.reap_orphans(pattern)
        if not sweep:
            return {"reaped": reaped}
        # Records are handled first so the sweep only sees unrecorded processes
        swept = await self.manager.sweep_unrecorded()
        return {"reaped": reaped, "swept": swept}
