from typing import List, Optional

from llama_lifecycle.frameworks_drivers.server_lifecycle_manager import ServerLifecycleManager
from llama_lifecycle.shared.protocols import HandleDTO


class EnsureServerReady:
    def __init__(self, manager: ServerLifecycleManager):
        self.manager = manager

    async def execute(
        self,
        model_path: Optional[str] = None,
        context_size: Optional[int] = None,
        batch_size: Optional[int] = None,
        timeout: Optional[float] = None,
        model_candidates: Optional[List[str]] = None,
    ) -> HandleDTO:
        """Ensure a server for ``model_path``, or for the best fitting of ``model_candidates``."""
        if model_candidates:
            selection = await self.manager.select_model(model_candidates, context_size, batch_size)
            model_path = selection.metadata.path
        if model_path is None:
            raise ValueError("Either model_path or model_candidates is required")
        handle = await self.manager.ensure_ready(model_path, context_size, batch_size, timeout)
        return handle.summary()
