from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Union

from llama_lifecycle.entities.health_state import HealthStatus
from llama_lifecycle.entities.model_metadata import ModelMetadata
from llama_lifecycle.entities.placement_plan import PlacementPlan
from llama_lifecycle.entities.server_handle import ServerProcessHandle
from llama_lifecycle.entities.server_state import ServerState, transition
from llama_lifecycle.frameworks_drivers.client_factory import ClientFactory
from llama_lifecycle.frameworks_drivers.config import Config
from llama_lifecycle.frameworks_drivers.device_inventory import DeviceInventory
from llama_lifecycle.frameworks_drivers.gpu_allocator import MemoryEstimator
from llama_lifecycle.frameworks_drivers.model_selector import ModelSelection, QuantizationSelector
from llama_lifecycle.frameworks_drivers.process_supervisor import ProcessSupervisor
from llama_lifecycle.shared.errors import (
    ClientSetupError,
    HealthTimeout,
    InfeasiblePlacement,
    ProcessError,
    SpawnError,
    TerminationTimeout,
)
from llama_lifecycle.shared.gguf_reader import read_model_metadata
from llama_lifecycle.shared.logger import Logger

logger = Logger.get(__name__)


@dataclass
class ServerSlot:
    """Orchestrator bookkeeping for one logical server identity."""
    stable_id: str
    lock: asyncio.Lock
    state: ServerState = ServerState.NOT_STARTED
    handle: Optional[ServerProcessHandle] = None


class ServerLifecycleManager:
    """
    Ensures a ready llama-server exists for a requested model and context,
    relaunching it when the configuration drifts, and tears servers down.
    """

    def __init__(
        self,
        config: Config,
        inventory: DeviceInventory,
        supervisor: ProcessSupervisor,
        client_factory: ClientFactory,
        reader: Callable[[str], ModelMetadata] = read_model_metadata,
        estimator: Optional[MemoryEstimator] = None,
    ):
        self.config = config
        self.inventory = inventory
        self.supervisor = supervisor
        self.client_factory = client_factory
        self.reader = reader
        self.estimator = estimator or MemoryEstimator(cache_type=config.placement.cache_type)
        self.selector = QuantizationSelector(self.estimator, reader)
        self.slots: Dict[str, ServerSlot] = {}

    def _slot(self, stable_id: str) -> ServerSlot:
        slot = self.slots.get(stable_id)
        if slot is None:
            slot = ServerSlot(stable_id=stable_id, lock=asyncio.Lock())
            self.slots[stable_id] = slot
        return slot

    def _set_state(self, slot: ServerSlot, target: ServerState) -> None:
        slot.state = transition(slot.state, target)

    def state(self, stable_id: str) -> ServerState:
        slot = self.slots.get(stable_id)
        return slot.state if slot else ServerState.NOT_STARTED

    def handles(self) -> List[ServerProcessHandle]:
        return [slot.handle for slot in self.slots.values() if slot.handle is not None]

    async def ensure_ready(
        self,
        model_path: str,
        context_size: Optional[int] = None,
        batch_size: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> ServerProcessHandle:
        """Return a healthy server for this model and context, launching one if needed."""
        context_size = context_size or self.config.engine.default_context_size
        batch_size = batch_size or self.config.engine.default_batch_size
        metadata = await asyncio.to_thread(self.reader, model_path)
        signature = (metadata.fingerprint, metadata.path, context_size, batch_size)

        slot = self._slot(self.client_factory.identity())
        async with slot.lock:
            handle = slot.handle
            if handle is not None and handle.signature == signature:
                if handle.health.status is HealthStatus.ALIVE:
                    state = await asyncio.to_thread(self.supervisor.poll_health, handle)
                    if state.is_alive:
                        logger.debug(f"Reusing healthy server {slot.stable_id}")
                        return handle
                elif slot.state is ServerState.STARTING:
                    # An earlier caller stopped waiting; the process kept starting
                    logger.info(f"Resuming startup wait for {slot.stable_id}")
                    return await self._await_ready(slot, handle, timeout)

            if handle is not None:
                logger.info(f"Relaunching {slot.stable_id}: configuration changed or server unhealthy")
                await self._terminate(slot)

            # A record left behind by an earlier invocation holds the same identity
            await asyncio.to_thread(self.supervisor.reap_orphans, slot.stable_id)

            budgets = await asyncio.to_thread(self.inventory.snapshot)
            plan = self.estimator.plan(metadata, context_size, batch_size, budgets)
            if not plan.feasible:
                raise InfeasiblePlacement({
                    "model": metadata.path,
                    "context_size": context_size,
                    "batch_size": batch_size,
                    "overhead_bytes": plan.overhead_bytes,
                    "layer_bytes": sum(metadata.layer_sizes),
                    "budgets": {b.label: b.usable_bytes for b in budgets},
                })

            client = self.client_factory.create()
            try:
                await asyncio.to_thread(self.supervisor.clear_address, client)
            except (SpawnError, TerminationTimeout, ProcessError):
                # stop() leaves a socket that belongs to someone else in place
                client.stop()
                raise

            args = self.build_args(metadata.path, context_size, batch_size, plan, client.host, getattr(client, "port", None))
            self._set_state(slot, ServerState.STARTING)
            try:
                handle = await asyncio.to_thread(
                    self.supervisor.spawn,
                    self.config.engine.binary, args, slot.stable_id, client=client, env=self.build_env(plan),
                )
            except (SpawnError, ProcessError):
                client.close()
                self._set_state(slot, ServerState.FAILED)
                raise
            handle.plan = plan
            handle.signature = signature
            handle.model_path = metadata.path
            slot.handle = handle
            return await self._await_ready(slot, handle, timeout)

    async def select_model(
        self,
        candidates: List[str],
        context_size: Optional[int] = None,
        batch_size: Optional[int] = None,
    ) -> ModelSelection:
        """Pick the candidate quantization that best fits the devices right now."""
        context_size = context_size or self.config.engine.default_context_size
        batch_size = batch_size or self.config.engine.default_batch_size
        budgets = await asyncio.to_thread(self.inventory.snapshot)
        return await asyncio.to_thread(self.selector.select, candidates, context_size, batch_size, budgets)

    async def _await_ready(
        self, slot: ServerSlot, handle: ServerProcessHandle, timeout: Optional[float]
    ) -> ServerProcessHandle:
        try:
            await self.supervisor.wait_until_ready(handle, timeout=timeout, model_path=handle.model_path)
        except HealthTimeout as e:
            self._set_state(slot, ServerState.FAILED)
            try:
                await asyncio.to_thread(self.supervisor.terminate, handle)
            except TerminationTimeout as leak:
                raise leak from e
            slot.handle = None
            raise
        except SpawnError:
            self._set_state(slot, ServerState.FAILED)
            await asyncio.to_thread(self.supervisor.terminate, handle)
            slot.handle = None
            raise
        self._set_state(slot, ServerState.READY)
        return handle

    async def _terminate(self, slot: ServerSlot) -> None:
        handle = slot.handle
        self._set_state(slot, ServerState.STOPPING)
        try:
            await asyncio.to_thread(self.supervisor.terminate, handle)
        except (TerminationTimeout, ProcessError):
            self._set_state(slot, ServerState.FAILED)
            raise
        slot.handle = None
        self._set_state(slot, ServerState.STOPPED)

    def build_args(
        self,
        model_path: str,
        context_size: int,
        batch_size: int,
        plan: PlacementPlan,
        host: str,
        port: Optional[int],
    ) -> List[str]:
        """Build llama-server arguments that realize ``plan``."""
        args = [
            "-m", model_path,
            "--ctx-size", str(context_size),
            "--batch-size", str(batch_size),
            "--n-gpu-layers", str(plan.offloaded_layers),
            "--host", host,
        ]
        if port is not None:
            args += ["--port", str(port)]

        used = [p for p in plan.accelerator_placements if p.layers > 0]
        if len(used) > 1:
            args += ["--split-mode", "layer", "--tensor-split", ",".join(str(p.layers) for p in used)]
        elif used:
            args += ["--split-mode", "none"]
        if used:
            # Ordinals are renumbered from 0 under CUDA_VISIBLE_DEVICES
            args += ["--main-gpu", "0"]

        cache_type = self.config.placement.cache_type
        if cache_type != "f16":
            args += ["--cache-type-k", cache_type, "--cache-type-v", cache_type]

        args += self.config.engine.extra_args
        return args

    def build_env(self, plan: PlacementPlan) -> Dict[str, str]:
        used = [p.device.ordinal for p in plan.accelerator_placements if p.layers > 0]
        if not used:
            return {}
        return {"CUDA_VISIBLE_DEVICES": ",".join(str(o) for o in used)}

    async def send(
        self,
        handle: ServerProcessHandle,
        path: str,
        body: Optional[bytes] = None,
        timeout: float = 300.0,
    ) -> bytes:
        """
        Forward a request to the server; GET when ``body`` is None.

        Client errors reach the caller unchanged. A failed request says nothing
        reliable about the server (the request may simply have been bad), so
        health and slot state only move through health polling.
        """
        if handle.client is None:
            raise ClientSetupError("server has no IPC client")
        if body is None:
            return await asyncio.to_thread(handle.client.get, path, timeout)
        return await asyncio.to_thread(handle.client.post, path, body, timeout)

    async def stop(self, target: Union[ServerProcessHandle, str]) -> None:
        stable_id = target if isinstance(target, str) else target.stable_id
        slot = self.slots.get(stable_id)
        if slot is None or slot.handle is None:
            raise KeyError(f"No tracked server with id '{stable_id}'")
        async with slot.lock:
            if slot.handle is not None:
                await self._terminate(slot)

    async def reap_orphans(self, pattern: Optional[str] = None) -> List[str]:
        """Reap recorded servers that this invocation does not own."""
        pattern = pattern or self.client_factory.record_pattern()
        tracked = {slot.stable_id for slot in self.slots.values() if slot.handle is not None}
        reaped: List[str] = []
        survivors: List[int] = []
        elapsed = 0.0
        for stable_id in await asyncio.to_thread(self.supervisor.records.discover, pattern):
            if stable_id in tracked:
                continue
            try:
                reaped += await asyncio.to_thread(self.supervisor.reap_orphans, stable_id)
            except TerminationTimeout as e:
                survivors.extend(e.pids)
                elapsed += e.elapsed
        if survivors:
            raise TerminationTimeout("reap orphans", elapsed, survivors)
        return reaped

    async def sweep_unrecorded(self) -> List[int]:
        """Terminate processes of the configured binary that no record or slot accounts for."""
        keep = {slot.handle.pid for slot in self.slots.values() if slot.handle is not None}
        for stable_id in await asyncio.to_thread(self.supervisor.records.discover, "*"):
            try:
                record = await asyncio.to_thread(self.supervisor.records.read, stable_id)
            except ValueError as e:
                logger.warning(f"Ignoring unreadable process record {stable_id} during sweep: {e}")
                continue
            if record is not None:
                keep.add(record.pid)
        return await asyncio.to_thread(self.supervisor.sweep_executable, self.client_factory.exe_name, keep)

    async def check_health(self) -> Dict[str, Dict[str, Any]]:
        """Probe every tracked server and move Ready/Degraded accordingly."""
        report = {}
        for slot in list(self.slots.values()):
            handle = slot.handle
            if handle is None:
                report[slot.stable_id] = {"state": slot.state.value, "health": None}
                continue
            health = await asyncio.to_thread(self.supervisor.poll_health, handle)
            if slot.state is ServerState.READY and not health.is_alive:
                self._set_state(slot, ServerState.DEGRADED)
            elif slot.state is ServerState.DEGRADED and health.is_alive:
                self._set_state(slot, ServerState.READY)
            report[slot.stable_id] = {**handle.summary(), "state": slot.state.value}
        return report

    async def shutdown(self) -> None:
        for slot in list(self.slots.values()):
            if slot.handle is None:
                continue
            async with slot.lock:
                if slot.handle is not None:
                    await self._terminate(slot)
