from __future__ import annotations

import asyncio
import os
import subprocess
import time
from pathlib import Path
from typing import Dict, Iterable, List, Optional

import psutil

from llama_lifecycle.entities.health_state import HealthState, HealthStatus
from llama_lifecycle.entities.server_handle import ServerProcessHandle
from llama_lifecycle.frameworks_drivers.config import SupervisorConfig
from llama_lifecycle.frameworks_drivers.process_record import ProcessRecordStore
from llama_lifecycle.frameworks_drivers.process_table import address_args, find_pids_by_args, find_pids_by_executable
from llama_lifecycle.shared.errors import (
    ClientError,
    HealthTimeout,
    ProcessError,
    SpawnError,
    TerminationTimeout,
)
from llama_lifecycle.shared.health_checker import HealthChecker, model_ids_match
from llama_lifecycle.shared.logger import Logger
from llama_lifecycle.shared.protocols import ServerClient

logger = Logger.get(__name__)

# Allowed drift between a recorded and the live process creation time
CREATE_TIME_TOLERANCE = 1.0
LOG_TAIL_BYTES = 2048


class ProcessSupervisor:
    """
    Spawns llama-server processes, tracks them through process records, polls
    their health and terminates them, escalating from SIGTERM to SIGKILL.
    """

    def __init__(self, config: Optional[SupervisorConfig] = None, records: Optional[ProcessRecordStore] = None):
        self.config = config or SupervisorConfig()
        self.records = records or ProcessRecordStore(self.config.record_dir)

    def spawn(
        self,
        command: str,
        args: List[str],
        stable_id: str,
        client: Optional[ServerClient] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> ServerProcessHandle:
        """Launch ``command`` and record its pid under ``stable_id`` before returning."""
        cmd = [command, *args]
        log_path = self.records.record_dir / f"{stable_id}.log"
        process_env = os.environ.copy()
        if env:
            process_env.update(env)

        try:
            self.records.record_dir.mkdir(parents=True, exist_ok=True)
            with open(log_path, "wb") as log_file:
                process = subprocess.Popen(
                    cmd,
                    stdin=subprocess.DEVNULL,
                    stdout=log_file,
                    stderr=subprocess.STDOUT,
                    env=process_env,
                    start_new_session=True,
                )
        except OSError as e:
            raise SpawnError(command, e) from e

        try:
            create_time = psutil.Process(process.pid).create_time()
        except psutil.Error:
            # Already gone; the startup wait reports the exit code
            create_time = None

        try:
            self.records.create(stable_id, process.pid, create_time)
        except ProcessError:
            process.kill()
            process.wait()
            raise

        logger.info(f"Spawned {stable_id} (pid {process.pid}): {' '.join(cmd)}")
        return ServerProcessHandle(
            stable_id=stable_id,
            pid=process.pid,
            command=cmd,
            launched_at=time.time(),
            create_time=create_time,
            host=client.host if client is not None else "127.0.0.1",
            port=getattr(client, "port", None),
            socket_path=getattr(client, "socket_path", None),
            client=client,
            process=process,
            log_path=str(log_path),
        )

    def poll_health(self, handle: ServerProcessHandle, timeout: Optional[float] = None) -> HealthState:
        if handle.client is None:
            state = HealthState.unreachable("no IPC client")
        else:
            state = HealthChecker.probe(handle.client, timeout or self.config.probe_timeout)
        handle.health = state
        return state

    def check_model(self, handle: ServerProcessHandle, model_path: str, timeout: Optional[float] = None) -> HealthState:
        """
        Confirm through /props that the answering server loaded ``model_path``.

        Raises:
            SpawnError: if the server reports a different model
        """
        try:
            served = HealthChecker.loaded_model(handle.client, timeout or self.config.probe_timeout)
        except ClientError as e:
            state = HealthState.starting(f"model not confirmed: {e}")
        else:
            if served is None:
                state = HealthState.degraded("/props reports no model_path")
            elif not model_ids_match(Path(served).name, Path(model_path).name):
                raise SpawnError(
                    " ".join(handle.command),
                    f"server at {handle.endpoint} serves '{served}', expected '{model_path}'",
                )
            else:
                state = HealthState.alive()
        handle.health = state
        return state

    def _ensure_running(self, handle: ServerProcessHandle) -> None:
        if handle.process is not None and not HealthChecker.check_process_running(handle.process):
            raise SpawnError(
                " ".join(handle.command),
                "process exited during startup",
                exit_code=handle.process.returncode,
                log_tail=self.read_log_tail(handle),
            )

    async def wait_until_ready(
        self,
        handle: ServerProcessHandle,
        interval: Optional[float] = None,
        timeout: Optional[float] = None,
        model_path: Optional[str] = None,
    ) -> HealthState:
        """
        Poll health until Alive, raising HealthTimeout once ``timeout`` elapses.

        With ``model_path`` the server only counts as ready once /props reports
        that model, so another process answering on the same address is never
        mistaken for the one just spawned.
        """
        interval = interval if interval is not None else self.config.poll_interval
        timeout = timeout if timeout is not None else self.config.health_timeout
        start = time.monotonic()
        deadline = start + timeout
        last = handle.health

        while True:
            self._ensure_running(handle)

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise HealthTimeout(last, time.monotonic() - start)

            probe_timeout = min(self.config.probe_timeout, remaining)
            last = await asyncio.to_thread(self.poll_health, handle, probe_timeout)
            if last.is_alive and model_path is not None:
                last = await asyncio.to_thread(self.check_model, handle, model_path, probe_timeout)
            if last.is_alive:
                self._ensure_running(handle)
                logger.info(f"{handle.stable_id} is ready after {time.monotonic() - start:.2f}s")
                return last

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise HealthTimeout(last, time.monotonic() - start)
            await asyncio.sleep(min(interval, remaining))

    def terminate(
        self,
        handle: ServerProcessHandle,
        grace_period: Optional[float] = None,
        force_timeout: Optional[float] = None,
    ) -> None:
        """Stop the server and remove its record once the process is confirmed gone."""
        grace_period = grace_period if grace_period is not None else self.config.grace_period
        force_timeout = force_timeout if force_timeout is not None else self.config.force_kill_timeout

        if handle.client is not None:
            try:
                handle.client.stop()
            except ClientError as e:
                logger.debug(f"Graceful stop request to {handle.stable_id} failed: {e}")

        if handle.process is not None:
            self._terminate_child(handle.process, grace_period, force_timeout)
        else:
            self.terminate_pid(handle.pid, handle.create_time, grace_period, force_timeout)

        self.records.remove(handle.stable_id)
        if handle.client is not None:
            handle.client.close()
        logger.info(f"Terminated {handle.stable_id} (pid {handle.pid})")

    def _terminate_child(self, process: subprocess.Popen, grace_period: float, force_timeout: float) -> None:
        start = time.monotonic()
        if process.poll() is not None:
            logger.debug(f"Process {process.pid} already exited with {process.returncode}")
            return

        try:
            process.terminate()
        except ProcessLookupError:
            return
        except PermissionError as e:
            raise ProcessError(f"send SIGTERM to pid {process.pid}", e) from e

        try:
            process.wait(timeout=grace_period)
            return
        except subprocess.TimeoutExpired:
            logger.warning(f"Process {process.pid} ignored SIGTERM for {grace_period}s, killing")

        try:
            process.kill()
        except ProcessLookupError:
            return
        except PermissionError as e:
            raise ProcessError(f"send SIGKILL to pid {process.pid}", e) from e

        try:
            process.wait(timeout=force_timeout)
        except subprocess.TimeoutExpired:
            raise TerminationTimeout("terminate", time.monotonic() - start, [process.pid]) from None

    def terminate_pid(
        self,
        pid: int,
        create_time: Optional[float] = None,
        grace_period: Optional[float] = None,
        force_timeout: Optional[float] = None,
    ) -> bool:
        """
        Terminate a process known only by pid.

        Returns:
            True if a live process was signalled, False if it was already gone or
            the pid now belongs to a different process
        """
        grace_period = grace_period if grace_period is not None else self.config.grace_period
        force_timeout = force_timeout if force_timeout is not None else self.config.force_kill_timeout
        start = time.monotonic()

        if pid == os.getpid():
            logger.warning(f"Refusing to terminate own pid {pid}")
            return False

        try:
            proc = psutil.Process(pid)
            if create_time is not None and abs(proc.create_time() - create_time) > CREATE_TIME_TOLERANCE:
                logger.warning(f"Pid {pid} was reused by another process, not terminating it")
                return False
            if proc.status() == psutil.STATUS_ZOMBIE:
                proc.wait(timeout=0)
                return False
            proc.terminate()
        except psutil.NoSuchProcess:
            return False
        except psutil.TimeoutExpired:
            return False
        except psutil.AccessDenied as e:
            raise ProcessError(f"send SIGTERM to pid {pid}", e) from e

        _, alive = psutil.wait_procs([proc], timeout=grace_period)
        if not alive:
            return True

        logger.warning(f"Pid {pid} ignored SIGTERM for {grace_period}s, killing")
        try:
            proc.kill()
        except psutil.NoSuchProcess:
            return True
        except psutil.AccessDenied as e:
            raise ProcessError(f"send SIGKILL to pid {pid}", e) from e

        _, alive = psutil.wait_procs([proc], timeout=force_timeout)
        if alive:
            raise TerminationTimeout("terminate", time.monotonic() - start, [p.pid for p in alive])
        return True

    def reap_orphans(self, pattern: str = "*") -> List[str]:
        """
        Terminate the processes behind every record matching ``pattern``.

        Records are removed whether or not their process still existed. Processes
        that survive termination are reported together in one TerminationTimeout
        after all records have been handled.
        """
        start = time.monotonic()
        reaped: List[str] = []
        survivors: List[int] = []

        for stable_id in self.records.discover(pattern):
            try:
                record = self.records.read(stable_id)
            except ValueError as e:
                logger.warning(f"Discarding unreadable process record {stable_id}: {e}")
                self.records.remove(stable_id)
                continue
            if record is None:
                continue

            try:
                if self.terminate_pid(record.pid, record.create_time):
                    logger.info(f"Reaped orphan {stable_id} (pid {record.pid})")
            except TerminationTimeout as e:
                survivors.extend(e.pids)
            finally:
                self.records.remove(stable_id)
            reaped.append(stable_id)

        if survivors:
            raise TerminationTimeout("reap orphans", time.monotonic() - start, survivors)
        return reaped

    def terminate_pids(self, pids: Iterable[int], operation: str = "terminate") -> List[int]:
        """Terminate every pid, reporting the ones that survive in one TerminationTimeout."""
        start = time.monotonic()
        terminated: List[int] = []
        survivors: List[int] = []
        for pid in pids:
            try:
                if self.terminate_pid(pid):
                    terminated.append(pid)
            except TerminationTimeout as e:
                survivors.extend(e.pids)
        if survivors:
            raise TerminationTimeout(operation, time.monotonic() - start, survivors)
        return terminated

    def clear_address(self, client: ServerClient) -> List[int]:
        """
        Make sure nothing answers on the address ``client`` is about to serve.

        A llama-server left bound to the address by an earlier run is found by
        its --host/--port arguments and terminated.

        Returns:
            Pids that were terminated

        Raises:
            SpawnError: if the address keeps answering after the cleanup
        """
        state = HealthChecker.probe(client, self.config.probe_timeout)
        if state.status == HealthStatus.UNREACHABLE:
            return []

        logger.warning(f"{client.stable_id} already answers ({state.status.value}) before spawn")
        pids = find_pids_by_args(address_args(client.host, getattr(client, "port", None)))
        terminated = self.terminate_pids(pids, "clear address")
        if terminated:
            logger.info(f"Terminated stale servers on {client.stable_id}: {terminated}")

        state = HealthChecker.probe(client, self.config.probe_timeout)
        if state.status != HealthStatus.UNREACHABLE:
            raise SpawnError(client.stable_id, "address is held by another process")
        return terminated

    def sweep_executable(self, exe_name: str, exclude: Iterable[int] = ()) -> List[int]:
        """
        Terminate every process running ``exe_name`` except the pids in ``exclude``.

        Catches servers whose record was lost, e.g. after the record directory
        was wiped.
        """
        skip = set(exclude)
        pids = [pid for pid in find_pids_by_executable(exe_name) if pid not in skip]
        terminated = self.terminate_pids(pids, "sweep")
        for pid in terminated:
            logger.info(f"Swept unrecorded {exe_name} (pid {pid})")
        return terminated

    def read_log_tail(self, handle: ServerProcessHandle) -> str:
        if not handle.log_path:
            return ""
        path = Path(handle.log_path)
        try:
            with open(path, "rb") as f:
                size = f.seek(0, os.SEEK_END)
                f.seek(max(size - LOG_TAIL_BYTES, 0))
                return f.read().decode("utf-8", errors="replace").strip()
        except OSError as e:
            logger.debug(f"Could not read server log {path}: {e}")
            return ""
