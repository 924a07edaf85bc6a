"""
Persisted records mapping a stable server identifier to an OS process id.

Records outlive the invocation that wrote them so a later run can find and
terminate servers it did not spawn. A record file holds the decimal pid on its
first line and, when known, the process creation time on its second line; the
creation time tells a recycled pid apart from the original process.
"""
import fnmatch
import os
from pathlib import Path
from typing import List, NamedTuple, Optional

from llama_lifecycle.shared.errors import ProcessError
from llama_lifecycle.shared.logger import Logger

logger = Logger.get(__name__)

RECORD_SUFFIX = ".pid"


class ProcessRecord(NamedTuple):
    stable_id: str
    pid: int
    create_time: Optional[float]
    path: Path


class ProcessRecordStore:
    """Directory of process record files keyed by stable identifier."""

    def __init__(self, record_dir: str):
        self.record_dir = Path(record_dir)

    def path_for(self, stable_id: str) -> Path:
        return self.record_dir / f"{stable_id}{RECORD_SUFFIX}"

    def create(self, stable_id: str, pid: int, create_time: Optional[float] = None) -> Path:
        """Write a new record, failing if one already exists for ``stable_id``."""
        path = self.path_for(stable_id)
        content = f"{pid}\n" if create_time is None else f"{pid}\n{create_time:.3f}\n"
        try:
            self.record_dir.mkdir(parents=True, exist_ok=True)
            fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
        except FileExistsError as e:
            raise ProcessError(
                f"create process record {path}",
                "a record already exists; reap orphans before relaunching",
            ) from e
        except OSError as e:
            raise ProcessError(f"create process record {path}", e) from e

        with os.fdopen(fd, "w") as f:
            f.write(content)
        logger.debug(f"Wrote process record {path} (pid {pid})")
        return path

    def read(self, stable_id: str) -> Optional[ProcessRecord]:
        """Read a record; a missing record returns None, a corrupt one raises ValueError."""
        path = self.path_for(stable_id)
        try:
            lines = path.read_text().split()
        except FileNotFoundError:
            return None
        if not lines:
            raise ValueError(f"Process record {path} is empty")
        pid = int(lines[0])
        if pid <= 0:
            raise ValueError(f"Process record {path} holds invalid pid {pid}")
        create_time = float(lines[1]) if len(lines) > 1 else None
        return ProcessRecord(stable_id, pid, create_time, path)

    def discover(self, pattern: str = "*") -> List[str]:
        """Stable identifiers of all records whose identifier matches a glob pattern."""
        if not self.record_dir.is_dir():
            return []
        ids = []
        for entry in sorted(self.record_dir.iterdir()):
            if entry.suffix != RECORD_SUFFIX:
                continue
            if fnmatch.fnmatch(entry.stem, pattern):
                ids.append(entry.stem)
        return ids

    def remove(self, stable_id: str) -> None:
        path = self.path_for(stable_id)
        try:
            path.unlink()
            logger.debug(f"Removed process record {path}")
        except FileNotFoundError:
            pass
        except OSError as e:
            raise ProcessError(f"remove process record {path}", e) from e
