"""
Finds engine processes by their command line when no process record exists.
"""
import os
from pathlib import PurePath
from typing import Iterable, Iterator, List, Sequence

import psutil

# Linux truncates process names to this many characters
_COMM_LENGTH = 15


def _argv_tokens(cmdline: Iterable[str]) -> Iterator[str]:
    for arg in cmdline:
        for token in arg.split():
            if token.startswith("-") and "=" in token:
                flag, value = token.split("=", 1)
                yield flag
                yield value
            else:
                yield token


def _contains_sequence(tokens: List[str], sequence: Sequence[str]) -> bool:
    size = len(sequence)
    return any(tokens[i:i + size] == list(sequence) for i in range(len(tokens) - size + 1))


def find_pids_by_args(sequences: Sequence[Sequence[str]]) -> List[int]:
    """
    Pids of processes whose command line contains every argument sequence.

    ``--flag=value`` is treated like ``--flag value``. The current process is
    never returned.
    """
    own_pid = os.getpid()
    pids = []
    for proc in psutil.process_iter(["pid", "cmdline"]):
        cmdline = proc.info["cmdline"]
        if not cmdline or proc.info["pid"] == own_pid:
            continue
        tokens = list(_argv_tokens(cmdline))
        if all(_contains_sequence(tokens, sequence) for sequence in sequences):
            pids.append(proc.info["pid"])
    return pids


def find_pids_by_executable(exe_name: str) -> List[int]:
    """Pids of processes running an executable called ``exe_name``."""
    own_pid = os.getpid()
    short_name = exe_name[:_COMM_LENGTH]
    pids = []
    for proc in psutil.process_iter(["pid", "name", "cmdline"]):
        if proc.info["pid"] == own_pid:
            continue
        name = proc.info["name"] or ""
        cmdline = proc.info["cmdline"] or []
        argv0 = PurePath(cmdline[0]).name if cmdline else ""
        if exe_name in (name, argv0) or (name and name == short_name and argv0.startswith(short_name)):
            pids.append(proc.info["pid"])
    return pids


def address_args(host: str, port=None) -> List[List[str]]:
    """Argument sequences a llama-server bound to ``host``/``port`` was launched with."""
    sequences = [["--host", host]]
    if port is not None:
        sequences.append(["--port", str(port)])
    return sequences
