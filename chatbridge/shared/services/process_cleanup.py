"""Process-tree termination for agent subprocesses.

Agent CLIs spawn their own helpers (node workers, tool shells), so
killing only the direct child leaves orphans behind.  Agents are started
in their own session, which lets POSIX hosts signal the whole process
group; descendants that moved to another group are found through the
``ps`` process table.  Windows uses ``taskkill /T``.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import subprocess
import sys
from dataclasses import dataclass

logger = logging.getLogger(__name__)

IS_WINDOWS = sys.platform == "win32"


@dataclass(frozen=True)
class ProcessInfo:
    pid: int
    ppid: int


def _list_processes() -> dict[int, ProcessInfo]:
    """Return process table keyed by PID using `ps` output ({} if unavailable)."""
    try:
        out = subprocess.check_output(
            ["ps", "-eo", "pid=,ppid="],
            text=True,
            stderr=subprocess.DEVNULL,
        )
    except (OSError, subprocess.SubprocessError):
        return {}
    table: dict[int, ProcessInfo] = {}
    for line in out.splitlines():
        parts = line.split()
        if len(parts) < 2:
            continue
        try:
            pid = int(parts[0])
            ppid = int(parts[1])
        except ValueError:
            continue
        table[pid] = ProcessInfo(pid=pid, ppid=ppid)
    return table


def descendant_pids(root_pid: int, table: dict[int, ProcessInfo] | None = None) -> list[int]:
    """All transitive children of root_pid, parents before children."""
    if table is None:
        table = _list_processes()
    children: dict[int, list[int]] = {}
    for info in table.values():
        children.setdefault(info.ppid, []).append(info.pid)
    found: list[int] = []
    frontier = [root_pid]
    while frontier:
        current = frontier.pop(0)
        for child in children.get(current, ()):
            if child not in found and child != root_pid:
                found.append(child)
                frontier.append(child)
    return found


def _signal_pid(pid: int, sig: int) -> bool:
    try:
        os.kill(pid, sig)
        return True
    except ProcessLookupError:
        return False
    except PermissionError:
        logger.debug("No permission to signal pid=%s", pid)
        return False


def _signal_group(pid: int, sig: int) -> bool:
    """Signal the process group led by pid, falling back to the pid alone."""
    if hasattr(os, "killpg"):
        try:
            os.killpg(pid, sig)
            return True
        except (ProcessLookupError, PermissionError):
            # Not a group leader (or group already gone).
            pass
    return _signal_pid(pid, sig)


async def terminate_process_tree(
    proc: asyncio.subprocess.Process,
    *,
    force: bool = False,
) -> bool:
    """Send a termination signal to proc and everything it spawned.

    Returns True if anything was signalled.
    """
    if proc.returncode is not None:
        return False

    if IS_WINDOWS:
        try:
            killer = await asyncio.create_subprocess_exec(
                "taskkill", "/F", "/T", "/PID", str(proc.pid),
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
            await killer.wait()
            return True
        except OSError as exc:
            logger.warning("taskkill failed for pid=%s: %s", proc.pid, exc)
            try:
                proc.kill()
            except ProcessLookupError:
                return False
            return True

    sig = signal.SIGKILL if force else signal.SIGTERM
    # Snapshot descendants first: once the leader dies they are reparented.
    stragglers = await asyncio.to_thread(descendant_pids, proc.pid)
    sent = _signal_group(proc.pid, sig)
    for pid in stragglers:
        sent = _signal_pid(pid, sig) or sent
    logger.info(
        "Signalled process tree pid=%s sig=%s descendants=%d",
        proc.pid, getattr(sig, "name", sig), len(stragglers),
    )
    return sent


async def ensure_tree_stopped(
    proc: asyncio.subprocess.Process,
    grace_seconds: float,
) -> None:
    """Escalate to SIGKILL if the tree ignores SIGTERM for grace_seconds."""
    try:
        await asyncio.wait_for(proc.wait(), timeout=max(0.0, grace_seconds))
        return
    except asyncio.TimeoutError:
        pass
    logger.warning(
        "Process pid=%s still running %.1fs after SIGTERM; escalating to SIGKILL",
        proc.pid, grace_seconds,
    )
    await terminate_process_tree(proc, force=True)
    await proc.wait()
