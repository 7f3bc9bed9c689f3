"""
Process-tree termination.

Commands are spawned as leaders of their own session (POSIX) or process
group (Windows), so a single call reaches every descendant the command
started.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import subprocess
from typing import Any

logger = logging.getLogger(__name__)


def new_group_kwargs() -> dict[str, Any]:
    """Extra subprocess arguments that put the child in a new process group."""
    if os.name == "posix":
        return {"start_new_session": True}
    return {"creationflags": subprocess.CREATE_NEW_PROCESS_GROUP}


async def terminate_process_tree(proc: asyncio.subprocess.Process, grace: float = 2.0) -> None:
    """
    Terminate a process and all of its descendants.

    POSIX: SIGTERM to the process group, wait up to `grace` seconds for the
    leader, then SIGKILL the group to sweep anything that ignored SIGTERM.
    Windows: `taskkill /T /F` on the process tree.

    Always reaps the leader before returning.
    """
    if os.name == "posix":
        await _terminate_posix(proc, grace)
    else:
        await _terminate_windows(proc, grace)


async def sweep_process_group(proc: asyncio.subprocess.Process) -> None:
    """
    Kill whatever is left of the command's process group after the leader exited.

    Background jobs (`cmd &`) stay in the group and would otherwise outlive
    the run. The group id cannot be reused while any member is alive, so the
    signal never reaches an unrelated process.
    """
    if os.name == "posix":
        if _signal_group(proc.pid, signal.SIGKILL):
            logger.debug(f"Killed leftover members of process group {proc.pid}")
        return
    try:
        killer = await asyncio.create_subprocess_exec(
            "taskkill",
            "/PID",
            str(proc.pid),
            "/T",
            "/F",
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
        await killer.wait()
    except OSError as e:
        logger.warning(f"taskkill failed for pid {proc.pid}: {e}")


def _signal_group(pgid: int, sig: int) -> bool:
    try:
        os.killpg(pgid, sig)
        return True
    except ProcessLookupError:
        return False
    except PermissionError as e:
        logger.warning(f"Cannot signal process group {pgid}: {e}")
        return False


async def _terminate_posix(proc: asyncio.subprocess.Process, grace: float) -> None:
    # With start_new_session the group id equals the leader's pid.
    pgid = proc.pid
    if _signal_group(pgid, signal.SIGTERM):
        try:
            await asyncio.wait_for(proc.wait(), timeout=grace)
        except asyncio.TimeoutError:
            logger.info(f"Process group {pgid} ignored SIGTERM for {grace}s, sending SIGKILL")
        _signal_group(pgid, signal.SIGKILL)
    if proc.returncode is None:
        try:
            proc.kill()
        except ProcessLookupError:
            pass
        await proc.wait()


async def _terminate_windows(proc: asyncio.subprocess.Process, grace: float) -> None:
    try:
        killer = await asyncio.create_subprocess_exec(
            "taskkill",
            "/PID",
            str(proc.pid),
            "/T",
            "/F",
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
        await killer.wait()
    except OSError as e:
        logger.warning(f"taskkill failed for pid {proc.pid}: {e}")
    try:
        await asyncio.wait_for(proc.wait(), timeout=grace)
    except asyncio.TimeoutError:
        try:
            proc.kill()
        except ProcessLookupError:
            pass
        await proc.wait()
