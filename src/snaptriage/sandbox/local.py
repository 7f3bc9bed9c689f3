"""
Local subprocess execution backend.

This is the default backend. It runs the command with asyncio.subprocess in
its own process group inside the session's working copy.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from typing import TYPE_CHECKING

from snaptriage._types import TIMEOUT_EXIT_CODE, ExecutionOutcome
from snaptriage.errors import ExecutionError
from snaptriage.sandbox._base import ExecutionBackend
from snaptriage.sandbox._process import new_group_kwargs, sweep_process_group, terminate_process_tree

if TYPE_CHECKING:
    from snaptriage.sandbox.workspace import SandboxSession

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024


class _BoundedCapture:
    """Keeps the first `limit` bytes of a stream and counts the rest."""

    def __init__(self, limit: int) -> None:
        self._limit = limit
        self._chunks: list[bytes] = []
        self._size = 0
        self.truncated = False

    def feed(self, data: bytes) -> None:
        room = self._limit - self._size
        if room <= 0:
            self.truncated = self.truncated or bool(data)
            return
        if len(data) > room:
            data = data[:room]
            self.truncated = True
        self._chunks.append(data)
        self._size += len(data)

    def text(self) -> str:
        return b"".join(self._chunks).decode("utf-8", errors="replace")


async def _drain(stream: asyncio.StreamReader | None, capture: _BoundedCapture) -> None:
    if stream is None:
        return
    while True:
        chunk = await stream.read(CHUNK_SIZE)
        if not chunk:
            return
        capture.feed(chunk)


class LocalBackend(ExecutionBackend):
    """
    Subprocess-based backend for local execution.

    Security features:
    - Runs in a private copy of the repository
    - New process group, so timeouts kill the whole tree
    - Bounded output capture per stream
    - No stdin

    Example:
        >>> backend = LocalBackend()
        >>> outcome = await backend.execute("ls -la", session, env=env, timeout=30, max_output_bytes=65536)
        >>> print(outcome.stdout)
    """

    name = "local"

    def __init__(self, *, shell: str | None = None, grace_seconds: float = 2.0) -> None:
        """
        Initialize a local backend.

        Args:
            shell: Shell used to interpret commands. Defaults to /bin/sh
                (cmd.exe on Windows).
            grace_seconds: Time between SIGTERM and SIGKILL on termination.
        """
        self._shell = shell
        self._grace = grace_seconds

    def build_argv(self, command: str, session: SandboxSession, env: dict[str, str]) -> list[str]:
        if os.name == "nt":
            return [self._shell or "cmd.exe", "/c", command]
        return [self._shell or "/bin/sh", "-c", command]

    def process_env(self, env: dict[str, str]) -> dict[str, str]:
        """Environment of the spawned process."""
        return env

    def process_cwd(self, session: SandboxSession) -> str:
        return str(session.workdir)

    async def on_terminate(self, session: SandboxSession) -> None:
        """Hook for backends whose work outlives the spawned process."""
        return None

    async def _terminate(self, proc: asyncio.subprocess.Process, session: SandboxSession) -> None:
        await terminate_process_tree(proc, self._grace)
        await self.on_terminate(session)

    async def execute(
        self,
        command: str,
        session: SandboxSession,
        *,
        env: dict[str, str],
        timeout: float,
        max_output_bytes: int,
    ) -> ExecutionOutcome:
        """
        Execute a shell command in the session's working directory.

        Raises:
            ExecutionError: If the shell cannot be started.
        """
        argv = self.build_argv(command, session, env)
        start = time.monotonic()
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                cwd=self.process_cwd(session),
                env=self.process_env(env),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                **new_group_kwargs(),
            )
        except OSError as e:
            raise ExecutionError(f"Failed to start command: {e}") from e

        stdout = _BoundedCapture(max_output_bytes)
        stderr = _BoundedCapture(max_output_bytes)
        readers = asyncio.gather(_drain(proc.stdout, stdout), _drain(proc.stderr, stderr))

        timed_out = False
        try:
            await asyncio.wait_for(proc.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            timed_out = True
            logger.warning(f"Command timed out after {timeout}s in session {session.session_id}, terminating")
            await self._terminate(proc, session)
        except asyncio.CancelledError:
            logger.info(f"Run cancelled in session {session.session_id}, terminating")
            readers.cancel()
            await self._terminate(proc, session)
            raise
        else:
            # The leader is gone; background jobs it started must not outlive the run.
            await sweep_process_group(proc)

        try:
            await asyncio.wait_for(readers, timeout=self._grace + 1.0)
        except asyncio.TimeoutError:
            # A background child still holds the pipes open.
            logger.warning(f"Output pipes still open after exit in session {session.session_id}")
            await terminate_process_tree(proc, 0)

        duration_ms = int((time.monotonic() - start) * 1000)
        returncode = proc.returncode
        stderr_text = stderr.text()
        if timed_out:
            stderr_text += f"\nCommand timed out after {timeout}s"

        return ExecutionOutcome(
            stdout=stdout.text(),
            stderr=stderr_text,
            exit_code=TIMEOUT_EXIT_CODE if timed_out or returncode is None else returncode,
            duration_ms=duration_ms,
            signal=-returncode if returncode is not None and returncode < 0 else None,
            stdout_truncated=stdout.truncated,
            stderr_truncated=stderr.truncated,
            timed_out=timed_out,
            backend=self.name,
        )
