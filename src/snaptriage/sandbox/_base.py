"""
Abstract base class for execution backends.

All backends (local subprocess, Docker) implement this interface.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from snaptriage._types import ExecutionOutcome
    from snaptriage.sandbox.workspace import SandboxSession


class ExecutionBackend(ABC):
    """
    Abstract base for command execution backends.

    A backend runs one shell command inside a prepared sandbox session and
    reports what happened. It never decides whether a command may run.
    """

    name: str = "base"

    @abstractmethod
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
        Execute a shell command in `session.workdir` and return the outcome.

        Args:
            command: The shell command to execute.
            session: The sandbox session holding the working copy.
            env: Complete environment for the command.
            timeout: Wall-clock seconds before the process tree is killed.
            max_output_bytes: Capture limit per stream.

        Returns:
            ExecutionOutcome. On timeout `timed_out` is set and `exit_code`
            is -1, with the output captured so far.

        Raises:
            ExecutionError: If the process cannot be started.
            asyncio.CancelledError: After the process tree has been killed.
        """
        ...

    async def close(self) -> None:
        """
        Release backend resources.

        Idempotent - safe to call multiple times.
        """
        return None

    async def __aenter__(self) -> ExecutionBackend:
        """Enter async context manager."""
        return self

    async def __aexit__(self, *args: object) -> None:
        """Exit async context manager, cleaning up resources."""
        await self.close()
