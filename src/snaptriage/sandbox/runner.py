"""
Sandbox runner: materialize a session, execute, clean up.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import TYPE_CHECKING

from snaptriage._types import ExecutionOutcome, PolicyDecision, RunRequest
from snaptriage.errors import ConfigurationError
from snaptriage.sandbox._base import ExecutionBackend
from snaptriage.sandbox.local import LocalBackend
from snaptriage.sandbox.workspace import SandboxSession, open_session
from snaptriage.timeline import Timeline

if TYPE_CHECKING:
    from snaptriage.config import Settings

logger = logging.getLogger(__name__)

DEFAULT_PATH = "/usr/local/bin:/usr/bin:/bin"


def minimal_env(session: SandboxSession) -> dict[str, str]:
    """The environment a command sees when the host environment is not inherited."""
    return {
        "PATH": os.environ.get("PATH", DEFAULT_PATH),
        "LANG": "C.UTF-8",
        "LC_ALL": "C.UTF-8",
        "TERM": "dumb",
        "HOME": str(session.root),
        "CI": "1",
    }


class SandboxRunner:
    """
    Run allowed commands against a private copy of a repository.

    Example:
        >>> runner = SandboxRunner()
        >>> decision = CommandPolicy.standard().evaluate("pytest -q")
        >>> outcome = await runner.run(RunRequest("./repo", "pytest -q"), decision)
    """

    def __init__(
        self,
        backend: ExecutionBackend | None = None,
        *,
        sandbox_root: Path | None = None,
        default_timeout: float = 60.0,
        max_timeout: float = 600.0,
        max_output_bytes: int = 1_048_576,
        inherit_env: bool = False,
    ) -> None:
        if default_timeout <= 0 or max_timeout <= 0:
            raise ConfigurationError("Timeouts must be positive")
        if max_output_bytes <= 0:
            raise ConfigurationError("max_output_bytes must be positive")
        self.backend = backend or LocalBackend()
        self.sandbox_root = sandbox_root
        self.default_timeout = min(default_timeout, max_timeout)
        self.max_timeout = max_timeout
        self.max_output_bytes = max_output_bytes
        self.inherit_env = inherit_env

    @classmethod
    def from_settings(cls, settings: Settings) -> SandboxRunner:
        backend: ExecutionBackend
        if settings.backend == "docker":
            from snaptriage.sandbox.docker import DockerBackend, DockerConfig

            config = DockerConfig(
                image=settings.docker_image,
                cpus=settings.docker_cpus,
                memory=settings.docker_memory,
                network=settings.docker_network,
            )
            backend = DockerBackend(config, grace_seconds=settings.terminate_grace_seconds)
        else:
            backend = LocalBackend(grace_seconds=settings.terminate_grace_seconds)
        return cls(
            backend,
            sandbox_root=settings.sandbox_root,
            default_timeout=settings.default_timeout_seconds,
            max_timeout=settings.max_timeout_seconds,
            max_output_bytes=settings.max_output_bytes,
            inherit_env=settings.inherit_env,
        )

    def effective_timeout(self, requested: float | None) -> float:
        """Requested timeout, else the default, capped at the maximum."""
        if requested is None or requested <= 0:
            return self.default_timeout
        return min(float(requested), self.max_timeout)

    def build_env(self, session: SandboxSession, overrides: dict[str, str]) -> dict[str, str]:
        env = dict(os.environ) if self.inherit_env else minimal_env(session)
        env.update({str(k): str(v) for k, v in overrides.items()})
        return env

    async def run(
        self,
        request: RunRequest,
        decision: PolicyDecision,
        *,
        timeline: Timeline | None = None,
    ) -> ExecutionOutcome:
        """
        Execute an allowed request in a fresh sandbox session.

        Raises:
            PolicyViolation: If the decision does not allow the command.
            SandboxSetupError: If the working copy cannot be created.
            ExecutionError: If the command cannot be started.
        """
        decision.raise_for_block(request.command)
        options = request.options
        timeout = self.effective_timeout(options.timeout_seconds)

        timeline = timeline or Timeline()
        step = "sandbox.setup"
        timeline.start(step)
        try:
            async with open_session(
                request.repo_path,
                timeout=timeout,
                workdir=options.workdir,
                include_git=options.include_git,
                sandbox_root=self.sandbox_root,
            ) as session:
                timeline.ok(step)
                step = "sandbox.run"
                timeline.start(step)
                outcome = await self.backend.execute(
                    request.command,
                    session,
                    env=self.build_env(session, options.env),
                    timeout=timeout,
                    max_output_bytes=self.max_output_bytes,
                )
        except Exception as e:
            timeline.fail(step, str(e))
            raise

        if outcome.timed_out:
            timeline.fail(step, f"timed out after {timeout}s")
        else:
            timeline.ok(step, f"exit {outcome.exit_code}")
        logger.info(f"Command finished on {outcome.backend}: exit {outcome.exit_code} in {outcome.duration_ms}ms")
        return outcome
