"""
Docker-based execution backend.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
from dataclasses import dataclass
from typing import TYPE_CHECKING

from snaptriage.errors import ConfigurationError
from snaptriage.sandbox.local import LocalBackend

if TYPE_CHECKING:
    from snaptriage.sandbox.workspace import SandboxSession

logger = logging.getLogger(__name__)

CONTAINER_WORKSPACE = "/workspace"

# Variables that describe the host, not the container.
_HOST_ONLY_ENV = frozenset({"PATH", "HOME"})


@dataclass
class DockerConfig:
    """Docker execution configuration."""

    image: str = "python:3.12-slim"
    cpus: float = 1.0
    memory: str = "512m"
    network: str = "none"


class DockerBackend(LocalBackend):
    """
    Executes commands inside an ephemeral Docker container.

    The session's working copy is mounted at /workspace. The container is
    named after the session so termination can kill it; killing the docker
    client alone would leave the container running.
    """

    name = "docker"

    def __init__(
        self,
        config: DockerConfig | None = None,
        *,
        grace_seconds: float = 2.0,
        docker: str = "docker",
    ) -> None:
        super().__init__(grace_seconds=grace_seconds)
        self.config = config or DockerConfig()
        executable = shutil.which(docker)
        if not executable:
            raise ConfigurationError("Docker executable not found.")
        self._docker = executable

    @staticmethod
    def container_name(session: SandboxSession) -> str:
        return f"snaptriage-{session.session_id}"

    def build_argv(self, command: str, session: SandboxSession, env: dict[str, str]) -> list[str]:
        relative = session.workdir.relative_to(session.repo_dir).as_posix()
        workdir = CONTAINER_WORKSPACE if relative == "." else f"{CONTAINER_WORKSPACE}/{relative}"
        args = [
            self._docker,
            "run",
            "--rm",
            "--init",  # Handle signals properly
            "--name",
            self.container_name(session),
            "-v",
            f"{session.repo_dir}:{CONTAINER_WORKSPACE}",
            "-w",
            workdir,
            f"--network={self.config.network}",
            f"--cpus={self.config.cpus}",
            f"--memory={self.config.memory}",
            "--security-opt=no-new-privileges",
        ]
        for key, value in sorted(env.items()):
            if key not in _HOST_ONLY_ENV:
                args += ["-e", f"{key}={value}"]
        return [*args, self.config.image, "sh", "-c", command]

    def process_env(self, env: dict[str, str]) -> dict[str, str]:
        # The docker client needs the host environment (DOCKER_HOST, config dir).
        return dict(os.environ)

    async def on_terminate(self, session: SandboxSession) -> None:
        name = self.container_name(session)
        try:
            proc = await asyncio.create_subprocess_exec(
                self._docker,
                "kill",
                name,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
            await proc.wait()
        except OSError as e:
            logger.warning(f"Failed to kill container {name}: {e}")
            return
        if proc.returncode == 0:
            logger.info(f"Killed container {name}")
