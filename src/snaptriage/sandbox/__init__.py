"""Sandbox execution: isolated working copies and execution backends."""

from snaptriage.sandbox._base import ExecutionBackend
from snaptriage.sandbox._process import terminate_process_tree
from snaptriage.sandbox.docker import DockerBackend, DockerConfig
from snaptriage.sandbox.local import LocalBackend
from snaptriage.sandbox.runner import SandboxRunner, minimal_env
from snaptriage.sandbox.workspace import SandboxSession, copy_repository, open_session

__all__ = [
    "DockerBackend",
    "DockerConfig",
    "ExecutionBackend",
    "LocalBackend",
    "SandboxRunner",
    "SandboxSession",
    "copy_repository",
    "minimal_env",
    "open_session",
    "terminate_process_tree",
]
