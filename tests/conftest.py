"""Pytest configuration and fixtures for snaptriage tests."""

from __future__ import annotations

import tempfile
from pathlib import Path
from typing import AsyncGenerator, Generator

import httpx
import pytest
import pytest_asyncio
from fastapi import FastAPI

from snaptriage import CommandPolicy, ResultsStore, RunOrchestrator, SandboxRunner, WorkerPool
from snaptriage.api import create_app
from snaptriage.config import Settings


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory(prefix="snaptriage_test_") as tmp:
        yield Path(tmp).resolve()


@pytest.fixture
def repo(temp_dir: Path) -> Path:
    """A small repository on the 'host'."""
    root = temp_dir / "repo"
    root.mkdir()
    (root / "test.txt").write_text("hello world")
    (root / "data.json").write_text('{"key": "value"}')
    (root / "sub").mkdir()
    (root / "sub" / "nested.txt").write_text("nested")
    return root


@pytest.fixture
def sandbox_root(temp_dir: Path) -> Path:
    """Directory that holds sandbox sessions, so tests can check cleanup."""
    root = temp_dir / "sandboxes"
    root.mkdir()
    return root


@pytest.fixture
def runner(sandbox_root: Path) -> SandboxRunner:
    return SandboxRunner(sandbox_root=sandbox_root, default_timeout=10.0, max_timeout=30.0)


@pytest.fixture
def store(temp_dir: Path) -> ResultsStore:
    return ResultsStore(temp_dir / "runs")


@pytest_asyncio.fixture
async def orchestrator(store: ResultsStore, runner: SandboxRunner) -> AsyncGenerator[RunOrchestrator, None]:
    """An orchestrator wired to temporary storage and sandbox directories."""
    orch = RunOrchestrator(store, runner=runner, pool=WorkerPool(max_workers=2, queue_size=8))
    try:
        yield orch
    finally:
        await orch.close()


@pytest.fixture
def standard_policy() -> CommandPolicy:
    """Create a standard command policy."""
    return CommandPolicy.standard()


@pytest.fixture
def paranoid_policy() -> CommandPolicy:
    """Create a paranoid policy with basic commands."""
    return CommandPolicy.paranoid(allowed={"ls", "cat", "echo", "grep"})


@pytest.fixture
def settings(temp_dir: Path, sandbox_root: Path) -> Settings:
    return Settings(
        _env_file=None,
        data_dir=temp_dir / "data",
        sandbox_root=sandbox_root,
        default_timeout_seconds=10.0,
        max_workers=2,
        queue_size=8,
    )


@pytest_asyncio.fixture
async def app(settings: Settings) -> AsyncGenerator[FastAPI, None]:
    application = create_app(settings)
    yield application
    await application.state.orchestrator.close()


@pytest_asyncio.fixture
async def client(app: FastAPI) -> AsyncGenerator[httpx.AsyncClient, None]:
    """HTTP client bound directly to the ASGI app."""
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
