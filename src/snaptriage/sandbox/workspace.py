"""
Sandbox sessions: private working copies of a host repository.

Each run gets its own `snap-*` directory holding a copy of the repository.
The command only ever sees the copy. The directory is removed when the
session context exits, on every path.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import stat
import tempfile
import time
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path

from snaptriage.errors import SandboxSetupError

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class SandboxSession:
    """An isolated working copy owned by exactly one run."""

    session_id: str
    root: Path
    repo_dir: Path
    workdir: Path
    deadline: float
    started_at: float = field(default_factory=time.time)

    def remaining(self) -> float:
        """Seconds left before the session deadline."""
        return max(0.0, self.deadline - time.monotonic())


def resolve_source(repo_path: str | Path) -> Path:
    """Validate that the source is a readable directory and return its real path."""
    if not str(repo_path).strip():
        raise SandboxSetupError("Repository path is empty")
    src = Path(repo_path).expanduser().resolve()
    if not src.is_dir():
        raise SandboxSetupError(f"Repository path is not a directory: {src}")
    if not os.access(src, os.R_OK | os.X_OK):
        raise SandboxSetupError(f"Repository path is not readable: {src}")
    return src


def _link_target(link: Path) -> Path:
    return (link.parent / os.readlink(link)).resolve()


def copy_repository(src: Path, dest: Path, *, include_git: bool = False) -> None:
    """
    Copy `src` to `dest`, keeping symlinks as symlinks.

    Raises SandboxSetupError if any symlink resolves outside `src`. Absolute
    links that point inside `src` are rewritten relative so they stay inside
    the copy. Sockets, FIFOs and device nodes are skipped.
    """

    def _ignore(directory: str, names: list[str]) -> set[str]:
        ignored: set[str] = set()
        base = Path(directory)
        for name in names:
            if name == ".git" and not include_git:
                ignored.add(name)
                continue
            path = base / name
            mode = path.lstat().st_mode
            if stat.S_ISLNK(mode):
                target = _link_target(path)
                if not target.is_relative_to(src):
                    raise SandboxSetupError(f"Symlink escapes the repository: {path} -> {os.readlink(path)}")
            elif not (stat.S_ISDIR(mode) or stat.S_ISREG(mode)):
                logger.debug(f"Skipping special file {path}")
                ignored.add(name)
        return ignored

    try:
        shutil.copytree(src, dest, symlinks=True, ignore=_ignore)
        _relink_absolute(src, dest)
    except SandboxSetupError:
        raise
    except (OSError, shutil.Error) as e:
        raise SandboxSetupError(f"Failed to copy repository: {e}") from e


def _relink_absolute(src: Path, dest: Path) -> None:
    for dirpath, dirnames, filenames in os.walk(dest):
        for name in dirnames + filenames:
            link = Path(dirpath) / name
            if not link.is_symlink():
                continue
            target = os.readlink(link)
            if not os.path.isabs(target):
                continue
            inside = Path(target).resolve().relative_to(src)
            link.unlink()
            link.symlink_to(os.path.relpath(dest / inside, link.parent))


def resolve_workdir(repo_dir: Path, workdir: str | None) -> Path:
    """Resolve a relative working directory, refusing anything outside the copy."""
    if not workdir:
        return repo_dir
    candidate = (repo_dir / workdir).resolve()
    if not candidate.is_relative_to(repo_dir):
        raise SandboxSetupError(f"Working directory escapes the repository: {workdir}")
    if not candidate.is_dir():
        raise SandboxSetupError(f"Working directory does not exist: {workdir}")
    return candidate


def remove_tree(root: Path) -> None:
    """
    Remove a session directory, restoring permissions the command took away.

    Failures are logged, never raised.
    """
    try:
        shutil.rmtree(root)
        return
    except FileNotFoundError:
        return
    except OSError:
        pass
    try:
        for dirpath, dirnames, filenames in os.walk(root):
            for name in dirnames + filenames:
                path = os.path.join(dirpath, name)
                if not os.path.islink(path):
                    os.chmod(path, stat.S_IRWXU)
        shutil.rmtree(root)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"Failed to remove sandbox {root}: {e}")


async def _await_copy(copy: asyncio.Future[None]) -> None:
    try:
        await asyncio.shield(copy)
    except asyncio.CancelledError:
        # The copy thread cannot be interrupted; let it finish before cleanup.
        await asyncio.wait({copy})
        if not copy.cancelled():
            copy.exception()
        raise


@asynccontextmanager
async def open_session(
    repo_path: str | Path,
    *,
    timeout: float,
    workdir: str | None = None,
    include_git: bool = False,
    sandbox_root: Path | None = None,
) -> AsyncIterator[SandboxSession]:
    """
    Materialize a private copy of `repo_path` and yield its session.

    Example:
        >>> async with open_session("./repo", timeout=30) as session:
        ...     print(session.workdir)
    """
    src = resolve_source(repo_path)
    try:
        if sandbox_root is not None:
            Path(sandbox_root).mkdir(parents=True, exist_ok=True)
        root = Path(tempfile.mkdtemp(prefix="snap-", dir=sandbox_root)).resolve()
    except OSError as e:
        raise SandboxSetupError(f"Cannot create sandbox directory: {e}") from e

    logger.info(f"Created sandbox {root} for {src}")
    try:
        repo_dir = root / "repo"
        copy = asyncio.ensure_future(asyncio.to_thread(copy_repository, src, repo_dir, include_git=include_git))
        await _await_copy(copy)
        yield SandboxSession(
            session_id=uuid.uuid4().hex[:12],
            root=root,
            repo_dir=repo_dir,
            workdir=resolve_workdir(repo_dir, workdir),
            deadline=time.monotonic() + timeout,
        )
    finally:
        remove_tree(root)
        logger.debug(f"Removed sandbox {root}")
