"""Tests for the sandbox runner, workspace sessions and the local backend."""

from __future__ import annotations

import asyncio
import os
import time
from pathlib import Path

import pytest

from snaptriage._types import ExecutionOptions, PolicyDecision, PolicyOutcome, RunRequest
from snaptriage.errors import (
    ConfigurationError,
    ExecutionError,
    ExecutionTimeout,
    PolicyViolation,
    SandboxSetupError,
)
from snaptriage.sandbox import (
    DockerBackend,
    DockerConfig,
    LocalBackend,
    SandboxRunner,
    SandboxSession,
    copy_repository,
    open_session,
)
from snaptriage.security import CommandPolicy
from snaptriage.timeline import Timeline

pytestmark = pytest.mark.skipif(os.name != "posix", reason="POSIX shell semantics")

ALLOW = PolicyDecision(PolicyOutcome.ALLOW)


def _request(repo: Path, command: str, **options: object) -> RunRequest:
    return RunRequest(str(repo), command, ExecutionOptions(**options))  # type: ignore[arg-type]


def _alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    stat = Path(f"/proc/{pid}/stat")
    if stat.exists():
        try:
            return stat.read_text().split(")")[-1].split()[0] != "Z"
        except OSError:
            return False
    return True


class TestLocalExecution:
    """Tests for command execution."""

    async def test_execute_simple_command(self, runner: SandboxRunner, repo: Path) -> None:
        """Should execute simple commands and return output."""
        outcome = await runner.run(_request(repo, "echo 'hello world'"), ALLOW)
        assert outcome.exit_code == 0
        assert outcome.success
        assert "hello world" in outcome.stdout
        assert outcome.backend == "local"

    async def test_execute_returns_exit_code(self, runner: SandboxRunner, repo: Path) -> None:
        """A non-zero exit code is a normal outcome."""
        outcome = await runner.run(_request(repo, "exit 42"), ALLOW)
        assert outcome.exit_code == 42
        assert not outcome.timed_out

    async def test_execute_returns_stderr(self, runner: SandboxRunner, repo: Path) -> None:
        """Should capture stderr separately."""
        outcome = await runner.run(_request(repo, "echo 'error' >&2"), ALLOW)
        assert "error" in outcome.stderr
        assert outcome.stdout == ""

    async def test_execute_can_read_files(self, runner: SandboxRunner, repo: Path) -> None:
        """The command sees the repository contents."""
        outcome = await runner.run(_request(repo, "cat test.txt"), ALLOW)
        assert outcome.stdout == "hello world"

    async def test_runs_in_a_copy(self, runner: SandboxRunner, repo: Path, sandbox_root: Path) -> None:
        """The working directory is a copy under the sandbox root, never the source."""
        outcome = await runner.run(_request(repo, "pwd"), ALLOW)
        cwd = Path(outcome.stdout.strip())
        assert cwd != repo
        assert cwd.is_relative_to(sandbox_root)
        assert cwd.parent.name.startswith("snap-")

    async def test_writes_do_not_reach_source(self, runner: SandboxRunner, repo: Path) -> None:
        """Changes made by the command stay in the sandbox."""
        outcome = await runner.run(_request(repo, "echo changed > test.txt && touch new.txt"), ALLOW)
        assert outcome.exit_code == 0
        assert (repo / "test.txt").read_text() == "hello world"
        assert not (repo / "new.txt").exists()

    async def test_workdir_option(self, runner: SandboxRunner, repo: Path) -> None:
        outcome = await runner.run(_request(repo, "cat nested.txt", workdir="sub"), ALLOW)
        assert outcome.stdout == "nested"

    async def test_handles_large_output_on_both_streams(self, runner: SandboxRunner, repo: Path) -> None:
        """Both pipes are drained concurrently, so a chatty command cannot deadlock."""
        outcome = await runner.run(
            _request(repo, "head -c 300000 /dev/zero | tr '\\0' a; head -c 300000 /dev/zero | tr '\\0' b >&2"),
            ALLOW,
        )
        assert outcome.exit_code == 0
        assert len(outcome.stdout) == 300000
        assert len(outcome.stderr) == 300000
        assert not outcome.truncated


class TestEnvironment:
    """Tests for the command environment."""

    async def test_minimal_environment(self, runner: SandboxRunner, repo: Path) -> None:
        outcome = await runner.run(_request(repo, "echo $CI:$TERM:$HOME"), ALLOW)
        ci, term, home = outcome.stdout.strip().split(":")
        assert ci == "1"
        assert term == "dumb"
        assert Path(home).name.startswith("snap-")

    async def test_host_variables_are_not_inherited(
        self, runner: SandboxRunner, repo: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("SNAPTRIAGE_TEST_SECRET", "s3cret")
        outcome = await runner.run(_request(repo, "echo x${SNAPTRIAGE_TEST_SECRET}x"), ALLOW)
        assert outcome.stdout.strip() == "xx"

    async def test_inherit_env(self, sandbox_root: Path, repo: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("SNAPTRIAGE_TEST_SECRET", "s3cret")
        runner = SandboxRunner(sandbox_root=sandbox_root, inherit_env=True)
        outcome = await runner.run(_request(repo, "echo $SNAPTRIAGE_TEST_SECRET"), ALLOW)
        assert outcome.stdout.strip() == "s3cret"

    async def test_env_overrides(self, runner: SandboxRunner, repo: Path) -> None:
        outcome = await runner.run(_request(repo, "echo $FOO", env={"FOO": "bar"}), ALLOW)
        assert outcome.stdout.strip() == "bar"


class TestBounds:
    """Tests for timeouts and output limits."""

    async def test_timeout_kills_and_reports(self, runner: SandboxRunner, repo: Path) -> None:
        """Should kill the process and report a timeout."""
        start = time.monotonic()
        outcome = await runner.run(_request(repo, "echo started; sleep 10", timeout_seconds=0.5), ALLOW)
        assert time.monotonic() - start < 8
        assert outcome.timed_out
        assert outcome.exit_code == -1
        assert "started" in outcome.stdout
        assert "timed out" in outcome.stderr.lower()

    async def test_timeout_kills_process_tree(self, runner: SandboxRunner, repo: Path, temp_dir: Path) -> None:
        """Children started by the command die with it."""
        pid_file = temp_dir / "child.pid"
        command = f"sleep 30 & echo $! > {pid_file}; wait"
        outcome = await runner.run(_request(repo, command, timeout_seconds=0.5), ALLOW)
        assert outcome.timed_out
        pid = int(pid_file.read_text().strip())
        deadline = time.monotonic() + 5
        while _alive(pid) and time.monotonic() < deadline:
            await asyncio.sleep(0.05)
        assert not _alive(pid)

    async def test_background_job_dies_after_normal_exit(
        self, runner: SandboxRunner, repo: Path, temp_dir: Path
    ) -> None:
        """A detached job started by a successful command does not survive the run."""
        pid_file = temp_dir / "bg.pid"
        command = f"sleep 30 >/dev/null 2>&1 & echo $! > {pid_file}; echo done"
        outcome = await runner.run(_request(repo, command), ALLOW)
        assert outcome.exit_code == 0
        assert not outcome.timed_out
        assert outcome.stdout.strip() == "done"
        pid = int(pid_file.read_text().strip())
        deadline = time.monotonic() + 5
        while _alive(pid) and time.monotonic() < deadline:
            await asyncio.sleep(0.05)
        assert not _alive(pid)

    async def test_raise_for_timeout(self, runner: SandboxRunner, repo: Path) -> None:
        outcome = await runner.run(_request(repo, "sleep 5", timeout_seconds=0.3), ALLOW)
        with pytest.raises(ExecutionTimeout) as exc_info:
            outcome.raise_for_timeout(0.3)
        assert exc_info.value.outcome is outcome

    async def test_output_truncation(self, sandbox_root: Path, repo: Path) -> None:
        """Output beyond the limit is discarded and flagged."""
        runner = SandboxRunner(sandbox_root=sandbox_root, max_output_bytes=100)
        outcome = await runner.run(_request(repo, "head -c 10000 /dev/zero | tr '\\0' x"), ALLOW)
        assert outcome.exit_code == 0
        assert outcome.stdout_truncated
        assert not outcome.stderr_truncated
        assert len(outcome.stdout) == 100

    def test_effective_timeout(self, sandbox_root: Path) -> None:
        runner = SandboxRunner(sandbox_root=sandbox_root, default_timeout=5, max_timeout=20)
        assert runner.effective_timeout(None) == 5
        assert runner.effective_timeout(10) == 10
        assert runner.effective_timeout(100) == 20


class TestSetup:
    """Tests for working copy materialization."""

    async def test_missing_repository(self, runner: SandboxRunner, temp_dir: Path) -> None:
        with pytest.raises(SandboxSetupError):
            await runner.run(_request(temp_dir / "missing", "ls"), ALLOW)

    async def test_repository_must_be_directory(self, runner: SandboxRunner, repo: Path) -> None:
        with pytest.raises(SandboxSetupError):
            await runner.run(_request(repo / "test.txt", "ls"), ALLOW)

    async def test_workdir_escape_is_rejected(self, runner: SandboxRunner, repo: Path) -> None:
        with pytest.raises(SandboxSetupError):
            await runner.run(_request(repo, "ls", workdir="../.."), ALLOW)

    async def test_missing_workdir_is_rejected(self, runner: SandboxRunner, repo: Path) -> None:
        with pytest.raises(SandboxSetupError):
            await runner.run(_request(repo, "ls", workdir="nope"), ALLOW)

    async def test_symlink_escape_is_rejected(self, runner: SandboxRunner, repo: Path, temp_dir: Path) -> None:
        outside = temp_dir / "outside.txt"
        outside.write_text("secret")
        (repo / "escape").symlink_to(outside)
        with pytest.raises(SandboxSetupError, match="Symlink"):
            await runner.run(_request(repo, "cat escape"), ALLOW)

    async def test_internal_symlinks_are_kept(self, runner: SandboxRunner, repo: Path) -> None:
        (repo / "link.txt").symlink_to("test.txt")
        (repo / "abs.txt").symlink_to(repo / "sub" / "nested.txt")
        outcome = await runner.run(_request(repo, "cat link.txt; echo; cat abs.txt; echo; readlink abs.txt"), ALLOW)
        lines = outcome.stdout.splitlines()
        assert lines[0] == "hello world"
        assert lines[1] == "nested"
        assert not lines[2].startswith("/")

    async def test_git_directory_excluded_by_default(self, runner: SandboxRunner, repo: Path) -> None:
        (repo / ".git").mkdir()
        (repo / ".git" / "config").write_text("[core]")
        outcome = await runner.run(_request(repo, "test -e .git && echo yes || echo no"), ALLOW)
        assert outcome.stdout.strip() == "no"

    async def test_include_git(self, runner: SandboxRunner, repo: Path) -> None:
        (repo / ".git").mkdir()
        (repo / ".git" / "config").write_text("[core]")
        outcome = await runner.run(_request(repo, "cat .git/config", include_git=True), ALLOW)
        assert outcome.stdout == "[core]"

    def test_copy_repository_skips_fifos(self, repo: Path, temp_dir: Path) -> None:
        os.mkfifo(repo / "pipe")
        dest = temp_dir / "copy"
        copy_repository(repo, dest)
        assert (dest / "test.txt").exists()
        assert not (dest / "pipe").exists()


class TestPolicyGate:
    """The runner refuses commands the policy blocked."""

    async def test_blocked_decision_raises(self, runner: SandboxRunner, repo: Path, sandbox_root: Path) -> None:
        decision = CommandPolicy.standard().evaluate("rm -rf /")
        with pytest.raises(PolicyViolation):
            await runner.run(_request(repo, "rm -rf /"), decision)
        assert list(sandbox_root.iterdir()) == []


class TestCleanup:
    """The session directory is removed on every path."""

    async def test_after_success(self, runner: SandboxRunner, repo: Path, sandbox_root: Path) -> None:
        await runner.run(_request(repo, "echo ok"), ALLOW)
        assert list(sandbox_root.iterdir()) == []

    async def test_after_timeout(self, runner: SandboxRunner, repo: Path, sandbox_root: Path) -> None:
        await runner.run(_request(repo, "sleep 10", timeout_seconds=0.3), ALLOW)
        assert list(sandbox_root.iterdir()) == []

    async def test_after_setup_error(self, runner: SandboxRunner, repo: Path, sandbox_root: Path) -> None:
        with pytest.raises(SandboxSetupError):
            await runner.run(_request(repo, "ls", workdir="nope"), ALLOW)
        assert list(sandbox_root.iterdir()) == []

    async def test_after_spawn_failure(self, sandbox_root: Path, repo: Path) -> None:
        runner = SandboxRunner(LocalBackend(shell="/nonexistent/shell"), sandbox_root=sandbox_root)
        with pytest.raises(ExecutionError):
            await runner.run(_request(repo, "echo hi"), ALLOW)
        assert list(sandbox_root.iterdir()) == []

    async def test_after_cancellation(self, runner: SandboxRunner, repo: Path, sandbox_root: Path) -> None:
        task = asyncio.create_task(runner.run(_request(repo, "sleep 30"), ALLOW))
        await asyncio.sleep(0.5)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert list(sandbox_root.iterdir()) == []

    async def test_read_only_files_are_removed(self, runner: SandboxRunner, repo: Path, sandbox_root: Path) -> None:
        """Permissions the command removed do not prevent cleanup."""
        outcome = await runner.run(_request(repo, "mkdir locked && touch locked/f && chmod 500 locked"), ALLOW)
        assert outcome.exit_code == 0
        assert list(sandbox_root.iterdir()) == []

    async def test_open_session_directly(self, repo: Path, sandbox_root: Path) -> None:
        async with open_session(repo, timeout=5, sandbox_root=sandbox_root) as session:
            assert (session.repo_dir / "test.txt").read_text() == "hello world"
            assert session.workdir == session.repo_dir
            assert 0 < session.remaining() <= 5
            root = session.root
        assert not root.exists()


class TestTimeline:
    """The runner records its steps on the timeline."""

    async def test_steps_recorded(self, runner: SandboxRunner, repo: Path) -> None:
        timeline = Timeline()
        await runner.run(_request(repo, "echo ok"), ALLOW, timeline=timeline)
        steps = [(e.step, e.status) for e in timeline.events]
        assert steps == [
            ("sandbox.setup", "start"),
            ("sandbox.setup", "ok"),
            ("sandbox.run", "start"),
            ("sandbox.run", "ok"),
        ]
        assert timeline.events[-1].duration_ms is not None

    async def test_setup_failure_recorded(self, runner: SandboxRunner, temp_dir: Path) -> None:
        timeline = Timeline()
        with pytest.raises(SandboxSetupError):
            await runner.run(_request(temp_dir / "missing", "ls"), ALLOW, timeline=timeline)
        assert [(e.step, e.status) for e in timeline.events][-1] == ("sandbox.setup", "fail")


class TestDockerBackend:
    """Tests for docker command construction (no daemon required)."""

    @pytest.fixture
    def session(self, temp_dir: Path) -> SandboxSession:
        root = temp_dir / "snap-abc"
        (root / "repo" / "sub").mkdir(parents=True)
        return SandboxSession("abc123", root, root / "repo", root / "repo" / "sub", deadline=0.0)

    def test_missing_docker_raises(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr("snaptriage.sandbox.docker.shutil.which", lambda name: None)
        with pytest.raises(ConfigurationError):
            DockerBackend()

    def test_build_argv(self, monkeypatch: pytest.MonkeyPatch, session: SandboxSession) -> None:
        monkeypatch.setattr("snaptriage.sandbox.docker.shutil.which", lambda name: "/usr/bin/docker")
        backend = DockerBackend(DockerConfig(image="node:20", cpus=2, memory="1g"))
        argv = backend.build_argv("npm test", session, {"CI": "1", "PATH": "/host/bin", "HOME": "/x"})
        assert argv[:3] == ["/usr/bin/docker", "run", "--rm"]
        assert argv[-4:] == ["node:20", "sh", "-c", "npm test"]
        assert "snaptriage-abc123" in argv
        assert f"{session.repo_dir}:/workspace" in argv
        assert argv[argv.index("-w") + 1] == "/workspace/sub"
        assert "--network=none" in argv
        assert "--cpus=2" in argv
        assert "--memory=1g" in argv
        assert "CI=1" in argv
        assert not any(arg.startswith(("PATH=", "HOME=")) for arg in argv)
        assert backend.name == "docker"
