"""
Run orchestration: policy -> sandbox -> analysis -> store.

Requests that pass the policy are executed through a bounded worker pool.
Every request that reaches a terminal state is persisted, including blocked
ones. Cancelled runs are not.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import replace
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, TypeVar

from snaptriage._types import (
    AnalysisResult,
    ExecutionOutcome,
    PolicyDecision,
    RunError,
    RunRequest,
    RunResult,
    RunStatus,
)
from snaptriage.analysis import LogAnalyzer
from snaptriage.errors import ExecutionError, SandboxSetupError
from snaptriage.sandbox import SandboxRunner
from snaptriage.security import CommandPolicy
from snaptriage.store import ResultsStore
from snaptriage.timeline import Timeline

if TYPE_CHECKING:
    from snaptriage.config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

_Job = tuple[Callable[[], Awaitable[Any]], "asyncio.Future[Any]"]


class WorkerPool:
    """
    Fixed number of worker tasks draining a bounded queue.

    Workers start lazily on the first submit, inside the running loop.
    Cancelling the caller of `submit` cancels the job it is waiting for.
    """

    def __init__(self, max_workers: int = 4, queue_size: int = 32) -> None:
        if max_workers < 1 or queue_size < 1:
            raise ValueError("max_workers and queue_size must be at least 1")
        self.max_workers = max_workers
        self.queue_size = queue_size
        self._queue: asyncio.Queue[_Job] | None = None
        self._workers: list[asyncio.Task[None]] = []
        self._closed = False

    @property
    def started(self) -> bool:
        return bool(self._workers)

    def _ensure_started(self) -> asyncio.Queue[_Job]:
        if self._queue is None:
            queue: asyncio.Queue[_Job] = asyncio.Queue(maxsize=self.queue_size)
            self._queue = queue
            self._workers = [
                asyncio.create_task(self._worker(queue), name=f"snaptriage-worker-{i}") for i in range(self.max_workers)
            ]
            logger.info(f"Started {self.max_workers} workers")
        return self._queue

    async def submit(self, job: Callable[[], Awaitable[T]]) -> T:
        """Queue a job and wait for its result."""
        if self._closed:
            raise RuntimeError("Worker pool has been closed")
        queue = self._ensure_started()
        future: asyncio.Future[T] = asyncio.get_running_loop().create_future()
        await queue.put((job, future))
        return await future

    async def _worker(self, queue: asyncio.Queue[_Job]) -> None:
        while True:
            job, future = await queue.get()
            try:
                if future.done():
                    continue
                task = asyncio.ensure_future(job())
                future.add_done_callback(lambda f, t=task: t.cancel() if f.cancelled() else None)
                try:
                    await asyncio.wait({task})
                except asyncio.CancelledError:
                    task.cancel()
                    future.cancel()
                    raise
                if future.done():
                    if not task.cancelled():
                        task.exception()
                elif task.cancelled():
                    future.cancel()
                elif task.exception() is not None:
                    future.set_exception(task.exception())  # type: ignore[arg-type]
                else:
                    future.set_result(task.result())
            finally:
                queue.task_done()

    async def close(self) -> None:
        """Stop the workers and cancel queued jobs."""
        self._closed = True
        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        if self._queue is not None:
            while not self._queue.empty():
                _, future = self._queue.get_nowait()
                future.cancel()
            self._queue = None


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def combined_log(outcome: ExecutionOutcome) -> str:
    """The text handed to the analyzer: stdout followed by stderr."""
    return "\n".join(part for part in (outcome.stdout, outcome.stderr) if part)


class RunOrchestrator:
    """
    Wire the policy, sandbox runner, analyzer and store together.

    Example:
        >>> orchestrator = RunOrchestrator.from_settings(get_settings())
        >>> result = await orchestrator.submit(RunRequest("./repo", "pytest -q"))
        >>> result.exit_status()
        0
    """

    def __init__(
        self,
        store: ResultsStore,
        *,
        policy: CommandPolicy | None = None,
        runner: SandboxRunner | None = None,
        analyzer: LogAnalyzer | None = None,
        pool: WorkerPool | None = None,
    ) -> None:
        self.store = store
        self.policy = policy or CommandPolicy.standard()
        self.runner = runner or SandboxRunner()
        self.analyzer = analyzer or LogAnalyzer()
        self.pool = pool or WorkerPool()

    @classmethod
    def from_settings(cls, settings: Settings) -> RunOrchestrator:
        return cls(
            ResultsStore(settings.runs_dir),
            policy=CommandPolicy.from_settings(settings),
            runner=SandboxRunner.from_settings(settings),
            analyzer=LogAnalyzer.from_settings(settings),
            pool=WorkerPool(settings.max_workers, settings.queue_size),
        )

    def analyze_text(self, text: str | bytes) -> AnalysisResult:
        return self.analyzer.analyze(text)

    async def submit(self, request: RunRequest) -> RunResult:
        """
        Evaluate, execute, analyze and persist one request.

        Returns the persisted result with its id assigned.

        Raises:
            StorageError: If the result cannot be persisted.
        """
        created_at = _utc_now()
        timeline = Timeline()
        timeline.start("policy")
        decision = self.policy.evaluate(request.command)
        if not decision.allowed:
            timeline.fail("policy", decision.reason)
            result = RunResult(created_at, request, decision, RunStatus.BLOCKED, timeline=timeline.events)
            return await self._persist(result)
        timeline.ok("policy", f"{len(decision.warnings)} warnings" if decision.warnings else None)
        return await self.pool.submit(lambda: self._execute(request, decision, created_at, timeline))

    async def _execute(
        self,
        request: RunRequest,
        decision: PolicyDecision,
        created_at: str,
        timeline: Timeline,
    ) -> RunResult:
        try:
            outcome = await self.runner.run(request, decision, timeline=timeline)
        except SandboxSetupError as e:
            logger.warning(f"Sandbox setup failed for {request.repo_path}: {e}")
            return await self._persist(
                RunResult(
                    created_at,
                    request,
                    decision,
                    RunStatus.SETUP_ERROR,
                    error=RunError("SandboxSetupError", str(e)),
                    timeline=timeline.events,
                )
            )
        except ExecutionError as e:
            logger.warning(f"Execution failed for {request.command!r}: {e}")
            return await self._persist(
                RunResult(
                    created_at,
                    request,
                    decision,
                    RunStatus.EXECUTION_ERROR,
                    error=RunError("ExecutionError", str(e)),
                    timeline=timeline.events,
                )
            )

        timeline.start("analysis")
        analysis = self.analyzer.analyze(combined_log(outcome))
        timeline.ok("analysis", f"{analysis.verdict.value} ({analysis.confidence})")
        status = RunStatus.TIMEOUT if outcome.timed_out else RunStatus.COMPLETED
        result = RunResult(
            created_at,
            request,
            decision,
            status,
            outcome=outcome,
            analysis=analysis,
            timeline=timeline.events,
        )
        logger.debug(f"Run timeline:\n{timeline.render()}")
        return await self._persist(result)

    async def _persist(self, result: RunResult) -> RunResult:
        run_id = await asyncio.to_thread(self.store.save, result)
        return replace(result, id=run_id)

    async def close(self) -> None:
        await self.pool.close()
        await self.runner.backend.close()
