"""
Top-level facade for snaptriage.

Run a command against a sandboxed copy of a repository, classify its output
and keep the result.

Example:
    >>> from snaptriage import RunOrchestrator, RunRequest, ResultsStore
    >>> orchestrator = RunOrchestrator(ResultsStore(".data/runs"))
    >>> result = await orchestrator.submit(RunRequest("./repo", "pytest -q"))
    >>> result.analysis.verdict
    <Verdict.PASS: 'pass'>
"""

from snaptriage._types import (
    AnalysisResult,
    ExecutionOptions,
    ExecutionOutcome,
    Finding,
    FindingKind,
    PolicyDecision,
    RunRequest,
    RunResult,
    RunStatus,
    SecurityLevel,
    Verdict,
)
from snaptriage.analysis import LogAnalyzer, analyze
from snaptriage.errors import (
    AnalysisError,
    ConfigurationError,
    ExecutionError,
    ExecutionTimeout,
    PolicyViolation,
    SandboxSetupError,
    SnapTriageError,
    StorageError,
)
from snaptriage.orchestrator import RunOrchestrator, WorkerPool
from snaptriage.sandbox import DockerBackend, LocalBackend, SandboxRunner
from snaptriage.security import CommandPolicy, PolicyRule
from snaptriage.store import ResultsStore

__version__ = "0.1.0"

__all__ = [
    "AnalysisError",
    "AnalysisResult",
    "CommandPolicy",
    "ConfigurationError",
    "DockerBackend",
    "ExecutionError",
    "ExecutionOptions",
    "ExecutionOutcome",
    "ExecutionTimeout",
    "Finding",
    "FindingKind",
    "LocalBackend",
    "LogAnalyzer",
    "PolicyDecision",
    "PolicyRule",
    "PolicyViolation",
    "ResultsStore",
    "RunOrchestrator",
    "RunRequest",
    "RunResult",
    "RunStatus",
    "SandboxRunner",
    "SandboxSetupError",
    "SecurityLevel",
    "SnapTriageError",
    "StorageError",
    "Verdict",
    "WorkerPool",
    "analyze",
    "__version__",
]
