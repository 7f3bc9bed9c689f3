"""
Core type definitions for snaptriage.

Uses dataclasses and enums for lightweight, typed records. Every record
serializes to the camelCase JSON shape consumed by the HTTP API and written
by the results store.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_BLOCKED = 2

# Exit code reported when the deadline killed the process.
TIMEOUT_EXIT_CODE = -1


class SecurityLevel(Enum):
    """Security posture for the command policy."""

    PERMISSIVE = "permissive"  # Report block rules as warnings, never block
    STANDARD = "standard"  # Block known-dangerous patterns
    PARANOID = "paranoid"  # Allowlist-only, deny by default


class PolicyOutcome(str, Enum):
    ALLOW = "allow"
    BLOCK = "block"


class Severity(str, Enum):
    BLOCK = "block"
    WARN = "warn"


class FindingKind(str, Enum):
    ERROR = "error"
    STACK_FRAME = "stack-frame"
    WARNING = "warning"
    INFO = "info"


class Verdict(str, Enum):
    PASS = "pass"
    WARN = "warn"
    FAIL = "fail"
    UNKNOWN = "unknown"


class RunStatus(str, Enum):
    """Terminal state of a run."""

    COMPLETED = "completed"
    TIMEOUT = "timeout"
    BLOCKED = "blocked"
    SETUP_ERROR = "setup_error"
    EXECUTION_ERROR = "execution_error"


# =============================================================================
# Requests and policy
# =============================================================================


@dataclass(frozen=True, slots=True)
class ExecutionOptions:
    """Per-request execution options."""

    timeout_seconds: float | None = None
    workdir: str | None = None
    env: dict[str, str] = field(default_factory=dict)
    include_git: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "timeoutSeconds": self.timeout_seconds,
            "workdir": self.workdir,
            "env": dict(self.env),
            "includeGit": self.include_git,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> ExecutionOptions:
        data = data or {}
        return cls(
            timeout_seconds=data.get("timeoutSeconds"),
            workdir=data.get("workdir"),
            env=dict(data.get("env") or {}),
            include_git=bool(data.get("includeGit", False)),
        )


@dataclass(frozen=True, slots=True)
class RunRequest:
    """A command to run against a copy of a repository on the host."""

    repo_path: str
    command: str
    options: ExecutionOptions = field(default_factory=ExecutionOptions)

    def to_dict(self) -> dict[str, Any]:
        return {
            "repoPathOnHost": self.repo_path,
            "command": self.command,
            "options": self.options.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RunRequest:
        return cls(
            repo_path=data["repoPathOnHost"],
            command=data["command"],
            options=ExecutionOptions.from_dict(data.get("options")),
        )


@dataclass(frozen=True, slots=True)
class RuleMatch:
    """A policy rule that matched a command."""

    rule: str
    severity: Severity
    reason: str

    def to_dict(self) -> dict[str, Any]:
        return {"rule": self.rule, "severity": self.severity.value, "reason": self.reason}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RuleMatch:
        return cls(rule=data["rule"], severity=Severity(data["severity"]), reason=data["reason"])


@dataclass(frozen=True, slots=True)
class PolicyDecision:
    """Outcome of evaluating a command against the policy."""

    outcome: PolicyOutcome
    rule: str | None = None
    severity: Severity | None = None
    reason: str | None = None
    warnings: tuple[RuleMatch, ...] = ()

    @property
    def allowed(self) -> bool:
        return self.outcome is PolicyOutcome.ALLOW

    def raise_for_block(self, command: str = "") -> None:
        """Raise PolicyViolation if the decision blocks the command."""
        if not self.allowed:
            from snaptriage.errors import PolicyViolation

            raise PolicyViolation(self.rule or "unknown", self.reason or "", command)

    def to_dict(self) -> dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "rule": self.rule,
            "severity": self.severity.value if self.severity else None,
            "reason": self.reason,
            "warnings": [w.to_dict() for w in self.warnings],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PolicyDecision:
        severity = data.get("severity")
        return cls(
            outcome=PolicyOutcome(data["outcome"]),
            rule=data.get("rule"),
            severity=Severity(severity) if severity else None,
            reason=data.get("reason"),
            warnings=tuple(RuleMatch.from_dict(w) for w in data.get("warnings", [])),
        )


# =============================================================================
# Execution
# =============================================================================


@dataclass(frozen=True, slots=True)
class ExecutionOutcome:
    """Immutable result of one sandboxed command execution."""

    stdout: str
    stderr: str
    exit_code: int
    duration_ms: int
    signal: int | None = None
    stdout_truncated: bool = False
    stderr_truncated: bool = False
    timed_out: bool = False
    backend: str = "local"

    @property
    def truncated(self) -> bool:
        return self.stdout_truncated or self.stderr_truncated

    @property
    def success(self) -> bool:
        """Return True if the command exited with code 0 before the deadline."""
        return self.exit_code == 0 and not self.timed_out

    def raise_for_timeout(self, timeout: float) -> None:
        """Raise ExecutionTimeout, carrying this partial outcome, if the deadline hit."""
        if self.timed_out:
            from snaptriage.errors import ExecutionTimeout

            raise ExecutionTimeout(timeout, self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "stdout": self.stdout,
            "stderr": self.stderr,
            "exitCode": self.exit_code,
            "signal": self.signal,
            "durationMs": self.duration_ms,
            "stdoutTruncated": self.stdout_truncated,
            "stderrTruncated": self.stderr_truncated,
            "timedOut": self.timed_out,
            "backend": self.backend,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ExecutionOutcome:
        return cls(
            stdout=data["stdout"],
            stderr=data["stderr"],
            exit_code=data["exitCode"],
            duration_ms=data["durationMs"],
            signal=data.get("signal"),
            stdout_truncated=data.get("stdoutTruncated", False),
            stderr_truncated=data.get("stderrTruncated", False),
            timed_out=data.get("timedOut", False),
            backend=data.get("backend", "local"),
        )


# =============================================================================
# Analysis
# =============================================================================


@dataclass(frozen=True, slots=True)
class Finding:
    """One classified unit of signal extracted from log text."""

    kind: FindingKind
    message: str
    rule: str
    file: str | None = None
    line: int | None = None
    column: int | None = None
    count: int = 1
    frames: tuple[Finding, ...] = ()

    def same_signal(self, other: Finding) -> bool:
        """True if both findings describe the same line of signal."""
        return (
            self.kind is other.kind
            and self.rule == other.rule
            and self.message == other.message
            and self.file == other.file
            and self.line == other.line
            and self.column == other.column
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "rule": self.rule,
            "file": self.file,
            "line": self.line,
            "column": self.column,
            "count": self.count,
            "frames": [f.to_dict() for f in self.frames],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Finding:
        return cls(
            kind=FindingKind(data["kind"]),
            message=data["message"],
            rule=data["rule"],
            file=data.get("file"),
            line=data.get("line"),
            column=data.get("column"),
            count=data.get("count", 1),
            frames=tuple(cls.from_dict(f) for f in data.get("frames", [])),
        )


@dataclass(frozen=True, slots=True)
class AnalysisResult:
    """Findings, verdict and confidence derived from one log text."""

    findings: tuple[Finding, ...]
    verdict: Verdict
    confidence: float
    summary: str = ""
    language: str = "unknown"
    error: str | None = None

    def count(self, kind: FindingKind) -> int:
        return sum(1 for f in self.findings if f.kind is kind)

    def exit_status(self, *, strict: bool = False) -> int:
        """Map the verdict to a process exit code for CI callers."""
        if self.verdict is Verdict.FAIL:
            return EXIT_FAILED
        if strict and self.verdict in (Verdict.WARN, Verdict.UNKNOWN):
            return EXIT_FAILED
        return EXIT_OK

    def to_dict(self) -> dict[str, Any]:
        return {
            "findings": [f.to_dict() for f in self.findings],
            "verdict": self.verdict.value,
            "confidence": self.confidence,
            "summary": self.summary,
            "language": self.language,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AnalysisResult:
        return cls(
            findings=tuple(Finding.from_dict(f) for f in data.get("findings", [])),
            verdict=Verdict(data["verdict"]),
            confidence=data["confidence"],
            summary=data.get("summary", ""),
            language=data.get("language", "unknown"),
            error=data.get("error"),
        )


# =============================================================================
# Persisted run records
# =============================================================================


@dataclass(frozen=True, slots=True)
class RunError:
    """Why a run stopped before producing output."""

    type: str
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "message": self.message}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RunError:
        return cls(type=data["type"], message=data["message"])


@dataclass(frozen=True, slots=True)
class TimelineEvent:
    """A step marker with its offset from the start of the run."""

    t_ms: int
    step: str
    status: str
    message: str | None = None
    duration_ms: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "t": self.t_ms,
            "step": self.step,
            "status": self.status,
            "message": self.message,
            "durationMs": self.duration_ms,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TimelineEvent:
        return cls(
            t_ms=data["t"],
            step=data["step"],
            status=data["status"],
            message=data.get("message"),
            duration_ms=data.get("durationMs"),
        )


@dataclass(frozen=True, slots=True)
class RunResult:
    """
    The persisted record of one submitted request.

    `id` is empty until the results store assigns one on save.
    """

    created_at: str
    request: RunRequest
    policy: PolicyDecision
    status: RunStatus
    outcome: ExecutionOutcome | None = None
    analysis: AnalysisResult | None = None
    error: RunError | None = None
    timeline: tuple[TimelineEvent, ...] = ()
    id: str = ""

    @property
    def verdict(self) -> Verdict | None:
        return self.analysis.verdict if self.analysis else None

    def exit_status(self, *, strict: bool = False) -> int:
        """
        Map the run to a process exit code.

        A blocked policy returns 2, a failed verdict or a sandbox error 1,
        pass and warn 0 (warn and unknown also fail when strict).
        """
        if self.status is RunStatus.BLOCKED:
            return EXIT_BLOCKED
        if self.status in (RunStatus.SETUP_ERROR, RunStatus.EXECUTION_ERROR):
            return EXIT_FAILED
        if self.analysis is None:
            return EXIT_FAILED
        return self.analysis.exit_status(strict=strict)

    def summary(self) -> RunSummary:
        return RunSummary(
            id=self.id,
            created_at=self.created_at,
            command=self.request.command,
            repo_path=self.request.repo_path,
            status=self.status,
            verdict=self.verdict,
            exit_code=self.outcome.exit_code if self.outcome else None,
            confidence=self.analysis.confidence if self.analysis else None,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "createdAt": self.created_at,
            "request": self.request.to_dict(),
            "policy": self.policy.to_dict(),
            "status": self.status.value,
            "outcome": self.outcome.to_dict() if self.outcome else None,
            "analysis": self.analysis.to_dict() if self.analysis else None,
            "error": self.error.to_dict() if self.error else None,
            "timeline": [e.to_dict() for e in self.timeline],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RunResult:
        outcome = data.get("outcome")
        analysis = data.get("analysis")
        error = data.get("error")
        return cls(
            id=data.get("id", ""),
            created_at=data["createdAt"],
            request=RunRequest.from_dict(data["request"]),
            policy=PolicyDecision.from_dict(data["policy"]),
            status=RunStatus(data["status"]),
            outcome=ExecutionOutcome.from_dict(outcome) if outcome else None,
            analysis=AnalysisResult.from_dict(analysis) if analysis else None,
            error=RunError.from_dict(error) if error else None,
            timeline=tuple(TimelineEvent.from_dict(e) for e in data.get("timeline", [])),
        )


@dataclass(frozen=True, slots=True)
class RunSummary:
    """Listing entry for a persisted run."""

    id: str
    created_at: str
    command: str
    repo_path: str
    status: RunStatus
    verdict: Verdict | None
    exit_code: int | None
    confidence: float | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "createdAt": self.created_at,
            "command": self.command,
            "repoPathOnHost": self.repo_path,
            "status": self.status.value,
            "verdict": self.verdict.value if self.verdict else None,
            "exitCode": self.exit_code,
            "confidence": self.confidence,
        }


@dataclass(frozen=True, slots=True)
class Page:
    """
    One page of run summaries, newest first.

    `total` is the number of committed records, unreadable ones included.
    """

    items: tuple[RunSummary, ...]
    total: int
    limit: int
    offset: int
