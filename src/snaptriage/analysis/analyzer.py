"""
Log analyzer: classify raw command output into findings and a verdict.

The analyzer is a pure function of its input. All per-call state lives in a
_Scan instance, so one LogAnalyzer can be shared across concurrent runs.
"""

from __future__ import annotations

import logging
import re
from dataclasses import replace
from typing import TYPE_CHECKING

from snaptriage._types import AnalysisResult, Finding, FindingKind, Verdict
from snaptriage.analysis.confidence import derive_verdict, score
from snaptriage.analysis.patterns import AMBIGUOUS_HINT, DEFAULT_PATTERNS, PatternRule
from snaptriage.errors import AnalysisError

if TYPE_CHECKING:
    from snaptriage.config import Settings

logger = logging.getLogger(__name__)

ANSI_ESCAPE = re.compile(r"\x1b\[[0-9;?]*[ -/]*[@-~]|\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)|\x1b[@-Z\\-_]")
LINE_BREAK = re.compile(r"\r?\n")

# Share of control characters above which text is treated as binary.
MAX_CONTROL_RATIO = 0.3

_LANGUAGE_HINTS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("python", ("traceback (most recent call last)", ".py:", '.py", line')),
    ("typescript", (".ts(", ".tsx", ".ts:", "error ts")),
    ("javascript", ("node:internal", ".js:", ".mjs:", "typeerror:", "referenceerror:", "npm err!")),
    ("java", ("java.lang.", ".java:", "exception in thread")),
    ("go", (".go:", "goroutine ", "--- fail:")),
    ("rust", ("panicked at", ".rs:", "error[e")),
    ("cpp", ("fatal error:", ".cpp:", ".hpp:", ".cc:", ".c:", ".h:")),
)


def _decode(text: str | bytes) -> str:
    if isinstance(text, bytes):
        try:
            text = text.decode("utf-8")
        except UnicodeDecodeError as e:
            raise AnalysisError(f"Log is not valid UTF-8: {e}") from e
    text = ANSI_ESCAPE.sub("", text)
    if text:
        control = sum(1 for ch in text if (ord(ch) < 32 and ch not in "\t\n\r") or ord(ch) == 127)
        if control / len(text) > MAX_CONTROL_RATIO:
            raise AnalysisError("Log looks like binary data")
    return text


def guess_language(text: str) -> str:
    lowered = text.lower()
    for language, hints in _LANGUAGE_HINTS:
        if any(hint in lowered for hint in hints):
            return language
    return "unknown"


def _plural(n: int, word: str) -> str:
    return f"{n} {word}" if n == 1 else f"{n} {word}s"


def summarize(findings: tuple[Finding, ...], verdict: Verdict) -> str:
    errors = [f for f in findings if f.kind is FindingKind.ERROR]
    warnings = [f for f in findings if f.kind is FindingKind.WARNING]
    if verdict is Verdict.FAIL:
        return (
            f"{_plural(len(errors), 'error')}, {_plural(len(warnings), 'warning')}. "
            f"Primary: {errors[0].message}"
        )
    if verdict is Verdict.WARN:
        return f"{_plural(len(warnings), 'warning')}. Primary: {warnings[0].message}"
    if verdict is Verdict.PASS:
        return "No errors or warnings detected."
    return "Only stack frames without an owning error were found."


class _Scan:
    """Single pass over the lines of one log."""

    def __init__(self, analyzer: LogAnalyzer) -> None:
        self._analyzer = analyzer
        self.findings: list[Finding] = []
        self.ambiguous = 0
        # Error still accepting the stack frames that follow it.
        self._open: Finding | None = None
        self._window = 0
        # Frames of a Python traceback waiting for their exception line.
        self._trace: list[Finding] | None = None

    def feed(self, line: str) -> None:
        if self._open is not None and self._window <= 0:
            self._close_error()

        matched = self._analyzer.classify(line)
        if matched is None:
            if self._trace is not None and line[:1].isspace():
                return  # traceback source line
            self._close_error()
            self._flush_trace()
            if AMBIGUOUS_HINT.search(line):
                self.ambiguous += 1
            return

        rule, match = matched
        if rule.starts_trace:
            self._close_error()
            self._flush_trace()
            self._trace = []
            return
        if rule.kind is None:
            self._window -= 1
            return

        finding = self._analyzer.make_finding(rule, match, line)
        if finding.kind is FindingKind.STACK_FRAME:
            self._add_frame(finding)
            return

        self._close_error()
        if finding.kind is FindingKind.ERROR:
            frames = tuple(self._trace or ())
            self._trace = None
            if frames:
                # Python prints the innermost frame last.
                finding = _with_frames(finding, frames, frames[-1])
            self._open = finding
            self._window = self._analyzer.frame_lookahead
        else:
            self._flush_trace()
            self._commit(finding)

    def finish(self) -> tuple[Finding, ...]:
        self._close_error()
        self._flush_trace()
        return tuple(self.findings)

    def _add_frame(self, frame: Finding) -> None:
        if self._open is not None:
            self._window -= 1
            # JavaScript, JVM and Rust print the innermost frame first.
            self._open = _with_frames(self._open, self._open.frames + (frame,), frame)
        elif self._trace is not None:
            self._trace.append(frame)
        else:
            self._commit(frame)

    def _close_error(self) -> None:
        if self._open is not None:
            self._commit(self._open)
            self._open = None

    def _flush_trace(self) -> None:
        if self._trace:
            for frame in self._trace:
                self._commit(frame)
        self._trace = None

    def _commit(self, finding: Finding) -> None:
        if self.findings:
            last = self.findings[-1]
            if last.same_signal(finding) and last.frames == finding.frames:
                self.findings[-1] = replace(last, count=last.count + finding.count)
                return
        self.findings.append(finding)


def _with_frames(error: Finding, frames: tuple[Finding, ...], source: Finding) -> Finding:
    if error.file is None and source.file is not None:
        return replace(error, frames=frames, file=source.file, line=source.line, column=source.column)
    return replace(error, frames=frames)


class LogAnalyzer:
    """
    Turn log text into findings, a verdict and a confidence score.

    Example:
        >>> result = LogAnalyzer().analyze("Error: foo at file.js:10")
        >>> result.verdict
        <Verdict.FAIL: 'fail'>
    """

    def __init__(
        self,
        patterns: tuple[PatternRule, ...] = DEFAULT_PATTERNS,
        *,
        frame_lookahead: int = 50,
        max_message_length: int = 500,
    ) -> None:
        self.patterns = patterns
        self.frame_lookahead = frame_lookahead
        self.max_message_length = max_message_length
        self._weights = {rule.name: rule.weight for rule in patterns}

    @classmethod
    def from_settings(cls, settings: Settings) -> LogAnalyzer:
        return cls(frame_lookahead=settings.frame_lookahead)

    def classify(self, line: str) -> tuple[PatternRule, re.Match[str]] | None:
        """Return the first rule matching the line, with its match."""
        for rule in self.patterns:
            m = rule.regex.search(line)
            if m:
                return rule, m
        return None

    def make_finding(self, rule: PatternRule, match: re.Match[str], line: str) -> Finding:
        if rule.kind is None:
            raise ValueError(f"Rule {rule.name!r} is a hint and does not produce findings")
        location = rule.extractor(match, line)
        return Finding(
            kind=rule.kind,
            message=line.strip()[: self.max_message_length],
            rule=rule.name,
            file=location.file if location else None,
            line=location.line if location else None,
            column=location.column if location else None,
        )

    def analyze(self, text: str | bytes) -> AnalysisResult:
        """
        Analyze raw log text.

        Never raises for bad input: undecodable or binary text yields an
        unknown verdict with `error` set.
        """
        try:
            decoded = _decode(text)
        except AnalysisError as e:
            logger.info(f"Log analysis skipped: {e}")
            return AnalysisResult((), Verdict.UNKNOWN, 0.0, summary="Log could not be decoded.", error=str(e))

        lines = [line.rstrip() for line in LINE_BREAK.split(decoded)]
        lines = [line for line in lines if line.strip()]
        if not lines:
            return AnalysisResult((), Verdict.UNKNOWN, 0.0, summary="Log is empty.")

        scan = _Scan(self)
        for line in lines:
            scan.feed(line)
        findings = scan.finish()

        verdict = derive_verdict(findings)
        confidence = score(findings, verdict, ambiguous_lines=scan.ambiguous, weights=self._weights)
        return AnalysisResult(
            findings=findings,
            verdict=verdict,
            confidence=confidence,
            summary=summarize(findings, verdict),
            language=guess_language(decoded),
        )


_default_analyzer = LogAnalyzer()


def analyze(text: str | bytes) -> AnalysisResult:
    """Analyze log text with the default pattern library."""
    return _default_analyzer.analyze(text)
