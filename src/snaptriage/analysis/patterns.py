"""
Pattern library for log classification.

An ordered table of (matcher, kind, extractor) rules. The analyzer tests each
line against the rules in order and the first match wins, so specific
signatures sit above the generic catch-alls. Teaching the analyzer a new log
shape means adding a row here.

A rule with kind None marks a recognized line that carries no finding of its
own (passing test lines, traceback chatter). Such lines are neither counted
as ambiguous nor close an open stack-frame window.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable

from snaptriage._types import FindingKind


@dataclass(frozen=True, slots=True)
class Location:
    file: str
    line: int | None = None
    column: int | None = None


Extractor = Callable[["re.Match[str]", str], "Location | None"]

_SOURCE_EXT = r"(?:py|pyi|js|jsx|mjs|cjs|ts|tsx|json|java|kt|scala|go|rs|rb|php|cs|swift|c|cc|cpp|cxx|h|hpp)"

# file:line[:column] shapes (node, tsc, gcc, jest, pytest, ...)
LOCATION_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(rf"(?P<file>[^\s:()'\"]+?\.{_SOURCE_EXT}):(?P<line>\d+):(?P<col>\d+)"),
    re.compile(rf"(?P<file>[^\s:()'\"]+?\.{_SOURCE_EXT}):(?P<line>\d+)"),
    re.compile(r"(?P<file>[^\s()'\"]+?\.(?:ts|tsx|js|jsx))\((?P<line>\d+),(?P<col>\d+)\)"),
    re.compile(rf"File \"(?P<file>[^\"]+\.{_SOURCE_EXT})\", line (?P<line>\d+)"),
)


def _to_int(value: str | None) -> int | None:
    return int(value) if value else None


def find_location(text: str) -> Location | None:
    """Find the first file:line reference anywhere in a line."""
    for pattern in LOCATION_PATTERNS:
        m = pattern.search(text)
        if m:
            return Location(m.group("file"), _to_int(m.group("line")), _to_int(m.groupdict().get("col")))
    return None


def group_location(match: re.Match[str], line: str) -> Location | None:
    """Use the rule's own file/line/col groups, else search the whole line."""
    groups = match.groupdict()
    if groups.get("file"):
        return Location(groups["file"], _to_int(groups.get("line")), _to_int(groups.get("col")))
    return find_location(line)


def no_location(match: re.Match[str], line: str) -> Location | None:
    return None


@dataclass(frozen=True, slots=True)
class PatternRule:
    """
    One log signature.

    Attributes:
        name: Rule identifier recorded on each finding.
        regex: Compiled matcher, searched against the ANSI-stripped line.
        kind: Finding kind, or None for recognized lines without a finding.
        weight: Specificity used by the confidence score.
        extractor: Pulls a source location from the match.
        starts_trace: The line opens a Python-style traceback whose frames
            precede the exception line.
    """

    name: str
    regex: re.Pattern[str]
    kind: FindingKind | None
    weight: float = 1.0
    extractor: Extractor = group_location
    starts_trace: bool = False


def _rule(
    name: str,
    pattern: str,
    kind: FindingKind | None,
    weight: float = 1.0,
    *,
    flags: int = 0,
    extractor: Extractor = group_location,
    starts_trace: bool = False,
) -> PatternRule:
    return PatternRule(name, re.compile(pattern, flags), kind, weight, extractor, starts_trace)


_E = FindingKind.ERROR
_W = FindingKind.WARNING
_I = FindingKind.INFO
_F = FindingKind.STACK_FRAME

_EXCEPTION_NAME = r"(?:[A-Za-z_$][\w$]*\.)*(?:[A-Z][\w$]*)?(?:Error|Exception|Exit|Interrupt|Failure|Fault)"

DEFAULT_PATTERNS: tuple[PatternRule, ...] = (
    # Traceback structure
    _rule("python-traceback", r"^\s*Traceback \(most recent call last\):", None, 0.0, starts_trace=True),
    _rule(
        "python-chained",
        r"^(?:During handling of the above exception|The above exception was the direct cause)",
        None,
        0.0,
    ),
    _rule("python-frame", r"^\s*File \"(?P<file>[^\"]+)\", line (?P<line>\d+)", _F, 0.05),
    _rule(
        "at-frame",
        r"^\s+at\s+(?:.*?\()?(?P<file>(?:[A-Za-z]:)?[^\s():]+?):(?P<line>\d+)(?::(?P<col>\d+))?\)?\s*$",
        _F,
        0.05,
    ),
    _rule("at-frame-bare", r"^\s+at\s+(?:async\s+)?[\w$.<>\[\]/]+(?:\s+\(|\s*$)", _F, 0.05),
    _rule("go-frame", r"^\s+(?P<file>/[^\s:]+\.go):(?P<line>\d+)(?:\s+\+0x[0-9a-f]+)?\s*$", _F, 0.05),
    _rule("rust-location", r"^\s*--> (?P<file>[^\s:]+):(?P<line>\d+):(?P<col>\d+)", _F, 0.05),
    _rule("jvm-more-frames", r"^\s*\.\.\. \d+ more\s*$", None, 0.0),
    _rule("jvm-caused-by", r"^\s*Caused by: ", None, 0.0),
    # Passing and decorative lines that mention failure words
    _rule("pytest-passed-line", r"^\S+::\S+.*\s(?:PASSED|SKIPPED|XFAIL|XPASS)\b", None, 0.0),
    _rule("pytest-section", r"^=+ (?:FAILURES|ERRORS|short test summary info|warnings summary) =+$", None, 0.0),
    _rule("pytest-test-header", r"^_{3,} .+ _{3,}$", None, 0.0),
    _rule("pytest-detail", r"^E(?:\s{2,}|$)", None, 0.0),
    _rule("unittest-ok-line", r"\.\.\. ok$", None, 0.0),
    _rule("check-mark", r"^\s*[✓✔√]\s", None, 0.0),
    _rule("go-pass-line", r"^\s*(?:--- PASS|=== RUN|=== PAUSE|=== CONT)\b", None, 0.0),
    # Test runner failures
    _rule("pytest-failed", r"^(?:FAILED|ERROR)\s+(?P<file>[^\s:]+?\.py)(?:::\S+)?", _E, 1.0),
    _rule(
        "pytest-location",
        rf"^(?P<file>[^\s:]+\.py):(?P<line>\d+): {_EXCEPTION_NAME}\s*$",
        _E,
        1.2,
    ),
    _rule("test-summary-failed", r"^=+ .*\b\d+ (?:failed|errors?)\b.*=+$", _E, 0.8),
    _rule("unittest-failed", r"^FAILED \((?:failures|errors)=\d+", _E, 0.8),
    _rule("jest-tests-failed", r"\bTests?:\s+\d+ failed\b", _E, 0.8),
    _rule("jest-fail", r"^\s*FAIL\s+(?P<file>\S+)", _E, 1.0, extractor=no_location),
    _rule("jest-failure-title", r"^\s*●\s+\S", _E, 0.8),
    _rule("mocha-failing", r"^\s*\d+ failing\b", _E, 0.8),
    _rule("go-test-fail", r"^\s*--- FAIL: \S+", _E, 1.0),
    _rule("go-fail", r"^FAIL\s*$", _E, 0.5),
    # Compilers
    _rule(
        "compiler-error",
        r"^(?P<file>[^\s:]+):(?P<line>\d+):(?:(?P<col>\d+):)?\s+(?:fatal\s+)?error\b",
        _E,
        1.2,
    ),
    _rule("tsc-error", r"^(?P<file>[^\s(]+\.tsx?)\((?P<line>\d+),(?P<col>\d+)\):\s+error\s+TS\d+", _E, 1.2),
    _rule("tsc-error-pretty", r"^(?P<file>[^\s:]+\.tsx?):(?P<line>\d+):(?P<col>\d+)\s+-\s+error\s+TS\d+", _E, 1.2),
    _rule("rust-error", r"^error(?:\[E\d+\])?:\s", _E, 1.0),
    _rule("rust-panic", r"\bthread '[^']*' panicked at\b", _E, 1.0),
    _rule("go-panic", r"^panic: ", _E, 1.0),
    # Exceptions (Python, JavaScript, JVM)
    _rule("jvm-uncaught", r"^Exception in thread \"[^\"]*\" \S+", _E, 1.0),
    _rule("exception", rf"^\s*(?:Uncaught\s+)?{_EXCEPTION_NAME}(?::\s|:?\s*$)", _E, 1.0),
    # Process and tooling failures
    _rule("assertion-failed", r"\bassert(?:ion)? failed\b", _E, 1.0, flags=re.IGNORECASE),
    _rule("segfault", r"\bSegmentation fault\b|\bcore dumped\b", _E, 1.0),
    _rule("killed", r"^Killed\b", _E, 0.8),
    _rule("command-not-found", r"\bcommand not found\b|: not found$", _E, 1.0),
    _rule("timeout", r"\btimed out\b|\btimeout of \d+\s*m?s exceeded\b", _E, 0.8, flags=re.IGNORECASE),
    _rule("npm-error", r"^npm ERR!", _E, 0.6),
    _rule("make-error", r"^make(?:\[\d+\])?: \*\*\* .*Error \d+", _E, 0.8),
    _rule("fatal", r"^(?:fatal|FATAL)(?: ERROR)?:\s", _E, 0.8),
    _rule("log-level-error", r"(?:^|[\s\[])(?:ERROR|CRITICAL|SEVERE)(?:[\]:]|\s|$)", _E, 0.6),
    # Warnings
    _rule(
        "compiler-warning",
        r"^(?P<file>[^\s:]+):(?P<line>\d+):(?:(?P<col>\d+):)?\s+warning\b",
        _W,
        1.0,
    ),
    _rule("python-warning", r"^(?P<file>[^\s:]+\.py):(?P<line>\d+): \w*Warning:", _W, 1.0),
    _rule("warning-class", r"^\s*(?:[A-Z]\w*)?Warning:\s", _W, 0.8),
    _rule("test-summary-warnings", r"^=+ .*\b\d+ warnings?\b.*=+$", _W, 0.6),
    _rule("npm-warn", r"^npm WARN\b", _W, 0.6),
    _rule("log-level-warning", r"(?:^|[\s\[])(?:WARN|WARNING)(?:[\]:]|\s|$)", _W, 0.6),
    # Catch-alls
    _rule(
        "generic-error",
        r"(?<!\b0 )(?<!\bno )\b(?:error|exception|failed|failure)s?\b",
        _E,
        0.4,
        flags=re.IGNORECASE,
    ),
    _rule("generic-warning", r"(?<!\b0 )(?<!\bno )\bwarn(?:ing)?s?\b", _W, 0.4, flags=re.IGNORECASE),
    # Success markers
    _rule("test-summary-passed", r"^=+ .*\b\d+ passed\b.*=+$", _I, 0.5),
    _rule("jest-tests-passed", r"\bTests?:\s+\d+ passed\b", _I, 0.5),
    _rule("mocha-passing", r"^\s*\d+ passing\b", _I, 0.5),
    _rule("unittest-ok", r"^OK(?: \(.*\))?\s*$", _I, 0.5),
    _rule("go-ok", r"^ok\s+\S+\s+(?:[\d.]+s|\(cached\))", _I, 0.5),
    _rule(
        "build-success",
        r"\bBUILD SUCCESS(?:FUL)?\b|\bCompiled successfully\b|\bFinished `?(?:dev|release|test)`? ",
        _I,
        0.5,
    ),
)

# Unmatched lines containing these words make the classification less certain.
AMBIGUOUS_HINT = re.compile(r"err|fail|fatal|panic|abort|denied|refused|crash|exception", re.IGNORECASE)
