"""Log analysis: pattern library, analyzer and confidence scoring."""

from snaptriage.analysis.analyzer import LogAnalyzer, analyze, guess_language
from snaptriage.analysis.patterns import DEFAULT_PATTERNS, Location, PatternRule, find_location

__all__ = [
    "DEFAULT_PATTERNS",
    "Location",
    "LogAnalyzer",
    "PatternRule",
    "analyze",
    "find_location",
    "guess_language",
]
