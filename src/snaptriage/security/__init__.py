"""Command policy module for snaptriage."""

from snaptriage.security.policy import (
    DEFAULT_RULES,
    CommandPolicy,
    MatchKind,
    PolicyRule,
    normalize_command,
)

__all__ = ["DEFAULT_RULES", "CommandPolicy", "MatchKind", "PolicyRule", "normalize_command"]
