"""
Command policy with data-driven, pattern-based command screening.

This is the safety layer that runs before anything executes. Rules are plain
data (name, pattern, match type, severity, reason) so a deployment can ship
its own table as YAML or JSON without touching code.
"""

from __future__ import annotations

import fnmatch
import logging
import re
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Iterable

import yaml

from snaptriage._types import PolicyDecision, PolicyOutcome, RuleMatch, SecurityLevel, Severity
from snaptriage.errors import ConfigurationError

if TYPE_CHECKING:
    from snaptriage.config import Settings

logger = logging.getLogger(__name__)

EMPTY_COMMAND = "empty-command"
COMMAND_TOO_LONG = "command-too-long"
NOT_ALLOWLISTED = "not-allowlisted"


class MatchKind(str, Enum):
    """How a rule pattern is compared with the normalized command."""

    LITERAL = "literal"  # substring
    GLOB = "glob"  # fnmatch over the whole command
    REGEX = "regex"  # re.search


def normalize_command(command: str) -> str:
    """Trim, collapse whitespace and case-fold a command for matching."""
    return " ".join((command or "").split()).casefold()


@dataclass(frozen=True)
class PolicyRule:
    """
    A single screening rule.

    Attributes:
        name: Stable identifier reported when the rule matches.
        pattern: Literal substring, glob or regular expression.
        severity: BLOCK prevents execution, WARN is reported only.
        reason: Human-readable explanation.
        match: How `pattern` is interpreted.
    """

    name: str
    pattern: str
    severity: Severity = Severity.BLOCK
    reason: str = ""
    match: MatchKind = MatchKind.REGEX
    _compiled: re.Pattern[str] | None = field(default=None, init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        compiled: re.Pattern[str] | None = None
        try:
            if self.match is MatchKind.REGEX:
                compiled = re.compile(self.pattern, re.IGNORECASE)
            elif self.match is MatchKind.GLOB:
                compiled = re.compile(fnmatch.translate(normalize_command(self.pattern)))
        except re.error as e:
            raise ConfigurationError(f"Invalid pattern for rule {self.name!r}: {e}") from e
        object.__setattr__(self, "_compiled", compiled)

    def matches(self, normalized: str) -> bool:
        """Test an already-normalized command against this rule."""
        if self.match is MatchKind.LITERAL:
            return normalize_command(self.pattern) in normalized
        if self.match is MatchKind.GLOB:
            return self._compiled.match(normalized) is not None
        return self._compiled.search(normalized) is not None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PolicyRule:
        try:
            return cls(
                name=str(data["name"]),
                pattern=str(data["pattern"]),
                severity=Severity(data.get("severity", "block")),
                reason=str(data.get("reason", "")),
                match=MatchKind(data.get("match", "regex")),
            )
        except (KeyError, ValueError) as e:
            raise ConfigurationError(f"Invalid policy rule {data!r}: {e}") from e


def _block(name: str, pattern: str, reason: str) -> PolicyRule:
    return PolicyRule(name, pattern, Severity.BLOCK, reason)


def _warn(name: str, pattern: str, reason: str) -> PolicyRule:
    return PolicyRule(name, pattern, Severity.WARN, reason)


# Patterns run against normalized (lowercase, single-spaced) commands.
DEFAULT_RULES: tuple[PolicyRule, ...] = (
    # Filesystem destruction
    _block(
        "rm-root",
        r"\brm\s+(?:-{1,2}[\w-]+\s+)*[\"']?(?:/+\.?/*\*?|~/?\*?|\$\{?home\}?/?\*?)[\"']?(?=$|[\s;&|)])",
        "Recursive delete of root or home directory",
    ),
    _block("rm-no-preserve-root", r"--no-preserve-root\b", "Delete with --no-preserve-root"),
    # Remote code execution
    _block(
        "remote-script-shell",
        r"\b(?:curl|wget|fetch)\b[^|]*\|\s*(?:sudo\s+)?(?:ba|z|da|k)?sh\b",
        "Remote code execution via download piped to a shell",
    ),
    _block(
        "remote-script-interpreter",
        r"\b(?:curl|wget)\b[^|]*\|\s*(?:sudo\s+)?(?:python[\d.]*|perl|ruby|node)\b",
        "Remote code execution via download piped to an interpreter",
    ),
    _block(
        "remote-script-substitution",
        r"\b(?:ba|z)?sh\s+<\(\s*(?:curl|wget)\b",
        "Remote code execution via process substitution",
    ),
    # Fork bombs and resource exhaustion
    _block("fork-bomb", r":\s*\(\s*\)\s*\{.*\}", "Fork bomb pattern"),
    _block("fork-bomb-named", r"\b(\w+)\s*\(\s*\)\s*\{\s*\1\s*\|\s*\1\s*&", "Fork bomb pattern"),
    # Direct disk access
    _block("disk-write", r">\s*/dev/(?:sd[a-z]|hd[a-z]|nvme|mmcblk|disk\d)", "Direct disk write"),
    _block("dd-device", r"\bdd\b.*\bof=/dev/", "Direct disk write via dd"),
    _block("mkfs", r"\bmkfs(?:\.\w+)?\b", "Filesystem creation/destruction"),
    # Privilege escalation
    _block("sudo", r"\bsudo\b", "Privilege escalation via sudo"),
    _block("su", r"\bsu\s+(?:-|root\b)", "Privilege escalation via su"),
    _block("chmod-root", r"\bchmod\s+(?:-r\s+)?[0-7]*777\s+/(?=$|[\s;&|])", "Dangerous permission change on root"),
    _block("chown-root", r"\bchown\s+-r\s+\S+\s+/(?=$|[\s;&|])", "Recursive ownership change on root"),
    # System modification
    _block("host-power", r"\b(?:shutdown|reboot|poweroff)\b", "Host shutdown or reboot"),
    _block("systemctl", r"\bsystemctl\s+(?:stop|disable|mask)\b", "Service disruption"),
    _block("kill-init", r"\bkill\s+-9\s+-?1\b", "Termination of init or all processes"),
    _block("killall", r"\bkillall\b", "Mass process termination"),
    # Credentials
    _block("ssh-keys", r"(?:~|\$\{?home\}?)/\.ssh\b", "Access to SSH keys"),
    _block("shadow", r"/etc/shadow\b", "Access to the password shadow file"),
    _block("nc-listener", r"\b(?:nc|netcat)\s+(?:-\w+\s+)*-l", "Netcat listener (potential backdoor)"),
    # Reported, not blocked
    _warn("rm-recursive", r"\brm\s+-[a-z]*r", "Recursive delete inside the working copy"),
    _warn("network-fetch", r"\b(?:curl|wget)\b", "Network download from the sandbox"),
    _warn("chmod-recursive", r"\bchmod\s+-r\b", "Recursive permission change"),
    _warn("git-push", r"\bgit\s+push\b", "Push to a remote from the sandbox"),
    _warn("ssh", r"\bssh\s+\S*@", "SSH connection"),
    _warn("env-dump", r"(?:^|[;&|]\s*)(?:printenv|env)\s*(?=$|[;&|])", "Environment dump"),
)


def _base_command(normalized: str) -> str:
    """Extract the program name (first word, ignoring env vars and paths)."""
    for part in normalized.split():
        if "=" not in part:
            return part.split("/")[-1]
    return ""


@dataclass(frozen=True)
class CommandPolicy:
    """
    Immutable command policy.

    Provides three security levels:
    - PERMISSIVE: Report block rules as warnings but never block
    - STANDARD: Block known-dangerous patterns (default)
    - PARANOID: Allowlist-only, deny everything not explicitly allowed

    `evaluate` is a pure function of the command; a single instance is shared
    by all concurrent requests.
    """

    rules: tuple[PolicyRule, ...] = DEFAULT_RULES
    level: SecurityLevel = SecurityLevel.STANDARD
    max_command_length: int = 400
    allowed_commands: frozenset[str] = frozenset()
    allowed_prefixes: tuple[str, ...] = ()

    @classmethod
    def permissive(cls) -> CommandPolicy:
        """
        Create a permissive policy that reports but doesn't block.

        Use only in trusted environments for debugging.
        """
        return cls(level=SecurityLevel.PERMISSIVE)

    @classmethod
    def standard(cls) -> CommandPolicy:
        """Create the standard policy (recommended)."""
        return cls(level=SecurityLevel.STANDARD)

    @classmethod
    def paranoid(
        cls, allowed: Iterable[str] = (), *, prefixes: Iterable[str] = ()
    ) -> CommandPolicy:
        """
        Create a paranoid policy that only allows specified programs or prefixes.

        Args:
            allowed: Program names that are allowed (e.g., {"pytest", "npm"}).
            prefixes: Command prefixes that are allowed (e.g., "npm test").
        """
        return cls(
            level=SecurityLevel.PARANOID,
            allowed_commands=frozenset(a.casefold() for a in allowed),
            allowed_prefixes=tuple(normalize_command(p) for p in prefixes),
        )

    @classmethod
    def from_file(cls, path: Path | str, **kwargs: Any) -> CommandPolicy:
        """
        Build a policy from a YAML or JSON rule table.

        The file is either a list of rules or a mapping with a `rules` list and
        an optional `include_defaults` flag that appends the built-in table.
        """
        path = Path(path)
        try:
            with path.open("r", encoding="utf-8") as fh:
                data = yaml.safe_load(fh)
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Cannot load policy file {path}: {e}") from e

        include_defaults = False
        if isinstance(data, dict):
            include_defaults = bool(data.get("include_defaults", False))
            data = data.get("rules")
        if not isinstance(data, list):
            raise ConfigurationError(f"{path} must contain a list of rules.")

        rules = tuple(PolicyRule.from_dict(item) for item in data)
        if include_defaults:
            rules += DEFAULT_RULES
        return cls(rules=rules, **kwargs)

    @classmethod
    def from_settings(cls, settings: Settings) -> CommandPolicy:
        """Build the process-wide policy from application settings."""
        prefixes = tuple(normalize_command(p) for p in settings.allowlist_prefixes if p.strip())
        if settings.policy_level is SecurityLevel.PARANOID and not prefixes:
            raise ConfigurationError(
                "SecurityLevel.PARANOID requires an allowlist. "
                "Set SNAPTRIAGE_ALLOWLIST_PREFIXES."
            )
        kwargs: dict[str, Any] = {
            "level": settings.policy_level,
            "max_command_length": settings.max_command_length,
            "allowed_prefixes": prefixes,
        }
        if settings.policy_file is not None:
            return cls.from_file(settings.policy_file, **kwargs)
        return cls(**kwargs)

    def add_rule(self, rule: PolicyRule) -> CommandPolicy:
        """Return a copy with `rule` appended to the table."""
        return replace(self, rules=self.rules + (rule,))

    def evaluate(self, command: str) -> PolicyDecision:
        """
        Evaluate a command against the policy.

        Rules are walked in table order and the first matching block rule
        wins. Warn rules matched along the way are attached to the decision.

        Args:
            command: The command string to screen.

        Returns:
            PolicyDecision with outcome allow or block.
        """
        normalized = normalize_command(command)
        if not normalized:
            return self._blocked(EMPTY_COMMAND, "Command is empty.", command)
        if len(normalized) > self.max_command_length:
            return self._blocked(
                COMMAND_TOO_LONG, f"Command exceeds {self.max_command_length} chars.", command
            )

        warnings: list[RuleMatch] = []
        for rule in self.rules:
            if not rule.matches(normalized):
                continue
            if rule.severity is Severity.BLOCK and self.level is not SecurityLevel.PERMISSIVE:
                return self._blocked(rule.name, rule.reason, command, tuple(warnings))
            warnings.append(RuleMatch(rule.name, Severity.WARN, rule.reason))

        if self._enforces_allowlist() and not self._is_allowlisted(normalized):
            base = _base_command(normalized)
            return self._blocked(
                NOT_ALLOWLISTED, f"Command '{base}' not in allowlist", command, tuple(warnings)
            )

        if warnings:
            logger.info(f"Allowed with warnings {[w.rule for w in warnings]}: {command!r}")
        return PolicyDecision(PolicyOutcome.ALLOW, warnings=tuple(warnings))

    def _enforces_allowlist(self) -> bool:
        if self.level is SecurityLevel.PERMISSIVE:
            return False
        return self.level is SecurityLevel.PARANOID or bool(
            self.allowed_commands or self.allowed_prefixes
        )

    def _is_allowlisted(self, normalized: str) -> bool:
        if _base_command(normalized) in self.allowed_commands:
            return True
        return any(normalized.startswith(p) for p in self.allowed_prefixes)

    @staticmethod
    def _blocked(
        rule: str, reason: str, command: str, warnings: tuple[RuleMatch, ...] = ()
    ) -> PolicyDecision:
        logger.warning(f"Blocked command by rule {rule}: {command!r}")
        return PolicyDecision(
            PolicyOutcome.BLOCK,
            rule=rule,
            severity=Severity.BLOCK,
            reason=reason,
            warnings=warnings,
        )
