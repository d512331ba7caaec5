from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class SafetyCategory(str, Enum):
    PROMPT_INJECTION = "prompt_injection"
    DESTRUCTIVE_OPERATION = "destructive_operation"
    CREDENTIAL_EXFILTRATION = "credential_exfiltration"
    PRIVILEGE_ESCALATION = "privilege_escalation"


@dataclass(frozen=True, slots=True)
class PatternTable:
    """Immutable category -> compiled rule mapping handed to the validator."""

    rules: tuple[tuple[SafetyCategory, tuple[re.Pattern[str], ...]], ...]

    @classmethod
    def from_mapping(cls, mapping: dict[SafetyCategory, list[str]]) -> PatternTable:
        return cls(
            rules=tuple(
                (
                    category,
                    tuple(re.compile(pattern, re.IGNORECASE) for pattern in patterns),
                )
                for category, patterns in mapping.items()
            )
        )

    @property
    def categories(self) -> list[SafetyCategory]:
        return [category for category, _ in self.rules]


DEFAULT_PATTERNS: dict[SafetyCategory, list[str]] = {
    SafetyCategory.PROMPT_INJECTION: [
        r"ignore (all )?(the )?previous",
        r"disregard (all )?(your |the )?instructions",
        r"new (system )?instructions",
        r"forget (your|the) (rules|instructions)",
        r"\byou are now\b",
        r"\bact as if\b",
    ],
    SafetyCategory.DESTRUCTIVE_OPERATION: [
        r"rm\s+-rf\s+/",
        r"format\s+c:",
        r"del\s+/[fqs]",
        r">\s*/dev/sd[a-z]",
        r"\b(drop|truncate)\s+(table|database|schema)\b",
        r"\b(delete|drop|wipe|destroy|erase|purge)\b[\w\s-]{0,40}?\b(database|db|table|"
        r"cluster|bucket|repository|repo|backups?)\b",
        r"\bdelete\s+(all|everything)\b",
    ],
    SafetyCategory.CREDENTIAL_EXFILTRATION: [
        r"\bcurl\b.{0,80}api[_ ]?key",
        r"\bwget\b.{0,80}secret",
        r"\bupload\b.{0,80}credentials",
        r"\bsend\b.{0,80}password",
        r"\b(print|dump|reveal|leak|exfiltrate|post)\b.{0,40}\b(secrets?|tokens?|api[_ ]?keys?|"
        r"passwords?|credentials)\b",
        r"cat\s+\S*\.env\b",
    ],
    SafetyCategory.PRIVILEGE_ESCALATION: [
        r"sudo\s+rm",
        r"sudo\s+su\b",
        r"chmod\s+777",
        r"chown\s+root",
        r"\bgrant\b.{0,30}\b(admin|root|superuser)\b",
        r"\bdisable\b.{0,20}\b(authentication|auth|security checks?|mfa|2fa)\b",
    ],
}


@dataclass(frozen=True, slots=True)
class SafetyVerdict:
    safe: bool
    flags: tuple[str, ...] = field(default_factory=tuple)
    score: float = 1.0

    def to_dict(self) -> dict[str, Any]:
        return {"safe": self.safe, "flags": list(self.flags), "score": self.score}


class SafetyValidator:
    """Classifies text against a fixed table of harmful-pattern categories.

    Pure and total: the same text always yields the same verdict, and no
    input (empty, control characters, non-string) raises.
    """

    def __init__(self, table: PatternTable | None = None, *, penalty: float = 0.3) -> None:
        self.table = table or PatternTable.from_mapping(DEFAULT_PATTERNS)
        self.penalty = max(0.0, float(penalty))

    def validate(self, text: Any) -> SafetyVerdict:
        content = text if isinstance(text, str) else ("" if text is None else str(text))
        flags: list[str] = []
        for category, patterns in self.table.rules:
            for pattern in patterns:
                if pattern.search(content):
                    logger.debug("safety rule %s matched for %s", pattern.pattern, category.value)
                    flags.append(category.value)
                    break
        score = max(0.0, round(1.0 - self.penalty * len(flags), 4))
        return SafetyVerdict(safe=not flags, flags=tuple(flags), score=score)
