from __future__ import annotations

import re
from dataclasses import dataclass, field

from conductor.completeness import EXPRESSION_PATTERN, mentions_file_path
from conductor.tasks import RiskLevel, TaskType

# Table order breaks ties between equally scored types.
INTENT_KEYWORDS: dict[TaskType, tuple[str, ...]] = {
    TaskType.CODE_FIX: ("fix", "bug", "patch", "broken", "not working", "crash", "exception"),
    TaskType.DEPLOYMENT: ("deploy", "release", "ship", "roll out", "rollout", "promote"),
    TaskType.TEST: ("run tests", "run the tests", "test suite", "unit test", "tests", "lint",
                    "typecheck", "type check", "build"),
    TaskType.VERSION_CONTROL: ("commit", "push", "pull request", "merge", "rebase", "branch",
                               "git", "cherry-pick"),
    TaskType.DATA_STORE: ("database", "table", "migration", "query", "records", "collection",
                          "backup", "db"),
    TaskType.FILE_OPERATION: ("file", "folder", "directory", "rename", "move", "copy",
                              "create file", "delete file"),
    TaskType.PERSONNEL_REQUEST: ("leave", "payslip", "reimbursement", "attendance", "salary",
                                 "vacation", "onboarding", "expense"),
    TaskType.NAVIGATION: ("go to", "navigate", "take me to", "open the", "show me the"),
    TaskType.TRAINING: ("train yourself", "learn", "remember this", "update yourself",
                        "from now on"),
    TaskType.ANALYSIS: ("analyze", "analyse", "review", "inspect", "investigate", "profile the",
                        "audit"),
    TaskType.PROFILE_LOOKUP: ("my profile", "who is", "employee details", "my manager",
                              "contact details"),
    TaskType.CALCULATION: ("calculate", "compute", "sum of", "how much is", "percentage"),
    TaskType.INFORMATION_LOOKUP: ("what is", "find", "search", "look up", "lookup", "explain",
                                  "policy"),
}

PRODUCTION_PATTERN = re.compile(r"\b(production|prod|live)\b", re.IGNORECASE)
DESTRUCTIVE_PATTERN = re.compile(
    r"\b(delete|drop|truncate|wipe|destroy|purge|force[- ]push|reset --hard)\b", re.IGNORECASE
)
PUSH_PATTERN = re.compile(r"\b(push|merge|publish)\b", re.IGNORECASE)
BACK_REFERENCE = re.compile(
    r"\b(it|that|them|those|this fix|the fix|the change|the changes|the result|the results)\b",
    re.IGNORECASE,
)

MEDIUM_RISK_TYPES = {TaskType.DEPLOYMENT, TaskType.DATA_STORE, TaskType.CODE_FIX}


@dataclass(frozen=True, slots=True)
class IntentMatch:
    task_type: TaskType
    confidence: float
    entities: dict[str, str] = field(default_factory=dict)


def classify_intent(text: str) -> IntentMatch:
    lower = (text or "").lower()
    best_type = TaskType.INFORMATION_LOOKUP
    best_score = 0
    for task_type, keywords in INTENT_KEYWORDS.items():
        score = sum(1 for keyword in keywords if re.search(rf"\b{re.escape(keyword)}\b", lower))
        if score > best_score:
            best_type, best_score = task_type, score
    if best_score == 0 and EXPRESSION_PATTERN.search(lower):
        best_type, best_score = TaskType.CALCULATION, 1
    return IntentMatch(
        task_type=best_type,
        confidence=min(best_score / 3, 1.0),
        entities=extract_entities(text),
    )


def extract_entities(text: str) -> dict[str, str]:
    entities: dict[str, str] = {}
    service = re.search(
        r"(?:in|on|with)\s+(?:the\s+)?(\w+[-_]?\w*)\s+(?:service|component|module)", text or "",
        re.IGNORECASE,
    )
    if service:
        entities["service"] = service.group(1)
    error = re.search(r"(\w+Exception|Error:\s*.+|error\s+\d+)", text or "", re.IGNORECASE)
    if error:
        entities["error"] = error.group(1)
    return entities


def estimate_risk(task_type: TaskType, text: str) -> RiskLevel:
    content = text or ""
    if DESTRUCTIVE_PATTERN.search(content):
        return RiskLevel.CRITICAL
    if PRODUCTION_PATTERN.search(content):
        return RiskLevel.HIGH
    if task_type is TaskType.VERSION_CONTROL and PUSH_PATTERN.search(content):
        return RiskLevel.MEDIUM
    if task_type in MEDIUM_RISK_TYPES:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def refers_back(text: str) -> bool:
    """True when the fragment points at the outcome of an earlier fragment."""
    if mentions_file_path(text):
        return False
    return bool(BACK_REFERENCE.search(text or ""))
