from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass, field

from conductor.tasks import TASK_KINDS, TaskType

FactPredicate = Callable[[str], bool]

FILE_PATH_PATTERN = re.compile(
    r"(?:[\w.-]+/)+[\w.-]+|\b[\w-]+\.(?:py|ts|tsx|js|jsx|json|ya?ml|toml|md|sql|go|rs|java|"
    r"rb|php|cs|cpp|c|h|html|css|scss|sh|txt|csv|xlsx?|cfg|ini|lock)\b",
    re.IGNORECASE,
)
ENVIRONMENT_PATTERN = re.compile(
    r"\b(production|prod|staging|stage|dev|development|qa|uat|sandbox|preview|test "
    r"environment)\b",
    re.IGNORECASE,
)
ISSUE_PATTERN = re.compile(
    r"\b(bug|error|exception|crash|crashes|failing|fails|failure|broken|issue|regression|"
    r"typo|leak|timeout)\b",
    re.IGNORECASE,
)
VCS_OPERATION_PATTERN = re.compile(
    r"\b(commit|push|pull|merge|rebase|branch|checkout|tag|diff|status|cherry-pick|revert|"
    r"stash)\b",
    re.IGNORECASE,
)
DATA_TARGET_PATTERN = re.compile(
    r"\b(table|collection|schema|index|record|records|rows?|migration|bucket|"
    r"database|db)\b",
    re.IGNORECASE,
)
REQUEST_KIND_PATTERN = re.compile(
    r"\b(leave|vacation|holiday|payslip|reimbursement|expense|attendance|salary|onboarding|"
    r"offboarding|access request|payroll|training request)\b",
    re.IGNORECASE,
)
DESTINATION_PATTERN = re.compile(
    r"\b(dashboard|settings|tickets?|hr portal|developer console|dev console|code review|"
    r"ai training|chat|home|profile)\b|\b(?:to|open)\s+(?:the\s+)?[\w-]+\s+(?:page|screen|"
    r"tab|portal)\b",
    re.IGNORECASE,
)
LESSON_PATTERN = re.compile(
    r"\b(learn|remember|train|always|never|prefer|from now on)\b\W+\w+(?:\W+\w+){2,}",
    re.IGNORECASE,
)
ANALYSIS_TARGET_PATTERN = re.compile(
    r"\b(service|module|component|function|class|endpoint|api|query|pipeline|logs?)\b",
    re.IGNORECASE,
)
EXPRESSION_PATTERN = re.compile(r"\d+(?:\.\d+)?\s*(?:[-+*/%^x×]|\*\*)\s*\(?\s*\d", re.IGNORECASE)


def mentions_file_path(text: str) -> bool:
    return bool(FILE_PATH_PATTERN.search(text))


def _matches(pattern: re.Pattern[str]) -> FactPredicate:
    def _predicate(text: str) -> bool:
        return bool(pattern.search(text))

    return _predicate


def _mentions_analysis_target(text: str) -> bool:
    return mentions_file_path(text) or bool(ANALYSIS_TARGET_PATTERN.search(text))


FACT_PREDICATES: dict[str, FactPredicate] = {
    "file_path": mentions_file_path,
    "issue": _matches(ISSUE_PATTERN),
    "environment": _matches(ENVIRONMENT_PATTERN),
    "vcs_operation": _matches(VCS_OPERATION_PATTERN),
    "data_target": _matches(DATA_TARGET_PATTERN),
    "request_kind": _matches(REQUEST_KIND_PATTERN),
    "destination": _matches(DESTINATION_PATTERN),
    "lesson": _matches(LESSON_PATTERN),
    "analysis_target": _mentions_analysis_target,
    "expression": _matches(EXPRESSION_PATTERN),
}


@dataclass(frozen=True, slots=True)
class CompletenessResult:
    required: list[str] = field(default_factory=list)
    missing: list[str] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.missing


class CompletenessChecker:
    """Confirms a task description mentions the facts its type needs."""

    def __init__(
        self,
        requirements: dict[TaskType, list[tuple[FactPredicate, str]]] | None = None,
    ) -> None:
        if requirements is None:
            requirements = {
                task_type: [(FACT_PREDICATES[fact], fact) for fact in kind.required_facts]
                for task_type, kind in TASK_KINDS.items()
            }
        self.requirements = requirements

    def check(self, task_type: TaskType | str, description: str) -> CompletenessResult:
        try:
            resolved = task_type if isinstance(task_type, TaskType) else TaskType.parse(task_type)
        except ValueError:
            return CompletenessResult()
        rules = self.requirements.get(resolved, [])
        text = description or ""
        required = [fact for _, fact in rules]
        missing = [fact for predicate, fact in rules if not predicate(text)]
        return CompletenessResult(required=required, missing=missing)
