from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from conductor.errors import InvalidTransitionError


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


class TaskType(str, Enum):
    CODE_FIX = "code_fix"
    DEPLOYMENT = "deployment"
    VERSION_CONTROL = "version_control"
    FILE_OPERATION = "file_operation"
    DATA_STORE = "data_store"
    PERSONNEL_REQUEST = "personnel_request"
    NAVIGATION = "navigation"
    TRAINING = "training"
    ANALYSIS = "analysis"
    TEST = "test"
    INFORMATION_LOOKUP = "information_lookup"
    PROFILE_LOOKUP = "profile_lookup"
    CALCULATION = "calculation"

    @property
    def kind(self) -> TaskKind:
        return TASK_KINDS[self]

    @classmethod
    def parse(cls, value: str) -> TaskType:
        normalized = str(value).strip().lower().replace("-", "_").replace(" ", "_")
        normalized = _TYPE_ALIASES.get(normalized, normalized)
        return cls(normalized)


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @classmethod
    def parse(cls, value: str | None) -> RiskLevel:
        if not value:
            return cls.LOW
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.LOW


class TaskStatus(str, Enum):
    PENDING = "pending"
    AWAITING_INFO = "awaiting_info"
    AWAITING_APPROVAL = "awaiting_approval"
    APPROVED = "approved"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"
    REJECTED = "rejected"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_failure(self) -> bool:
        return self in {TaskStatus.FAILED, TaskStatus.REJECTED, TaskStatus.SKIPPED}


TERMINAL_STATUSES = frozenset(
    {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.REJECTED, TaskStatus.SKIPPED}
)

# Statuses a task may legally hold once the coordinator has visited it.
SETTLED_STATUSES = TERMINAL_STATUSES | {TaskStatus.AWAITING_INFO, TaskStatus.AWAITING_APPROVAL}

TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset(
        {
            TaskStatus.AWAITING_INFO,
            TaskStatus.AWAITING_APPROVAL,
            TaskStatus.APPROVED,
            TaskStatus.REJECTED,
            TaskStatus.SKIPPED,
        }
    ),
    TaskStatus.AWAITING_INFO: frozenset(
        {
            TaskStatus.AWAITING_APPROVAL,
            TaskStatus.APPROVED,
            TaskStatus.REJECTED,
            TaskStatus.SKIPPED,
        }
    ),
    TaskStatus.AWAITING_APPROVAL: frozenset(
        {TaskStatus.APPROVED, TaskStatus.REJECTED, TaskStatus.SKIPPED}
    ),
    TaskStatus.APPROVED: frozenset({TaskStatus.EXECUTING, TaskStatus.SKIPPED}),
    TaskStatus.EXECUTING: frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED}),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.FAILED: frozenset(),
    TaskStatus.REJECTED: frozenset(),
    TaskStatus.SKIPPED: frozenset(),
}


@dataclass(frozen=True, slots=True)
class TaskKind:
    """One variant of the closed task-category set.

    Carries the facts a description must mention before the task can act,
    the single tool that performs it, and whether that tool only reads.
    """

    task_type: TaskType
    tool_name: str
    required_facts: tuple[str, ...] = ()
    read_only: bool = False


TASK_KINDS: dict[TaskType, TaskKind] = {
    TaskType.CODE_FIX: TaskKind(
        TaskType.CODE_FIX, "propose_code_change", ("file_path", "issue")
    ),
    TaskType.DEPLOYMENT: TaskKind(TaskType.DEPLOYMENT, "request_deployment", ("environment",)),
    TaskType.VERSION_CONTROL: TaskKind(
        TaskType.VERSION_CONTROL, "git_operation", ("vcs_operation",)
    ),
    TaskType.FILE_OPERATION: TaskKind(TaskType.FILE_OPERATION, "file_operation", ("file_path",)),
    TaskType.DATA_STORE: TaskKind(TaskType.DATA_STORE, "data_store_operation", ("data_target",)),
    TaskType.PERSONNEL_REQUEST: TaskKind(
        TaskType.PERSONNEL_REQUEST, "submit_personnel_request", ("request_kind",)
    ),
    TaskType.NAVIGATION: TaskKind(
        TaskType.NAVIGATION, "navigate_page", ("destination",), read_only=True
    ),
    TaskType.TRAINING: TaskKind(TaskType.TRAINING, "learn_pattern", ("lesson",)),
    TaskType.ANALYSIS: TaskKind(
        TaskType.ANALYSIS, "analyze_code", ("analysis_target",), read_only=True
    ),
    TaskType.TEST: TaskKind(TaskType.TEST, "run_diagnostics"),
    TaskType.INFORMATION_LOOKUP: TaskKind(
        TaskType.INFORMATION_LOOKUP, "search_knowledge", read_only=True
    ),
    TaskType.PROFILE_LOOKUP: TaskKind(TaskType.PROFILE_LOOKUP, "lookup_profile", read_only=True),
    TaskType.CALCULATION: TaskKind(
        TaskType.CALCULATION, "calculate", ("expression",), read_only=True
    ),
}

_TYPE_ALIASES = {
    "code_review": "analysis",
    "bug_fix": "code_fix",
    "git": "version_control",
    "git_operation": "version_control",
    "vcs": "version_control",
    "database": "data_store",
    "data_store_operation": "data_store",
    "hr": "personnel_request",
    "hr_request": "personnel_request",
    "search": "information_lookup",
    "lookup": "information_lookup",
    "profile": "profile_lookup",
    "tests": "test",
    "deploy": "deployment",
    "math": "calculation",
}


@dataclass(slots=True)
class Task:
    id: str
    batch_id: str
    session_id: str
    order: int
    type: TaskType
    description: str
    risk_level: RiskLevel = RiskLevel.LOW
    requires_approval: bool = False
    dependencies: list[int] = field(default_factory=list)
    required_info: list[str] = field(default_factory=list)
    missing_info: list[str] = field(default_factory=list)
    safety: dict[str, Any] = field(
        default_factory=lambda: {"safe": True, "flags": [], "score": 1.0}
    )
    status: TaskStatus = TaskStatus.PENDING
    result: dict[str, Any] | None = None
    error_message: str | None = None
    display_payload: dict[str, Any] | None = None
    approved_by: str | None = None
    created_at: str = field(default_factory=_utcnow_iso)
    started_at: str | None = None
    completed_at: str | None = None
    history: list[dict[str, Any]] = field(default_factory=list)

    @staticmethod
    def new_id() -> str:
        return f"task-{uuid4().hex[:12]}"

    @property
    def kind(self) -> TaskKind:
        return self.type.kind

    @property
    def is_safe(self) -> bool:
        return bool(self.safety.get("safe", True))

    def transition(self, target: TaskStatus, *, reason: str | None = None) -> None:
        if target not in TRANSITIONS[self.status]:
            raise InvalidTransitionError(self.id, self.status.value, target.value)
        now = _utcnow_iso()
        self.history.append(
            {"from": self.status.value, "to": target.value, "at": now, "reason": reason}
        )
        self.status = target
        if target is TaskStatus.EXECUTING:
            self.started_at = now
        if target.is_terminal:
            self.completed_at = now
            if reason and target is not TaskStatus.COMPLETED:
                self.error_message = reason

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "batch_id": self.batch_id,
            "session_id": self.session_id,
            "order": self.order,
            "type": self.type.value,
            "description": self.description,
            "risk_level": self.risk_level.value,
            "requires_approval": self.requires_approval,
            "dependencies": list(self.dependencies),
            "required_info": list(self.required_info),
            "missing_info": list(self.missing_info),
            "safety": {
                "safe": bool(self.safety.get("safe", True)),
                "flags": list(self.safety.get("flags", [])),
                "score": float(self.safety.get("score", 1.0)),
            },
            "status": self.status.value,
            "result": self.result,
            "error_message": self.error_message,
            "display_payload": self.display_payload,
            "approved_by": self.approved_by,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "history": list(self.history),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Task:
        return cls(
            id=str(payload["id"]),
            batch_id=str(payload["batch_id"]),
            session_id=str(payload.get("session_id", "")),
            order=int(payload["order"]),
            type=TaskType.parse(payload["type"]),
            description=str(payload["description"]),
            risk_level=RiskLevel.parse(payload.get("risk_level")),
            requires_approval=bool(payload.get("requires_approval", False)),
            dependencies=[int(item) for item in payload.get("dependencies", [])],
            required_info=list(payload.get("required_info", [])),
            missing_info=list(payload.get("missing_info", [])),
            safety=dict(payload.get("safety") or {"safe": True, "flags": [], "score": 1.0}),
            status=TaskStatus(payload.get("status", "pending")),
            result=payload.get("result"),
            error_message=payload.get("error_message"),
            display_payload=payload.get("display_payload"),
            approved_by=payload.get("approved_by"),
            created_at=str(payload.get("created_at") or _utcnow_iso()),
            started_at=payload.get("started_at"),
            completed_at=payload.get("completed_at"),
            history=list(payload.get("history", [])),
        )
