from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from conductor.graph import TaskQueue
from conductor.state import StateStore
from conductor.tasks import Task, TaskStatus


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


class AuditLog:
    """Append-only record of safety decisions and tool invocations."""

    def __init__(self, store: StateStore) -> None:
        self.store = store

    def record(
        self,
        *,
        session_id: str,
        actor: str,
        action_type: str,
        payload: dict[str, Any],
        safety_score: float = 1.0,
        flags: list[str] | tuple[str, ...] = (),
        was_blocked: bool = False,
        task_id: str | None = None,
        batch_id: str | None = None,
    ) -> dict[str, Any]:
        entry = {
            "id": f"audit-{uuid4().hex[:12]}",
            "session_id": session_id,
            "batch_id": batch_id,
            "task_id": task_id,
            "actor": actor,
            "action_type": action_type,
            "action_data": payload,
            "safety_score": float(safety_score),
            "risk_flags": list(flags),
            "was_blocked": was_blocked,
            "created_at": _utcnow_iso(),
        }
        self.store.append_audit(entry)
        return entry

    def for_session(self, session_id: str) -> list[dict[str, Any]]:
        return self.store.audit_for_session(session_id)


@dataclass(slots=True)
class TaskReport:
    task_id: str
    order: int
    type: str
    description: str
    status: str
    reason: str | None = None
    requires_approval: bool = False
    missing_info: list[str] = field(default_factory=list)
    safety_flags: list[str] = field(default_factory=list)
    result: dict[str, Any] | None = None
    display_payload: dict[str, Any] | None = None
    approval_handle: dict[str, str] | None = None

    @classmethod
    def from_task(cls, task: Task, *, note: str | None = None) -> TaskReport:
        reason = task.error_message
        if task.status is TaskStatus.AWAITING_INFO:
            reason = "Missing information: " + ", ".join(task.missing_info)
        elif task.status is TaskStatus.AWAITING_APPROVAL:
            reason = "Awaiting approval"
        elif not task.status.is_terminal and note:
            reason = note
        handle = None
        if task.status is TaskStatus.AWAITING_APPROVAL:
            handle = {"task_id": task.id, "batch_id": task.batch_id}
        return cls(
            task_id=task.id,
            order=task.order,
            type=task.type.value,
            description=task.description,
            status=task.status.value,
            reason=reason,
            requires_approval=task.requires_approval,
            missing_info=list(task.missing_info),
            safety_flags=list(task.safety.get("flags", [])),
            result=task.result,
            display_payload=task.display_payload,
            approval_handle=handle,
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class RunSummary:
    batch_id: str
    session_id: str
    tasks: list[TaskReport]
    finished_at: str = field(default_factory=_utcnow_iso)

    @classmethod
    def from_queue(cls, queue: TaskQueue, notes: dict[str, str] | None = None) -> RunSummary:
        notes = notes or {}
        return cls(
            batch_id=queue.batch_id,
            session_id=queue.session_id,
            tasks=[TaskReport.from_task(task, note=notes.get(task.id)) for task in queue],
        )

    def _with_status(self, status: TaskStatus) -> list[TaskReport]:
        return [report for report in self.tasks if report.status == status.value]

    @property
    def completed(self) -> list[TaskReport]:
        return self._with_status(TaskStatus.COMPLETED)

    @property
    def failed(self) -> list[TaskReport]:
        return self._with_status(TaskStatus.FAILED)

    @property
    def skipped(self) -> list[TaskReport]:
        return self._with_status(TaskStatus.SKIPPED)

    @property
    def rejected(self) -> list[TaskReport]:
        return self._with_status(TaskStatus.REJECTED)

    @property
    def blocked(self) -> list[TaskReport]:
        return [
            report
            for report in self.tasks
            if not TaskStatus(report.status).is_terminal
        ]

    @property
    def is_settled(self) -> bool:
        return not self.blocked

    def status_of(self, order: int) -> str:
        for report in self.tasks:
            if report.order == order:
                return report.status
        raise KeyError(order)

    def to_dict(self) -> dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "session_id": self.session_id,
            "finished_at": self.finished_at,
            "counts": {
                "total": len(self.tasks),
                "completed": len(self.completed),
                "failed": len(self.failed),
                "skipped": len(self.skipped),
                "rejected": len(self.rejected),
                "blocked": len(self.blocked),
            },
            "tasks": [report.to_dict() for report in self.tasks],
        }


@dataclass(slots=True)
class BatchSummary:
    """Consumer-facing snapshot of a batch before or between runs."""

    batch_id: str
    total: int
    safe: int
    unsafe: int
    needing_info: int
    ready_to_execute: int
    tasks: list[TaskReport]

    @classmethod
    def from_queue(cls, queue: TaskQueue) -> BatchSummary:
        tasks = list(queue)
        safe = [task for task in tasks if task.is_safe]
        return cls(
            batch_id=queue.batch_id,
            total=len(tasks),
            safe=len(safe),
            unsafe=len(tasks) - len(safe),
            needing_info=sum(1 for task in tasks if task.status is TaskStatus.AWAITING_INFO),
            ready_to_execute=sum(
                1
                for task in safe
                if not task.missing_info
                and not task.requires_approval
                and task.status in {TaskStatus.PENDING, TaskStatus.APPROVED}
            ),
            tasks=[TaskReport.from_task(task) for task in tasks],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "total": self.total,
            "safe": self.safe,
            "unsafe": self.unsafe,
            "needing_info": self.needing_info,
            "ready_to_execute": self.ready_to_execute,
            "tasks": [report.to_dict() for report in self.tasks],
        }
