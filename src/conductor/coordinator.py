from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any

from conductor.errors import InvalidTransitionError, OrderingViolationError
from conductor.gateway.base import ChatMessage, Gateway, force_tool
from conductor.graph import TaskQueue
from conductor.reporting import AuditLog, RunSummary
from conductor.state import StateStore
from conductor.tasks import SETTLED_STATUSES, Task, TaskStatus
from conductor.tools import ToolRegistry, default_arguments, tool_schemas

logger = logging.getLogger(__name__)

EXECUTION_PROMPT = (
    "You execute exactly one task by calling the provided tool. "
    "Fill the tool arguments from the task description only."
)
INTERRUPTED_REASON = "Interrupted while executing"


@dataclass(frozen=True, slots=True)
class ApprovalHandle:
    """Continuation for a task suspended at the approval gate."""

    task_id: str
    batch_id: str
    session_id: str
    order: int

    @classmethod
    def for_task(cls, task: Task) -> ApprovalHandle:
        return cls(
            task_id=task.id, batch_id=task.batch_id, session_id=task.session_id, order=task.order
        )


class ExecutionCoordinator:
    """Walks a queue in order, gating, executing and containing failures.

    One task runs at a time. A task whose dependency ended in failure is
    skipped; one whose dependency is blocked on approval or clarification
    stays where it is until a later pass.
    """

    def __init__(
        self,
        gateway: Gateway,
        registry: ToolRegistry,
        audit: AuditLog,
        store: StateStore,
        *,
        system_prompt: str = "",
    ) -> None:
        self.gateway = gateway
        self.registry = registry
        self.audit = audit
        self.store = store
        self.system_prompt = system_prompt

    def _persist(self, task: Task) -> None:
        self.store.put_task(task.to_dict())

    def _transition(self, task: Task, target: TaskStatus, *, reason: str | None = None) -> None:
        task.transition(target, reason=reason)
        self._persist(task)

    async def run(self, queue: TaskQueue) -> RunSummary:
        notes: dict[str, str] = {}
        for task in queue:
            await self._visit(queue, task, notes)
        summary = RunSummary.from_queue(queue, notes)
        logger.info(
            "batch %s pass finished: %d completed, %d failed, %d skipped, %d rejected, %d blocked",
            queue.batch_id,
            len(summary.completed),
            len(summary.failed),
            len(summary.skipped),
            len(summary.rejected),
            len(summary.blocked),
        )
        return summary

    async def _visit(self, queue: TaskQueue, task: Task, notes: dict[str, str]) -> None:
        if task.status.is_terminal:
            return

        dependencies = queue.dependencies_of(task)
        failed = [dep for dep in dependencies if dep.status.is_failure]
        if failed:
            dep = failed[0]
            reason = f"Dependency task {dep.order} ({dep.type.value}) ended {dep.status.value}"
            logger.warning("skipping task %s: %s", task.id, reason)
            self._transition(task, TaskStatus.SKIPPED, reason=reason)
            return

        waiting = [dep for dep in dependencies if dep.status is not TaskStatus.COMPLETED]
        for dep in waiting:
            if dep.status not in SETTLED_STATUSES and dep.id not in notes:
                raise OrderingViolationError(
                    f"Task {task.order} reached with dependency {dep.order} "
                    f"still {dep.status.value}"
                )
        if waiting:
            dep = waiting[0]
            notes[task.id] = f"Waiting on task {dep.order} ({dep.status.value})"
            return

        if task.status in {TaskStatus.AWAITING_INFO, TaskStatus.AWAITING_APPROVAL}:
            return

        if task.status is TaskStatus.EXECUTING:
            logger.warning("task %s was left executing by an earlier pass", task.id)
            self._transition(task, TaskStatus.FAILED, reason=INTERRUPTED_REASON)
            return

        await self._execute(task)

    async def _arguments_for(self, task: Task) -> dict[str, Any]:
        tool_name = task.kind.tool_name
        prompt = "\n\n".join(part for part in (EXECUTION_PROMPT, self.system_prompt) if part)
        messages = [
            ChatMessage("system", prompt),
            ChatMessage("user", task.description),
        ]
        response = await self.gateway.complete(
            messages, tool_schemas([tool_name]), tool_choice=force_tool(tool_name)
        )
        call = response.first_call(tool_name)
        if call is None:
            logger.debug("gateway returned no %s call for %s, using defaults", tool_name, task.id)
            return default_arguments(task.type, task.description)
        return call.arguments

    def _audit_tool(
        self, task: Task, arguments: dict[str, Any], *, action_type: str
    ) -> None:
        self.audit.record(
            session_id=task.session_id,
            batch_id=task.batch_id,
            task_id=task.id,
            actor="coordinator",
            action_type=action_type,
            payload={"tool": task.kind.tool_name, "arguments": arguments},
            safety_score=float(task.safety.get("score", 1.0)),
            flags=list(task.safety.get("flags", [])),
        )

    async def _execute(self, task: Task) -> None:
        if task.status is TaskStatus.PENDING:
            self._transition(task, TaskStatus.APPROVED, reason="No approval required")
        self._transition(task, TaskStatus.EXECUTING)

        kind = task.kind
        arguments: dict[str, Any] = {}
        try:
            arguments = await self._arguments_for(task)
            if not kind.read_only:
                self._audit_tool(task, arguments, action_type=f"tool:{kind.tool_name}")
            outcome = await self.registry.invoke(task, arguments)
        except Exception as exc:
            message = str(exc) or exc.__class__.__name__
            logger.warning("task %s (%s) failed: %s", task.id, kind.tool_name, message)
            self._audit_tool(task, arguments, action_type=f"tool_failed:{kind.tool_name}")
            self._transition(task, TaskStatus.FAILED, reason=message)
            return

        if kind.read_only:
            self._audit_tool(task, arguments, action_type=f"tool:{kind.tool_name}")
        task.result = {**outcome.result, "requires_approval": outcome.requires_approval}
        task.display_payload = outcome.display_payload
        self._transition(task, TaskStatus.COMPLETED)
        logger.debug("task %s completed: %s", task.id, json.dumps(task.result, default=str))

    def pending_approvals(self, queue: TaskQueue) -> list[ApprovalHandle]:
        return [
            ApprovalHandle.for_task(task)
            for task in queue
            if task.status is TaskStatus.AWAITING_APPROVAL
        ]

    async def resume(
        self, queue: TaskQueue, handle: ApprovalHandle | str, *, approved_by: str = "user"
    ) -> RunSummary:
        """Grant approval for one suspended task and re-enter the queue.

        Terminal tasks are never re-run, so resuming an already finished task
        only reports the current state.
        """
        task_id = handle.task_id if isinstance(handle, ApprovalHandle) else handle
        task = queue.get(task_id)
        if task.status.is_terminal:
            logger.info("task %s already %s, nothing to resume", task.id, task.status.value)
            return RunSummary.from_queue(queue)
        if task.status is not TaskStatus.AWAITING_APPROVAL:
            raise InvalidTransitionError(task.id, task.status.value, TaskStatus.APPROVED.value)

        task.approved_by = approved_by
        self._transition(task, TaskStatus.APPROVED, reason=f"Approved by {approved_by}")
        self.audit.record(
            session_id=task.session_id,
            batch_id=task.batch_id,
            task_id=task.id,
            actor=approved_by,
            action_type="approval_granted",
            payload={"order": task.order, "description": task.description},
            safety_score=float(task.safety.get("score", 1.0)),
        )
        logger.info("approval granted for task %s by %s", task.id, approved_by)
        return await self.run(queue)

    async def reject(
        self, queue: TaskQueue, task_id: str, *, reason: str = "", rejected_by: str = "user"
    ) -> RunSummary:
        task = queue.get(task_id)
        message = f"Rejected by {rejected_by}" + (f": {reason}" if reason else "")
        self._transition(task, TaskStatus.REJECTED, reason=message)
        self.audit.record(
            session_id=task.session_id,
            batch_id=task.batch_id,
            task_id=task.id,
            actor=rejected_by,
            action_type="approval_rejected",
            payload={"order": task.order, "reason": reason},
            safety_score=float(task.safety.get("score", 1.0)),
            was_blocked=True,
        )
        logger.warning("task %s rejected by %s", task.id, rejected_by)
        return await self.run(queue)

    async def clarify(
        self,
        queue: TaskQueue,
        task_id: str,
        *,
        description: str,
        details: str,
        missing_info: list[str],
        actor: str = "user",
    ) -> RunSummary:
        """Apply screened clarification text and re-enter the queue once complete."""
        task = queue.get(task_id)
        if task.status is not TaskStatus.AWAITING_INFO:
            raise InvalidTransitionError(task.id, task.status.value, TaskStatus.APPROVED.value)

        task.description = description
        task.missing_info = list(missing_info)
        self.audit.record(
            session_id=task.session_id,
            batch_id=task.batch_id,
            task_id=task.id,
            actor=actor,
            action_type="clarification",
            payload={"details": details, "missing_info": task.missing_info},
            safety_score=float(task.safety.get("score", 1.0)),
        )
        if task.missing_info:
            self._persist(task)
            logger.info("task %s still missing %s", task.id, ", ".join(task.missing_info))
            return RunSummary.from_queue(queue)

        if task.requires_approval:
            self._transition(
                task, TaskStatus.AWAITING_APPROVAL, reason="Clarified, approval required"
            )
        else:
            self._transition(task, TaskStatus.APPROVED, reason="Clarified")
        return await self.run(queue)
