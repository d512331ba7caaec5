from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from conductor.completeness import CompletenessChecker
from conductor.config import ConductorConfig
from conductor.coordinator import ApprovalHandle, ExecutionCoordinator
from conductor.errors import (
    ConductorError,
    InstructionRejectedError,
    TaskGraphError,
    UnknownTaskError,
)
from conductor.gateway.base import ChatMessage, Gateway, force_tool
from conductor.gateway.keyword import KeywordGateway
from conductor.graph import GraphBuilder, TaskQueue, TaskSpec
from conductor.intent import classify_intent
from conductor.parser import TaskParser
from conductor.patterns import PatternLibrary
from conductor.reporting import AuditLog, BatchSummary, RunSummary
from conductor.safety import SafetyValidator, SafetyVerdict
from conductor.state import StateStore
from conductor.tasks import RiskLevel, Task, TaskStatus, TaskType
from conductor.tools import DECOMPOSE_TOOL, BuiltinTools, ToolRegistry, tool_schemas

logger = logging.getLogger(__name__)

DECOMPOSITION_PROMPT = """You are a task orchestrator.
Break the user's request into an ordered list of tasks by calling decompose_tasks.

Rules:
- Use at most {max_tasks} tasks, ordered from 0.
- Each task has exactly one type from the provided enum.
- A task may depend only on tasks with a lower order.
- Mark risk_level high or critical for production or destructive work.
- Never merge or rewrite the user's intent; keep descriptions close to their words."""


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def _spec_from_payload(item: dict[str, Any], index: int) -> TaskSpec:
    description = str(item.get("description") or "").strip()
    try:
        task_type = TaskType.parse(str(item.get("type") or ""))
    except ValueError:
        task_type = classify_intent(description).task_type
    try:
        order = int(item.get("order", index))
        dependencies = [int(dep) for dep in item.get("dependencies") or []]
    except (TypeError, ValueError) as exc:
        raise TaskGraphError(f"Task {index} has a non-integer order or dependency") from exc
    return TaskSpec(
        order=order,
        type=task_type,
        description=description,
        risk_level=RiskLevel.parse(item.get("risk_level")),
        requires_approval=bool(item.get("requires_approval", False)),
        dependencies=dependencies,
    )


class Orchestrator:
    """Instruction in, summary out: screening, decomposition, graph build and execution."""

    def __init__(
        self,
        *,
        store: StateStore,
        gateway: Gateway,
        config: ConductorConfig | None = None,
        validator: SafetyValidator | None = None,
        checker: CompletenessChecker | None = None,
        registry: ToolRegistry | None = None,
    ) -> None:
        self.config = config or ConductorConfig.default()
        self.store = store
        self.gateway = gateway
        self.validator = validator or SafetyValidator(penalty=self.config.safety.penalty)
        self.checker = checker or CompletenessChecker()
        self.parser = TaskParser(
            max_tasks=self.config.parser.max_tasks,
            min_fragment_length=self.config.parser.min_fragment_length,
        )
        self.patterns = PatternLibrary(store, self.validator)
        self.audit = AuditLog(store)
        self.registry = registry or BuiltinTools(store, self.patterns, self.validator).registry()
        self.builder = GraphBuilder(
            self.validator,
            self.checker,
            approval_risk_levels=self.config.execution.approval_risk_levels,
        )
        self.coordinator = ExecutionCoordinator(gateway, self.registry, self.audit, store)

    # Input screening

    def screen(self, instruction: str, *, session_id: str, record: bool = True) -> SafetyVerdict:
        verdict = self.validator.validate(instruction)
        blocking = set(self.config.safety.instruction_blocking_categories)
        blocked = bool(blocking.intersection(verdict.flags)) or (
            verdict.score < self.config.safety.instruction_min_score
        )
        if record:
            self.audit.record(
                session_id=session_id,
                actor="user",
                action_type="instruction_check",
                payload={"instruction": instruction},
                safety_score=verdict.score,
                flags=verdict.flags,
                was_blocked=blocked,
            )
        if blocked:
            logger.warning(
                "instruction rejected for session %s: %s (score %.2f)",
                session_id,
                ", ".join(verdict.flags),
                verdict.score,
            )
            raise InstructionRejectedError(
                "Instruction rejected by safety screening: " + ", ".join(verdict.flags),
                flags=list(verdict.flags),
                score=verdict.score,
            )
        return verdict

    # Decomposition

    def _system_prompt(self) -> str:
        parts = [DECOMPOSITION_PROMPT.format(max_tasks=self.parser.max_tasks)]
        learned = self.patterns.render_prompt_section()
        if learned:
            parts.append(learned)
        return "\n\n".join(parts)

    async def decompose(self, instruction: str) -> list[TaskSpec]:
        messages = [
            ChatMessage("system", self._system_prompt()),
            ChatMessage("user", instruction),
        ]
        response = await self.gateway.complete(
            messages, tool_schemas([DECOMPOSE_TOOL]), tool_choice=force_tool(DECOMPOSE_TOOL)
        )
        call = response.first_call(DECOMPOSE_TOOL)
        items = call.arguments.get("tasks") if call is not None else None
        if not isinstance(items, list) or not items:
            logger.info("gateway returned no task list, deriving tasks from the instruction")
            items = KeywordGateway(self.parser).decompose(instruction)

        specs = [
            _spec_from_payload(item, index)
            for index, item in enumerate(items)
            if isinstance(item, dict) and str(item.get("description") or "").strip()
        ]
        specs.sort(key=lambda spec: spec.order)
        return specs[: self.parser.max_tasks]

    # Batch lifecycle

    def _on_create(self, task: Task) -> None:
        self.audit.record(
            session_id=task.session_id,
            batch_id=task.batch_id,
            task_id=task.id,
            actor="orchestrator",
            action_type="task_safety_check",
            payload={"order": task.order, "type": task.type.value, "description": task.description},
            safety_score=float(task.safety.get("score", 1.0)),
            flags=list(task.safety.get("flags", [])),
            was_blocked=not task.is_safe,
        )
        if self.config.execution.persist_on_create:
            self.store.put_task(task.to_dict())

    async def _build(self, instruction: str, session_id: str) -> TaskQueue:
        specs = await self.decompose(instruction)
        if not specs:
            raise ConductorError("Instruction produced no tasks.")
        queue = self.builder.build(specs, session_id=session_id, on_create=self._on_create)
        for task in queue:
            self.store.put_task(task.to_dict())
        self.store.put_batch(
            {
                "id": queue.batch_id,
                "session_id": session_id,
                "instruction": instruction,
                "task_ids": [task.id for task in queue],
                "created_at": _utcnow_iso(),
            }
        )
        return queue

    async def submit(self, instruction: str, *, session_id: str = "default") -> RunSummary:
        self.screen(instruction, session_id=session_id)
        queue = await self._build(instruction, session_id)
        logger.info("submitted batch %s for session %s", queue.batch_id, session_id)
        return await self._run(queue)

    async def preview(self, instruction: str, *, session_id: str = "default") -> BatchSummary:
        self.screen(instruction, session_id=session_id, record=False)
        specs = await self.decompose(instruction)
        queue = self.builder.build(specs, session_id=session_id)
        return BatchSummary.from_queue(queue)

    def _refresh_prompt(self) -> None:
        self.coordinator.system_prompt = self.patterns.render_prompt_section()

    async def _run(self, queue: TaskQueue) -> RunSummary:
        self._refresh_prompt()
        return await self.coordinator.run(queue)

    def load_queue(self, batch_id: str) -> TaskQueue:
        records = self.store.tasks_for_batch(batch_id)
        if not records:
            raise UnknownTaskError(f"Batch not found: {batch_id}")
        tasks = [Task.from_dict(record) for record in records]
        return TaskQueue(batch_id, tasks[0].session_id, tasks)

    def _queue_for_task(self, task_id: str) -> TaskQueue:
        record = self.store.get_task(task_id)
        if record is None:
            raise UnknownTaskError(f"Task not found: {task_id}")
        return self.load_queue(str(record["batch_id"]))

    async def approve(
        self, task_id: str | ApprovalHandle, *, approver: str = "user"
    ) -> RunSummary:
        key = task_id.task_id if isinstance(task_id, ApprovalHandle) else task_id
        queue = self._queue_for_task(key)
        self._refresh_prompt()
        return await self.coordinator.resume(queue, key, approved_by=approver)

    async def reject(
        self, task_id: str, *, reason: str = "", rejected_by: str = "user"
    ) -> RunSummary:
        queue = self._queue_for_task(task_id)
        self._refresh_prompt()
        return await self.coordinator.reject(
            queue, task_id, reason=reason, rejected_by=rejected_by
        )

    async def clarify(self, task_id: str, details: str, *, actor: str = "user") -> RunSummary:
        queue = self._queue_for_task(task_id)
        task = queue.get(task_id)
        if task.status is not TaskStatus.AWAITING_INFO:
            raise ConductorError(
                f"Task {task_id} is not awaiting information (status: {task.status.value})."
            )
        addition = details.strip()
        description = f"{task.description} {addition}" if addition else task.description
        verdict = self.validator.validate(description)
        self.audit.record(
            session_id=task.session_id,
            batch_id=task.batch_id,
            task_id=task.id,
            actor=actor,
            action_type="clarification_check",
            payload={"details": addition},
            safety_score=verdict.score,
            flags=verdict.flags,
            was_blocked=not verdict.safe,
        )
        if not verdict.safe:
            logger.warning(
                "clarification for task %s rejected: %s", task.id, ", ".join(verdict.flags)
            )
            raise InstructionRejectedError(
                "Clarification rejected by safety screening: " + ", ".join(verdict.flags),
                flags=list(verdict.flags),
                score=verdict.score,
            )

        completeness = self.checker.check(task.type, description)
        self._refresh_prompt()
        return await self.coordinator.clarify(
            queue,
            task.id,
            description=description,
            details=addition,
            missing_info=list(completeness.missing),
            actor=actor,
        )

    # Reporting

    def status(self, session_id: str | None = None) -> list[dict[str, Any]]:
        batches: list[dict[str, Any]] = []
        for batch in self.store.batches_for_session(session_id):
            queue = self.load_queue(str(batch["id"]))
            summary = BatchSummary.from_queue(queue).to_dict()
            summary["session_id"] = batch.get("session_id")
            summary["instruction"] = batch.get("instruction", "")
            summary["created_at"] = batch.get("created_at")
            summary["pending_approvals"] = [
                handle.task_id for handle in self.coordinator.pending_approvals(queue)
            ]
            batches.append(summary)
        return batches
