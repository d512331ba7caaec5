from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from uuid import uuid4

from conductor.completeness import CompletenessChecker
from conductor.errors import TaskGraphError, UnknownTaskError
from conductor.safety import SafetyValidator
from conductor.tasks import RiskLevel, Task, TaskStatus, TaskType

logger = logging.getLogger(__name__)

TaskCallback = Callable[[Task], None]


@dataclass(slots=True)
class TaskSpec:
    order: int
    type: TaskType
    description: str
    risk_level: RiskLevel = RiskLevel.LOW
    requires_approval: bool = False
    dependencies: list[int] = field(default_factory=list)


def normalize_orders(specs: list[TaskSpec]) -> list[TaskSpec]:
    """Shift a dense 1-based numbering (as language models tend to emit) to 0-based."""
    orders = sorted(spec.order for spec in specs)
    if orders and orders == list(range(1, len(specs) + 1)):
        for spec in specs:
            spec.order -= 1
            spec.dependencies = [dep - 1 for dep in spec.dependencies]
    return sorted(specs, key=lambda spec: spec.order)


def _find_cycle(dependencies: dict[int, list[int]]) -> list[int] | None:
    visiting: set[int] = set()
    done: set[int] = set()
    path: list[int] = []

    def _visit(node: int) -> list[int] | None:
        visiting.add(node)
        path.append(node)
        for dep in dependencies.get(node, []):
            if dep in visiting:
                return path[path.index(dep) :] + [dep]
            if dep not in done and dep in dependencies:
                found = _visit(dep)
                if found:
                    return found
        visiting.discard(node)
        done.add(node)
        path.pop()
        return None

    for node in sorted(dependencies):
        if node not in done:
            cycle = _visit(node)
            if cycle:
                return cycle
    return None


def validate_specs(specs: list[TaskSpec]) -> None:
    orders = [spec.order for spec in specs]
    if len(set(orders)) != len(orders):
        duplicates = sorted({order for order in orders if orders.count(order) > 1})
        raise TaskGraphError(f"Duplicate task order values: {duplicates}")
    if sorted(orders) != list(range(len(specs))):
        raise TaskGraphError(f"Task order values must be dense from 0, got {sorted(orders)}")

    dependencies = {spec.order: sorted(set(spec.dependencies)) for spec in specs}
    cycle = _find_cycle(dependencies)
    if cycle:
        rendered = " -> ".join(str(node) for node in cycle)
        raise TaskGraphError(f"Dependency cycle detected: {rendered}")

    for spec in specs:
        for dep in dependencies[spec.order]:
            if dep not in dependencies:
                raise TaskGraphError(f"Task {spec.order} depends on unknown order {dep}")
            if dep >= spec.order:
                raise TaskGraphError(
                    f"Task {spec.order} declares forward dependency on order {dep}"
                )


class TaskQueue:
    """The ordered tasks of one batch."""

    def __init__(self, batch_id: str, session_id: str, tasks: list[Task]) -> None:
        self.batch_id = batch_id
        self.session_id = session_id
        self.tasks = sorted(tasks, key=lambda task: task.order)
        self._by_order = {task.order: task for task in self.tasks}
        self._by_id = {task.id: task for task in self.tasks}

    def __iter__(self) -> Iterator[Task]:
        return iter(self.tasks)

    def __len__(self) -> int:
        return len(self.tasks)

    def by_order(self, order: int) -> Task:
        return self._by_order[order]

    def get(self, task_id: str) -> Task:
        task = self._by_id.get(task_id)
        if task is None:
            raise UnknownTaskError(f"Task {task_id} is not part of batch {self.batch_id}")
        return task

    def dependencies_of(self, task: Task) -> list[Task]:
        return [self._by_order[order] for order in task.dependencies if order in self._by_order]

    def dependents_of(self, task: Task) -> list[Task]:
        """Transitive dependents in execution order."""
        affected = {task.order}
        dependents: list[Task] = []
        for candidate in self.tasks:
            if candidate.order <= task.order:
                continue
            if affected.intersection(candidate.dependencies):
                affected.add(candidate.order)
                dependents.append(candidate)
        return dependents


class GraphBuilder:
    """Turns task specs into screened, ordered Task records."""

    def __init__(
        self,
        validator: SafetyValidator,
        checker: CompletenessChecker,
        *,
        approval_risk_levels: list[str] | None = None,
    ) -> None:
        self.validator = validator
        self.checker = checker
        levels = approval_risk_levels if approval_risk_levels is not None else ["high", "critical"]
        self.approval_risk_levels = {RiskLevel.parse(level) for level in levels}

    def create_task(self, spec: TaskSpec, *, batch_id: str, session_id: str) -> Task:
        verdict = self.validator.validate(spec.description)
        completeness = self.checker.check(spec.type, spec.description)
        task = Task(
            id=Task.new_id(),
            batch_id=batch_id,
            session_id=session_id,
            order=spec.order,
            type=spec.type,
            description=spec.description,
            risk_level=spec.risk_level,
            requires_approval=(
                spec.requires_approval or spec.risk_level in self.approval_risk_levels
            ),
            dependencies=sorted(set(spec.dependencies)),
            required_info=list(completeness.required),
            missing_info=list(completeness.missing),
            safety=verdict.to_dict(),
        )
        if not verdict.safe:
            task.transition(
                TaskStatus.REJECTED,
                reason="Failed safety check: " + ", ".join(verdict.flags),
            )
        elif completeness.missing:
            task.transition(
                TaskStatus.AWAITING_INFO,
                reason="Missing information: " + ", ".join(completeness.missing),
            )
        elif task.requires_approval:
            task.transition(TaskStatus.AWAITING_APPROVAL, reason="Approval required")
        return task

    def build(
        self,
        specs: list[TaskSpec],
        *,
        session_id: str,
        batch_id: str | None = None,
        on_create: TaskCallback | None = None,
    ) -> TaskQueue:
        ordered = normalize_orders(list(specs))
        validate_specs(ordered)
        resolved_batch = batch_id or f"batch-{uuid4().hex[:12]}"
        tasks: list[Task] = []
        for spec in ordered:
            task = self.create_task(spec, batch_id=resolved_batch, session_id=session_id)
            if on_create is not None:
                on_create(task)
            tasks.append(task)
        logger.info(
            "built batch %s with %d task(s): %s",
            resolved_batch,
            len(tasks),
            ", ".join(f"{task.order}:{task.status.value}" for task in tasks),
        )
        return TaskQueue(resolved_batch, session_id, tasks)
