import asyncio
from pathlib import Path

import pytest

from conductor.completeness import CompletenessChecker
from conductor.coordinator import ApprovalHandle, ExecutionCoordinator
from conductor.errors import InvalidTransitionError, OrderingViolationError, ToolExecutionError
from conductor.gateway import GatewayResponse, KeywordGateway
from conductor.gateway.base import Gateway
from conductor.graph import GraphBuilder, TaskQueue, TaskSpec
from conductor.patterns import PatternLibrary
from conductor.reporting import AuditLog
from conductor.safety import SafetyValidator
from conductor.state import StateStore
from conductor.tasks import RiskLevel, Task, TaskStatus, TaskType
from conductor.tools import BuiltinTools, ToolResult


class _SilentGateway(Gateway):
    """Never produces tool calls, so arguments come from the description."""

    name = "silent"

    async def complete(self, messages, tools, tool_choice="auto"):
        return GatewayResponse(text="no tools today")


class _Harness:
    def __init__(self, tmp_path: Path, gateway: Gateway | None = None) -> None:
        self.store = StateStore(tmp_path)
        validator = SafetyValidator()
        self.registry = BuiltinTools(
            self.store, PatternLibrary(self.store, validator), validator
        ).registry()
        self.builder = GraphBuilder(validator, CompletenessChecker())
        self.coordinator = ExecutionCoordinator(
            gateway or KeywordGateway(), self.registry, AuditLog(self.store), self.store
        )
        self.calls: list[str] = []

    def track(self, tool_name: str, handler=None) -> None:
        original = handler or self.registry._handlers[tool_name]  # noqa: SLF001

        async def _tracked(task, arguments):
            self.calls.append(f"{tool_name}:{task.order}")
            return await original(task, arguments)

        self.registry.register(tool_name, _tracked)

    def build(self, specs: list[TaskSpec]) -> TaskQueue:
        return self.builder.build(specs, session_id="s1")

    def run(self, queue: TaskQueue):
        return asyncio.run(self.coordinator.run(queue))


def test_independent_tasks_all_complete(tmp_path: Path) -> None:
    harness = _Harness(tmp_path)
    queue = harness.build(
        [
            TaskSpec(order=0, type=TaskType.TEST, description="run the tests"),
            TaskSpec(order=1, type=TaskType.CALCULATION, description="calculate 12 * 7"),
            TaskSpec(order=2, type=TaskType.NAVIGATION, description="go to the dashboard"),
        ]
    )

    summary = harness.run(queue)

    assert summary.is_settled
    assert [report.status for report in summary.tasks] == ["completed"] * 3
    assert summary.tasks[1].result == {
        "expression": "12 * 7",
        "value": 84,
        "requires_approval": False,
    }
    assert summary.tasks[2].display_payload["route"] == "/dashboard"
    stored = harness.store.get_task(queue.by_order(0).id)
    assert stored["status"] == "completed"
    assert [entry["to"] for entry in stored["history"]] == ["approved", "executing", "completed"]


def test_failure_skips_transitive_dependents_only(tmp_path: Path) -> None:
    harness = _Harness(tmp_path)

    async def _broken(task, arguments):
        raise ToolExecutionError("compile failed")

    harness.track("propose_code_change", _broken)
    harness.track("run_diagnostics")
    harness.track("navigate_page")
    queue = harness.build(
        [
            TaskSpec(order=0, type=TaskType.CODE_FIX, description="Fix the login bug in auth.ts"),
            TaskSpec(order=1, type=TaskType.TEST, description="run the tests", dependencies=[0]),
            TaskSpec(
                order=2, type=TaskType.TEST, description="run the smoke tests", dependencies=[1]
            ),
            TaskSpec(order=3, type=TaskType.NAVIGATION, description="go to the dashboard"),
        ]
    )

    summary = harness.run(queue)

    assert [report.status for report in summary.tasks] == [
        "failed",
        "skipped",
        "skipped",
        "completed",
    ]
    assert summary.tasks[0].reason == "compile failed"
    assert summary.tasks[1].reason == "Dependency task 0 (code_fix) ended failed"
    assert summary.tasks[2].reason == "Dependency task 1 (test) ended skipped"
    assert harness.calls == ["propose_code_change:0", "navigate_page:3"]
    actions = [entry["action_type"] for entry in harness.store.audit_entries()]
    assert actions == [
        "tool:propose_code_change",
        "tool_failed:propose_code_change",
        "tool:navigate_page",
    ]


def test_unsafe_task_never_reaches_its_handler(tmp_path: Path) -> None:
    harness = _Harness(tmp_path)
    harness.track("data_store_operation")
    harness.track("request_deployment")
    queue = harness.build(
        [
            TaskSpec(
                order=0,
                type=TaskType.DATA_STORE,
                description="Delete the production database",
                risk_level=RiskLevel.CRITICAL,
            ),
            TaskSpec(
                order=1,
                type=TaskType.DEPLOYMENT,
                description="deploy to staging",
                dependencies=[0],
            ),
        ]
    )

    summary = harness.run(queue)

    assert harness.calls == []
    assert summary.status_of(0) == "rejected"
    assert summary.tasks[0].reason == "Failed safety check: destructive_operation"
    assert summary.tasks[1].reason == "Dependency task 0 (data_store) ended rejected"
    assert harness.store.work_orders() == []


def test_approval_gate_suspends_and_resumes(tmp_path: Path) -> None:
    harness = _Harness(tmp_path)
    harness.track("request_deployment")
    harness.track("navigate_page")
    harness.track("run_diagnostics")
    queue = harness.build(
        [
            TaskSpec(
                order=0,
                type=TaskType.DEPLOYMENT,
                description="Deploy to production",
                risk_level=RiskLevel.HIGH,
            ),
            TaskSpec(
                order=1, type=TaskType.TEST, description="run the smoke tests", dependencies=[0]
            ),
            TaskSpec(order=2, type=TaskType.NAVIGATION, description="go to the dashboard"),
        ]
    )

    first = harness.run(queue)

    assert [report.status for report in first.tasks] == [
        "awaiting_approval",
        "pending",
        "completed",
    ]
    assert first.tasks[0].reason == "Awaiting approval"
    assert first.tasks[0].approval_handle == {
        "task_id": queue.by_order(0).id,
        "batch_id": queue.batch_id,
    }
    assert first.tasks[1].reason == "Waiting on task 0 (awaiting_approval)"
    assert not first.is_settled

    handles = harness.coordinator.pending_approvals(queue)
    assert handles == [ApprovalHandle.for_task(queue.by_order(0))]

    second = asyncio.run(harness.coordinator.resume(queue, handles[0], approved_by="ops-lead"))

    assert second.is_settled
    assert [report.status for report in second.tasks] == ["completed"] * 3
    assert second.tasks[0].result["requires_approval"] is True
    assert queue.by_order(0).approved_by == "ops-lead"
    assert harness.calls == ["navigate_page:2", "request_deployment:0", "run_diagnostics:1"]
    grants = [
        entry
        for entry in harness.store.audit_entries()
        if entry["action_type"] == "approval_granted"
    ]
    assert len(grants) == 1
    assert grants[0]["actor"] == "ops-lead"
    assert grants[0]["task_id"] == queue.by_order(0).id


def test_resume_of_finished_task_changes_nothing(tmp_path: Path) -> None:
    harness = _Harness(tmp_path)
    harness.track("run_diagnostics")
    queue = harness.build([TaskSpec(order=0, type=TaskType.TEST, description="run the tests")])
    harness.run(queue)

    summary = asyncio.run(harness.coordinator.resume(queue, queue.by_order(0).id))

    assert summary.status_of(0) == "completed"
    assert harness.calls == ["run_diagnostics:0"]


def test_resume_of_unsuspended_task_is_refused(tmp_path: Path) -> None:
    harness = _Harness(tmp_path)
    queue = harness.build([TaskSpec(order=0, type=TaskType.DEPLOYMENT, description="deploy it")])

    with pytest.raises(InvalidTransitionError):
        asyncio.run(harness.coordinator.resume(queue, queue.by_order(0).id))


def test_mutating_tools_are_audited_before_they_run(tmp_path: Path) -> None:
    harness = _Harness(tmp_path)
    seen: dict[str, list[str]] = {}

    def _snapshot(label: str):
        async def _handler(task, arguments):
            seen[label] = [entry["action_type"] for entry in harness.store.audit_entries()]
            return ToolResult(result={"ok": True})

        return _handler

    harness.registry.register("run_diagnostics", _snapshot("mutating"))
    harness.registry.register("calculate", _snapshot("read_only"))
    queue = harness.build(
        [
            TaskSpec(order=0, type=TaskType.TEST, description="run the tests"),
            TaskSpec(order=1, type=TaskType.CALCULATION, description="calculate 2 + 2"),
        ]
    )

    harness.run(queue)

    assert seen["mutating"] == ["tool:run_diagnostics"]
    assert seen["read_only"] == ["tool:run_diagnostics"]
    assert [entry["action_type"] for entry in harness.store.audit_entries()] == [
        "tool:run_diagnostics",
        "tool:calculate",
    ]


def test_unexpected_exception_marks_task_failed(tmp_path: Path) -> None:
    harness = _Harness(tmp_path)

    async def _explode(task, arguments):
        raise RuntimeError()

    harness.registry.register("run_diagnostics", _explode)
    queue = harness.build([TaskSpec(order=0, type=TaskType.TEST, description="run the tests")])

    summary = harness.run(queue)

    assert summary.status_of(0) == "failed"
    assert summary.tasks[0].reason == "RuntimeError"


def test_silent_gateway_falls_back_to_extracted_arguments(tmp_path: Path) -> None:
    harness = _Harness(tmp_path, gateway=_SilentGateway())
    queue = harness.build(
        [TaskSpec(order=0, type=TaskType.CALCULATION, description="what is 6 x 7")]
    )

    summary = harness.run(queue)

    assert summary.tasks[0].result["value"] == 42


def test_unsettled_earlier_dependency_is_an_ordering_violation(tmp_path: Path) -> None:
    harness = _Harness(tmp_path)
    tasks = [
        Task(
            id=f"task-{order}",
            batch_id="batch-bad",
            session_id="s1",
            order=order,
            type=TaskType.TEST,
            description="run the tests",
            dependencies=deps,
        )
        for order, deps in ((0, [1]), (1, []))
    ]
    queue = TaskQueue("batch-bad", "s1", tasks)

    with pytest.raises(OrderingViolationError, match="dependency 1 still pending"):
        harness.run(queue)


def test_task_left_executing_fails_without_stopping_the_pass(tmp_path: Path) -> None:
    harness = _Harness(tmp_path)
    harness.track("run_diagnostics")
    harness.track("navigate_page")
    queue = harness.build(
        [
            TaskSpec(order=0, type=TaskType.TEST, description="run the tests"),
            TaskSpec(order=1, type=TaskType.NAVIGATION, description="go to the dashboard"),
            TaskSpec(
                order=2, type=TaskType.TEST, description="run the smoke tests", dependencies=[0]
            ),
        ]
    )
    stale = queue.by_order(0)
    stale.transition(TaskStatus.APPROVED)
    stale.transition(TaskStatus.EXECUTING)
    for task in queue:
        harness.store.put_task(task.to_dict())
    records = harness.store.tasks_for_batch(queue.batch_id)
    reloaded = TaskQueue(queue.batch_id, queue.session_id, [Task.from_dict(r) for r in records])

    summary = harness.run(reloaded)

    assert [report.status for report in summary.tasks] == ["failed", "completed", "skipped"]
    assert summary.tasks[0].reason == "Interrupted while executing"
    assert summary.tasks[2].reason == "Dependency task 0 (test) ended failed"
    assert harness.calls == ["navigate_page:1"]


def test_clarify_moves_complete_task_on_and_runs_it(tmp_path: Path) -> None:
    harness = _Harness(tmp_path)
    harness.track("request_deployment")
    queue = harness.build([TaskSpec(order=0, type=TaskType.DEPLOYMENT, description="deploy it")])
    task = queue.by_order(0)
    assert task.status is TaskStatus.AWAITING_INFO

    summary = asyncio.run(
        harness.coordinator.clarify(
            queue,
            task.id,
            description="deploy it to staging",
            details="to staging",
            missing_info=[],
        )
    )

    assert summary.status_of(0) == "completed"
    assert harness.calls == ["request_deployment:0"]
    assert [entry["to"] for entry in task.history][:2] == ["awaiting_info", "approved"]
    entry = harness.store.audit_entries()[0]
    assert entry["action_type"] == "clarification"
    assert entry["action_data"]["details"] == "to staging"

    with pytest.raises(InvalidTransitionError):
        asyncio.run(
            harness.coordinator.clarify(
                queue, task.id, description="deploy it", details="", missing_info=[]
            )
        )
