import pytest

from conductor.errors import InvalidTransitionError
from conductor.tasks import TASK_KINDS, TRANSITIONS, RiskLevel, Task, TaskStatus, TaskType


def _task(**overrides) -> Task:
    payload = {
        "id": Task.new_id(),
        "batch_id": "batch-1",
        "session_id": "s1",
        "order": 0,
        "type": TaskType.TEST,
        "description": "run the tests",
    }
    payload.update(overrides)
    return Task(**payload)


def test_happy_path_transitions_record_history() -> None:
    task = _task()

    task.transition(TaskStatus.APPROVED)
    task.transition(TaskStatus.EXECUTING)
    task.transition(TaskStatus.COMPLETED, reason="ok")

    assert task.status is TaskStatus.COMPLETED
    assert [entry["to"] for entry in task.history] == ["approved", "executing", "completed"]
    assert task.started_at is not None
    assert task.completed_at is not None
    assert task.error_message is None


def test_illegal_transition_raises() -> None:
    task = _task()

    with pytest.raises(InvalidTransitionError, match="pending -> completed"):
        task.transition(TaskStatus.COMPLETED)
    assert task.status is TaskStatus.PENDING


def test_terminal_states_have_no_exits() -> None:
    for status in TaskStatus:
        if status.is_terminal:
            assert TRANSITIONS[status] == frozenset()

    task = _task()
    task.transition(TaskStatus.REJECTED, reason="Failed safety check: prompt_injection")
    assert task.error_message == "Failed safety check: prompt_injection"
    with pytest.raises(InvalidTransitionError):
        task.transition(TaskStatus.APPROVED)


def test_no_status_returns_to_pending() -> None:
    for targets in TRANSITIONS.values():
        assert TaskStatus.PENDING not in targets


def test_every_type_maps_to_one_distinct_tool() -> None:
    tools = [TASK_KINDS[task_type].tool_name for task_type in TaskType]

    assert len(tools) == len(set(tools)) == len(TaskType)
    assert TaskType.NAVIGATION.kind.read_only is True
    assert TaskType.DEPLOYMENT.kind.read_only is False


def test_type_and_risk_parsing() -> None:
    assert TaskType.parse("bug-fix") is TaskType.CODE_FIX
    assert TaskType.parse("Code Review") is TaskType.ANALYSIS
    assert TaskType.parse("information_lookup") is TaskType.INFORMATION_LOOKUP
    with pytest.raises(ValueError):
        TaskType.parse("astrology")

    assert RiskLevel.parse("HIGH") is RiskLevel.HIGH
    assert RiskLevel.parse(None) is RiskLevel.LOW
    assert RiskLevel.parse("catastrophic") is RiskLevel.LOW


def test_task_record_survives_serialization() -> None:
    task = _task(
        type=TaskType.DEPLOYMENT,
        description="deploy to production",
        risk_level=RiskLevel.HIGH,
        requires_approval=True,
        dependencies=[0],
        order=1,
        required_info=["environment"],
    )
    task.transition(TaskStatus.AWAITING_APPROVAL)

    restored = Task.from_dict(task.to_dict())

    assert restored == task
    assert restored.type is TaskType.DEPLOYMENT
    assert restored.status is TaskStatus.AWAITING_APPROVAL
