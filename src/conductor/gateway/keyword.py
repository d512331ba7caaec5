from __future__ import annotations

import logging
from typing import Any

from conductor.gateway.base import ChatMessage, Gateway, GatewayResponse, ToolCall, ToolChoice
from conductor.intent import classify_intent, estimate_risk, refers_back
from conductor.parser import TaskParser
from conductor.tasks import TASK_KINDS, TaskType
from conductor.tools import DECOMPOSE_TOOL, default_arguments

logger = logging.getLogger(__name__)

_TOOL_TYPES: dict[str, TaskType] = {
    kind.tool_name: task_type for task_type, kind in TASK_KINDS.items()
}


def _tool_names(tools: list[dict[str, Any]]) -> list[str]:
    names: list[str] = []
    for tool in tools:
        function = tool.get("function", {}) if isinstance(tool, dict) else {}
        name = function.get("name") if isinstance(function, dict) else None
        if isinstance(name, str):
            names.append(name)
    return names


def _forced_name(tool_choice: ToolChoice) -> str | None:
    if isinstance(tool_choice, dict):
        function = tool_choice.get("function", {})
        name = function.get("name") if isinstance(function, dict) else None
        return name if isinstance(name, str) else None
    return None


class KeywordGateway(Gateway):
    """Deterministic offline gateway built from the parser and the intent classifier.

    Answers ``decompose_tasks`` by splitting the last user message into
    fragments, and per-task tool calls by extracting arguments from the
    description. A fragment depends on its predecessor when it was joined by a
    sequencer or points back at it ("deploy it").
    """

    name = "keyword"

    def __init__(self, parser: TaskParser | None = None) -> None:
        self.parser = parser or TaskParser()

    async def complete(
        self,
        messages: list[ChatMessage],
        tools: list[dict[str, Any]],
        tool_choice: ToolChoice = "auto",
    ) -> GatewayResponse:
        text = next((m.content for m in reversed(messages) if m.role == "user"), "")
        if tool_choice == "none":
            return GatewayResponse(text=text)

        available = _tool_names(tools)
        name = _forced_name(tool_choice)
        if name is None:
            if DECOMPOSE_TOOL in available:
                name = DECOMPOSE_TOOL
            else:
                name = classify_intent(text).task_type.kind.tool_name
        if name not in available:
            logger.debug("keyword gateway has no tool %s in catalog, answering with text", name)
            return GatewayResponse(text=text)

        if name == DECOMPOSE_TOOL:
            arguments: dict[str, Any] = {"tasks": self.decompose(text)}
        else:
            task_type = _TOOL_TYPES.get(name, TaskType.INFORMATION_LOOKUP)
            arguments = default_arguments(task_type, text)
        call = ToolCall(name=name, arguments=arguments, id=f"call-{name}")
        return GatewayResponse(tool_calls=[call])

    def decompose(self, instruction: str) -> list[dict[str, Any]]:
        tasks: list[dict[str, Any]] = []
        for index, fragment in enumerate(self.parser.parse_fragments(instruction)):
            match = classify_intent(fragment.text)
            dependencies: list[int] = []
            if index > 0 and (fragment.sequenced or refers_back(fragment.text)):
                dependencies.append(index - 1)
            tasks.append(
                {
                    "order": index,
                    "type": match.task_type.value,
                    "description": fragment.text,
                    "risk_level": estimate_risk(match.task_type, fragment.text).value,
                    "requires_approval": False,
                    "dependencies": dependencies,
                }
            )
        return tasks
