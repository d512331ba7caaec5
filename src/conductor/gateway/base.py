from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Literal

from conductor.errors import ConductorError

Role = Literal["system", "user", "assistant", "tool"]
ToolChoice = str | dict[str, Any]


class GatewayError(ConductorError):
    """Raised when the language-model gateway fails or answers malformed payloads."""

    def __init__(self, message: str, *, provider: str | None = None) -> None:
        super().__init__(message)
        self.provider = provider


@dataclass(slots=True)
class ChatMessage:
    role: Role
    content: str

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass(slots=True)
class ToolCall:
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    id: str = ""


@dataclass(slots=True)
class GatewayResponse:
    text: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)

    def first_call(self, name: str) -> ToolCall | None:
        for call in self.tool_calls:
            if call.name == name:
                return call
        return None


def force_tool(name: str) -> dict[str, Any]:
    return {"type": "function", "function": {"name": name}}


class Gateway(ABC):
    name: str = "gateway"

    @abstractmethod
    async def complete(
        self,
        messages: list[ChatMessage],
        tools: list[dict[str, Any]],
        tool_choice: ToolChoice = "auto",
    ) -> GatewayResponse:
        """Return free text and/or zero or more tool invocations."""
