from __future__ import annotations

import json
import logging
import os
from typing import Any

from openai import AsyncOpenAI, OpenAIError

from conductor.gateway.base import (
    ChatMessage,
    Gateway,
    GatewayError,
    GatewayResponse,
    ToolCall,
    ToolChoice,
)

logger = logging.getLogger(__name__)


class OpenAIGateway(Gateway):
    """Chat-completions gateway for any OpenAI-compatible endpoint.

    One request per call, no retry; callers wanting resilience wrap the run.
    """

    name = "openai"

    def __init__(
        self,
        *,
        model: str = "gpt-4o-mini",
        base_url: str = "",
        api_key_env: str = "OPENAI_API_KEY",
        timeout_seconds: float = 60.0,
        temperature: float = 0.0,
        client: Any | None = None,
    ) -> None:
        self.model = model
        self.base_url = base_url
        self.api_key_env = api_key_env
        self.timeout_seconds = timeout_seconds
        self.temperature = temperature
        self._client = client

    @property
    def client(self) -> Any:
        if self._client is None:
            api_key = os.environ.get(self.api_key_env)
            if not api_key:
                raise GatewayError(
                    f"Environment variable {self.api_key_env} is not set.", provider=self.name
                )
            self._client = AsyncOpenAI(
                api_key=api_key,
                base_url=self.base_url or None,
                timeout=self.timeout_seconds,
            )
        return self._client

    async def complete(
        self,
        messages: list[ChatMessage],
        tools: list[dict[str, Any]],
        tool_choice: ToolChoice = "auto",
    ) -> GatewayResponse:
        request: dict[str, Any] = {
            "model": self.model,
            "messages": [message.to_dict() for message in messages],
            "temperature": self.temperature,
        }
        if tools:
            request["tools"] = tools
            request["tool_choice"] = tool_choice

        try:
            response = await self.client.chat.completions.create(**request)
        except OpenAIError as exc:
            raise GatewayError(f"OpenAI request failed: {exc}", provider=self.name) from exc

        if not response.choices:
            raise GatewayError("OpenAI response contained no choices", provider=self.name)
        message = response.choices[0].message

        calls: list[ToolCall] = []
        for call in message.tool_calls or []:
            raw_arguments = call.function.arguments or "{}"
            try:
                arguments = json.loads(raw_arguments)
            except json.JSONDecodeError as exc:
                raise GatewayError(
                    f"Malformed arguments for tool {call.function.name}: {exc}",
                    provider=self.name,
                ) from exc
            if not isinstance(arguments, dict):
                raise GatewayError(
                    f"Arguments for tool {call.function.name} must be a JSON object",
                    provider=self.name,
                )
            calls.append(ToolCall(name=call.function.name, arguments=arguments, id=call.id or ""))

        logger.debug("openai gateway returned %d tool call(s)", len(calls))
        return GatewayResponse(text=message.content or "", tool_calls=calls)
