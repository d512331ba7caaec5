import asyncio
import json
from types import SimpleNamespace

import pytest
from openai import OpenAIError

from conductor.gateway import (
    ChatMessage,
    GatewayError,
    KeywordGateway,
    OpenAIGateway,
    force_tool,
)
from conductor.tools import DECOMPOSE_TOOL, tool_schemas


def _user(text: str) -> list[ChatMessage]:
    return [ChatMessage(role="system", content="system"), ChatMessage(role="user", content=text)]


def test_keyword_decompose_links_back_references() -> None:
    tasks = KeywordGateway().decompose("Fix the login bug in auth.ts, then deploy it")

    assert [task["type"] for task in tasks] == ["code_fix", "deployment"]
    assert [task["dependencies"] for task in tasks] == [[], [0]]
    assert [task["order"] for task in tasks] == [0, 1]


def test_keyword_decompose_keeps_independent_fragments_apart() -> None:
    tasks = KeywordGateway().decompose("fix the bug, run tests, deploy to staging")

    assert [task["type"] for task in tasks] == ["code_fix", "test", "deployment"]
    assert [task["dependencies"] for task in tasks] == [[], [], []]
    assert tasks[2]["risk_level"] == "medium"


def test_keyword_gateway_answers_decompose_tool() -> None:
    response = asyncio.run(
        KeywordGateway().complete(
            _user("run tests and deploy to staging"),
            tool_schemas([DECOMPOSE_TOOL]),
            force_tool(DECOMPOSE_TOOL),
        )
    )

    call = response.first_call(DECOMPOSE_TOOL)
    assert call is not None
    assert [task["type"] for task in call.arguments["tasks"]] == ["test", "deployment"]


def test_keyword_gateway_extracts_forced_tool_arguments() -> None:
    response = asyncio.run(
        KeywordGateway().complete(
            _user("calculate 12 * 7"), tool_schemas(["calculate"]), force_tool("calculate")
        )
    )

    assert response.tool_calls[0].name == "calculate"
    assert response.tool_calls[0].arguments == {"expression": "12 * 7"}


def test_keyword_gateway_falls_back_to_text() -> None:
    gateway = KeywordGateway()

    outside_catalog = asyncio.run(
        gateway.complete(_user("go to the dashboard"), tool_schemas(["calculate"]))
    )
    no_tools = asyncio.run(gateway.complete(_user("hello"), tool_schemas(), "none"))

    assert outside_catalog.tool_calls == []
    assert outside_catalog.text == "go to the dashboard"
    assert no_tools.tool_calls == []


class _FakeCompletions:
    def __init__(self, response=None, error: Exception | None = None) -> None:
        self.response = response
        self.error = error
        self.requests: list[dict] = []

    async def create(self, **request):
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return self.response


def _client(completions: _FakeCompletions) -> SimpleNamespace:
    return SimpleNamespace(chat=SimpleNamespace(completions=completions))


def _response(*calls: tuple[str, str], content: str | None = None) -> SimpleNamespace:
    tool_calls = [
        SimpleNamespace(id=f"c{index}", function=SimpleNamespace(name=name, arguments=arguments))
        for index, (name, arguments) in enumerate(calls)
    ]
    message = SimpleNamespace(content=content, tool_calls=tool_calls or None)
    return SimpleNamespace(choices=[SimpleNamespace(message=message)])


def test_openai_gateway_sends_tools_and_decodes_calls() -> None:
    completions = _FakeCompletions(
        _response(("calculate", json.dumps({"expression": "1 + 1"})))
    )
    gateway = OpenAIGateway(model="test-model", client=_client(completions))
    tools = tool_schemas(["calculate"])

    response = asyncio.run(gateway.complete(_user("1 + 1"), tools, force_tool("calculate")))

    request = completions.requests[0]
    assert request["model"] == "test-model"
    assert request["tools"] == tools
    assert request["tool_choice"] == force_tool("calculate")
    assert request["messages"][-1] == {"role": "user", "content": "1 + 1"}
    assert response.tool_calls[0].arguments == {"expression": "1 + 1"}
    assert response.tool_calls[0].id == "c0"


def test_openai_gateway_omits_tools_when_none_given() -> None:
    completions = _FakeCompletions(_response(content="plain answer"))
    gateway = OpenAIGateway(client=_client(completions))

    response = asyncio.run(gateway.complete(_user("hi"), []))

    assert "tools" not in completions.requests[0]
    assert response.text == "plain answer"
    assert response.tool_calls == []


@pytest.mark.parametrize(
    ("arguments", "message"),
    [("{not json", "Malformed arguments"), ("[1, 2]", "must be a JSON object")],
)
def test_openai_gateway_rejects_bad_arguments(arguments: str, message: str) -> None:
    gateway = OpenAIGateway(client=_client(_FakeCompletions(_response(("calculate", arguments)))))

    with pytest.raises(GatewayError, match=message):
        asyncio.run(gateway.complete(_user("x"), tool_schemas(["calculate"])))


def test_openai_gateway_wraps_sdk_errors() -> None:
    gateway = OpenAIGateway(client=_client(_FakeCompletions(error=OpenAIError("boom"))))

    with pytest.raises(GatewayError, match="boom") as excinfo:
        asyncio.run(gateway.complete(_user("x"), []))
    assert excinfo.value.provider == "openai"


def test_openai_gateway_rejects_empty_choices() -> None:
    completions = _FakeCompletions(SimpleNamespace(choices=[]))
    gateway = OpenAIGateway(client=_client(completions))

    with pytest.raises(GatewayError, match="no choices"):
        asyncio.run(gateway.complete(_user("x"), []))


def test_openai_gateway_requires_api_key(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("CONDUCTOR_TEST_KEY", raising=False)
    gateway = OpenAIGateway(api_key_env="CONDUCTOR_TEST_KEY")

    with pytest.raises(GatewayError, match="CONDUCTOR_TEST_KEY"):
        asyncio.run(gateway.complete(_user("x"), []))
