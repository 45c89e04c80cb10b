from __future__ import annotations

import json
from typing import Any

import pytest

from duck_bridge.models import ChatMessage
from duck_bridge.tools import FunctionRegistry, ToolCallEmulator, evaluate_arithmetic


def _tool(name: str, properties: dict[str, Any] | None = None) -> dict[str, Any]:
    function: dict[str, Any] = {"name": name, "description": f"{name} tool"}
    if properties is not None:
        function["parameters"] = {
            "type": "object",
            "properties": properties,
            "required": list(properties),
        }
    return {"type": "function", "function": function}


TOOLS = [
    _tool("get_weather", {"location": {"type": "string"}}),
    _tool("calculate", {"expression": {"type": "string"}}),
    _tool("get_current_time", {}),
]


def test_should_emulate_requires_tools_and_not_none() -> None:
    emulator = ToolCallEmulator()
    assert emulator.should_emulate(TOOLS, "auto") is True
    assert emulator.should_emulate(TOOLS, None) is True
    assert emulator.should_emulate(TOOLS, "none") is False
    assert emulator.should_emulate([], "auto") is False


def test_build_prompt_lists_tools_and_reply_shape() -> None:
    emulator = ToolCallEmulator()

    prompt = emulator.build_prompt(TOOLS, "required")

    assert "- get_weather: get_weather tool" in prompt
    assert '"location"' in prompt
    assert '{"tool_calls": [{"name": "<function_name>"' in prompt
    assert "You MUST call at least one" in prompt

    named = emulator.build_prompt(
        TOOLS, {"type": "function", "function": {"name": "calculate"}}
    )
    assert "You MUST call the function 'calculate'" in named
    assert "MUST" not in emulator.build_prompt(TOOLS, "auto")


def test_extract_tool_calls_from_fenced_block() -> None:
    text = (
        "Sure, let me check.\n```json\n"
        '{"tool_calls": [{"name": "get_weather", "arguments": {"location": "Paris"}}]}\n```'
    )

    calls = ToolCallEmulator().extract(text, TOOLS)

    assert len(calls) == 1
    assert calls[0]["type"] == "function"
    assert calls[0]["id"].startswith("call_")
    assert calls[0]["function"]["name"] == "get_weather"
    assert json.loads(calls[0]["function"]["arguments"]) == {"location": "Paris"}


@pytest.mark.parametrize(
    "text",
    [
        '{"function_call": {"name": "calculate", "arguments": "{\\"expression\\": \\"2+2\\"}"}}',
        'I will call {"name": "calculate", "arguments": {"expression": "2+2"}} now',
        '{"tool_calls": [{"type": "function", "function": {"name": "calculate", '
        '"arguments": {"expression": "2+2"}}}]}',
    ],
)
def test_extract_accepts_alternate_shapes(text: str) -> None:
    calls = ToolCallEmulator().extract(text, TOOLS)

    assert [call["function"]["name"] for call in calls] == ["calculate"]
    assert json.loads(calls[0]["function"]["arguments"]) == {"expression": "2+2"}


def test_extract_ignores_undeclared_functions_and_plain_text() -> None:
    emulator = ToolCallEmulator()
    assert emulator.extract('{"name": "rm_rf", "arguments": {}}', TOOLS) == []
    assert emulator.extract("The answer is {probably} 42.", TOOLS) == []
    assert emulator.extract("", TOOLS) == []


def test_forced_call_under_required_picks_calculator() -> None:
    emulator = ToolCallEmulator()
    messages = [ChatMessage(role="user", content="What is 15 * 7?")]

    call = emulator.force_call(TOOLS, "required", messages)

    assert call["function"]["name"] == "calculate"
    assert json.loads(call["function"]["arguments"]) == {"expression": "15 * 7"}


def test_forced_call_weather_location_and_named_choice() -> None:
    emulator = ToolCallEmulator()
    weather = emulator.force_call(
        TOOLS, "required", [ChatMessage(role="user", content="How is the weather in New York today?")]
    )
    assert weather["function"]["name"] == "get_weather"
    assert json.loads(weather["function"]["arguments"]) == {"location": "New York"}

    named = emulator.force_call(
        TOOLS,
        {"type": "function", "function": {"name": "get_current_time"}},
        [ChatMessage(role="user", content="hello")],
    )
    assert named["function"]["name"] == "get_current_time"
    assert named["function"]["arguments"] == "{}"


def test_forced_call_defaults_to_first_tool() -> None:
    call = ToolCallEmulator().force_call(
        TOOLS, "required", [ChatMessage(role="user", content="Tell me a joke")]
    )
    assert call["function"]["name"] == "get_weather"
    assert call["function"]["arguments"] == "{}"


def test_requires_call_only_for_required_or_named() -> None:
    emulator = ToolCallEmulator()
    assert emulator.requires_call(TOOLS, "required") is True
    assert emulator.requires_call(TOOLS, {"type": "function", "function": {"name": "calculate"}})
    assert emulator.requires_call(TOOLS, "auto") is False
    assert emulator.requires_call([], "required") is False


def test_evaluate_arithmetic_rejects_code() -> None:
    assert evaluate_arithmetic("2 + 3 * 4") == 14
    assert evaluate_arithmetic("-(2 ** 3) / 4") == -2.0
    with pytest.raises(ValueError):
        evaluate_arithmetic("__import__('os').getcwd()")
    with pytest.raises(ValueError):
        evaluate_arithmetic("2 ** 1000")


def test_registry_executes_builtins() -> None:
    registry = FunctionRegistry()

    calculated = registry.execute(
        {"function": {"name": "calculate", "arguments": '{"expression": "6 * 7"}'}}
    )
    assert json.loads(calculated) == {"result": 42}

    weather = json.loads(
        registry.execute({"function": {"name": "get_weather", "arguments": '{"location": "Oslo"}'}})
    )
    assert weather["location"] == "Oslo"
    assert weather["condition"] in {"sunny", "cloudy", "rainy"}

    current_time = json.loads(registry.execute({"function": {"name": "get_current_time"}}))
    assert "T" in current_time


def test_registry_reports_errors_as_json() -> None:
    registry = FunctionRegistry()

    unknown = json.loads(registry.execute({"function": {"name": "nope", "arguments": "{}"}}))
    assert unknown == {"error": "Function 'nope' not found"}

    bad_args = json.loads(registry.execute({"function": {"name": "calculate", "arguments": "{oops"}}))
    assert "Invalid arguments" in bad_args["error"]

    bad_expression = json.loads(
        registry.execute({"function": {"name": "calculate", "arguments": '{"expression": "x + 1"}'}})
    )
    assert bad_expression == {"error": "Invalid expression"}


def test_registry_register_custom_handler() -> None:
    registry = FunctionRegistry(include_builtins=False)
    registry.register("echo", lambda arguments: {"echo": arguments.get("text")})

    assert registry.names() == ["echo"]
    result = registry.execute({"function": {"name": "echo", "arguments": '{"text": "hi"}'}})
    assert json.loads(result) == {"echo": "hi"}
