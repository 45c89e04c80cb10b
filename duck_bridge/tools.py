from __future__ import annotations

import ast
import json
import logging
import operator
import random
import re
from collections.abc import Callable, Iterator, Sequence
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from duck_bridge.models import ChatMessage

logger = logging.getLogger("uvicorn.error")

ToolHandler = Callable[[dict[str, Any]], Any]

_ARITHMETIC_RE = re.compile(r"\d+(?:\.\d+)?(?:\s*[+\-*/%]\s*\d+(?:\.\d+)?)+")
_LOCATION_RE = re.compile(r"\b(?:in|for|at)\s+([A-Za-z][A-Za-z\s,.'-]*)", re.IGNORECASE)
_TRAILING_LOCATION_WORDS = re.compile(
    r"\s+(?:today|tomorrow|tonight|now|right now|this week|please)$", re.IGNORECASE
)


def generate_tool_call_id() -> str:
    return f"call_{uuid4().hex[:24]}"


def make_tool_call(name: str, arguments: str, call_id: str | None = None) -> dict[str, Any]:
    return {
        "id": call_id or generate_tool_call_id(),
        "type": "function",
        "function": {"name": name, "arguments": arguments},
    }


def _tool_functions(tools: Sequence[dict[str, Any]] | None) -> list[dict[str, Any]]:
    functions: list[dict[str, Any]] = []
    for tool in tools or []:
        function = tool.get("function") if isinstance(tool, dict) else None
        if isinstance(function, dict) and isinstance(function.get("name"), str):
            functions.append(function)
    return functions


class ToolCallEmulator:
    """Fakes OpenAI function calling on a backend that only returns text.

    The model is asked to answer with a small JSON document when it wants a
    function; the reply is then scanned for that document. When the caller
    insists on a tool result and none was produced, a call is synthesized from
    keyword heuristics over the last user message. This is an approximation,
    not intent recognition: there is no retry or correction loop.
    """

    def should_emulate(self, tools: Sequence[dict[str, Any]] | None, tool_choice: Any) -> bool:
        return bool(tools) and tool_choice != "none"

    def build_prompt(self, tools: Sequence[dict[str, Any]], tool_choice: Any) -> str:
        lines = [
            "You have access to the following functions. Use them when they help answer the user.",
            "",
            "Available functions:",
        ]
        for function in _tool_functions(tools):
            lines.append(f"- {function['name']}: {function.get('description') or 'No description.'}")
            parameters = function.get("parameters")
            if isinstance(parameters, dict) and parameters.get("properties"):
                lines.append(
                    f"  Parameters (JSON schema): {json.dumps(parameters, ensure_ascii=False)}"
                )
        lines.extend(
            [
                "",
                "To call a function, respond ONLY with a JSON object in exactly this format and no other text:",
                '{"tool_calls": [{"name": "<function_name>", "arguments": {"<parameter>": "<value>"}}]}',
                "You may include several entries in tool_calls. "
                "If no function is needed, answer normally in plain text.",
            ]
        )

        forced_name = _forced_function_name(tool_choice)
        if forced_name:
            lines.append(f"You MUST call the function '{forced_name}' in your response.")
        elif tool_choice == "required":
            lines.append("You MUST call at least one of the functions above in your response.")
        return "\n".join(lines)

    def extract(
        self,
        text: str,
        tools: Sequence[dict[str, Any]] | None = None,
    ) -> list[dict[str, Any]]:
        declared = {function["name"] for function in _tool_functions(tools)}
        for candidate in _json_objects(text):
            calls = [
                (name, arguments)
                for name, arguments in _calls_from_payload(candidate)
                if not declared or name in declared
            ]
            if calls:
                return [make_tool_call(name, arguments) for name, arguments in calls]
        return []

    def requires_call(self, tools: Sequence[dict[str, Any]] | None, tool_choice: Any) -> bool:
        if not tools:
            return False
        return tool_choice == "required" or _forced_function_name(tool_choice) is not None

    def force_call(
        self,
        tools: Sequence[dict[str, Any]],
        tool_choice: Any,
        messages: Sequence[ChatMessage],
    ) -> dict[str, Any]:
        user_text = _last_user_text(messages)
        name = _forced_function_name(tool_choice) or self.infer_function(tools, user_text)
        function = next(
            (item for item in _tool_functions(tools) if item["name"] == name),
            None,
        )
        arguments = self.infer_arguments(name, function, user_text)
        logger.info(
            "tool_call_synthesized function=%s arguments_chars=%d",
            name,
            len(arguments),
        )
        return make_tool_call(name, arguments)

    def infer_function(self, tools: Sequence[dict[str, Any]], user_text: str) -> str:
        functions = _tool_functions(tools)
        lowered = user_text.lower()

        checks: list[tuple[bool, Callable[[str], bool]]] = [
            (bool(re.search(r"\btime\b", lowered)), _is_time_like),
            ("calculate" in lowered or bool(_ARITHMETIC_RE.search(user_text)), _is_calculator_like),
            ("weather" in lowered, _is_weather_like),
        ]
        for matched, is_kind in checks:
            if not matched:
                continue
            for function in functions:
                if is_kind(function["name"]):
                    return function["name"]
        return functions[0]["name"]

    def infer_arguments(
        self,
        name: str,
        function: dict[str, Any] | None,
        user_text: str,
    ) -> str:
        if _is_calculator_like(name):
            match = _ARITHMETIC_RE.search(user_text)
            if match:
                key = _first_parameter(function, default="expression")
                return json.dumps({key: match.group(0)})
        elif _is_weather_like(name):
            match = _LOCATION_RE.search(user_text)
            if match:
                location = _TRAILING_LOCATION_WORDS.sub("", match.group(1).strip(" ,.")).strip(" ,.")
                if location:
                    key = _first_parameter(function, default="location")
                    return json.dumps({key: location})
        return "{}"


def _is_time_like(name: str) -> bool:
    lowered = name.lower()
    return "time" in lowered or "date" in lowered or "clock" in lowered


def _is_calculator_like(name: str) -> bool:
    lowered = name.lower()
    return "calc" in lowered or "math" in lowered or "arith" in lowered


def _is_weather_like(name: str) -> bool:
    lowered = name.lower()
    return "weather" in lowered or "forecast" in lowered


def _first_parameter(function: dict[str, Any] | None, *, default: str) -> str:
    if not function:
        return default
    parameters = function.get("parameters")
    if not isinstance(parameters, dict):
        return default
    required = parameters.get("required")
    if isinstance(required, list) and required and isinstance(required[0], str):
        return required[0]
    properties = parameters.get("properties")
    if isinstance(properties, dict) and properties:
        return next(iter(properties))
    return default


def _forced_function_name(tool_choice: Any) -> str | None:
    if isinstance(tool_choice, dict) and tool_choice.get("type") == "function":
        function = tool_choice.get("function")
        if isinstance(function, dict):
            name = function.get("name")
            if isinstance(name, str) and name.strip():
                return name.strip()
    return None


def _last_user_text(messages: Sequence[ChatMessage]) -> str:
    for message in reversed(messages):
        if message.role == "user":
            return message.text
    return ""


def _json_objects(text: str) -> Iterator[dict[str, Any]]:
    decoder = json.JSONDecoder()
    index = text.find("{")
    while index != -1:
        try:
            parsed, end = decoder.raw_decode(text, index)
        except ValueError:
            index = text.find("{", index + 1)
            continue
        if isinstance(parsed, dict):
            yield parsed
        index = text.find("{", end)


def _calls_from_payload(payload: dict[str, Any]) -> list[tuple[str, str]]:
    entries: list[Any]
    if isinstance(payload.get("tool_calls"), list):
        entries = payload["tool_calls"]
    elif isinstance(payload.get("function_call"), dict):
        entries = [payload["function_call"]]
    else:
        entries = [payload]

    calls: list[tuple[str, str]] = []
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        function = entry.get("function") if isinstance(entry.get("function"), dict) else entry
        name = function.get("name")
        if not isinstance(name, str) or not name.strip():
            continue
        if "arguments" in function:
            raw_arguments = function["arguments"]
        elif "parameters" in function:
            raw_arguments = function["parameters"]
        else:
            continue
        calls.append((name.strip(), _normalize_arguments(raw_arguments)))
    return calls


def _normalize_arguments(raw: Any) -> str:
    if isinstance(raw, str):
        stripped = raw.strip()
        return stripped or "{}"
    if raw is None:
        return "{}"
    return json.dumps(raw, ensure_ascii=False)


_BINARY_OPERATORS: dict[type[ast.operator], Callable[[Any, Any], Any]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
}
_UNARY_OPERATORS: dict[type[ast.unaryop], Callable[[Any], Any]] = {
    ast.UAdd: operator.pos,
    ast.USub: operator.neg,
}
_MAX_EXPONENT = 100


def evaluate_arithmetic(expression: str) -> int | float:
    """Evaluate a plain arithmetic expression without touching eval()."""
    tree = ast.parse(expression.strip(), mode="eval")
    return _evaluate_node(tree.body)


def _evaluate_node(node: ast.AST) -> int | float:
    if isinstance(node, ast.Constant) and isinstance(node.value, (int, float)):
        if isinstance(node.value, bool):
            msg = "Booleans are not numbers here"
            raise ValueError(msg)
        return node.value
    if isinstance(node, ast.BinOp) and type(node.op) in _BINARY_OPERATORS:
        left = _evaluate_node(node.left)
        right = _evaluate_node(node.right)
        if isinstance(node.op, ast.Pow) and abs(right) > _MAX_EXPONENT:
            msg = "Exponent too large"
            raise ValueError(msg)
        return _BINARY_OPERATORS[type(node.op)](left, right)
    if isinstance(node, ast.UnaryOp) and type(node.op) in _UNARY_OPERATORS:
        return _UNARY_OPERATORS[type(node.op)](_evaluate_node(node.operand))
    msg = f"Unsupported expression element: {node.__class__.__name__}"
    raise ValueError(msg)


def _get_current_time(_: dict[str, Any]) -> str:
    return datetime.now(timezone.utc).isoformat()


def _calculate(arguments: dict[str, Any]) -> dict[str, Any]:
    expression = arguments.get("expression")
    if not isinstance(expression, str):
        return {"error": "Invalid expression"}
    try:
        return {"result": evaluate_arithmetic(expression)}
    except (SyntaxError, ValueError, ZeroDivisionError, OverflowError):
        return {"error": "Invalid expression"}


def _get_weather(arguments: dict[str, Any]) -> dict[str, Any]:
    return {
        "location": arguments.get("location"),
        "temperature": random.randint(10, 39),
        "condition": random.choice(["sunny", "cloudy", "rainy"]),
        "note": "This is a mock weather function for demonstration",
    }


BUILTIN_FUNCTIONS: dict[str, ToolHandler] = {
    "get_current_time": _get_current_time,
    "calculate": _calculate,
    "get_weather": _get_weather,
}


class FunctionRegistry:
    def __init__(self, *, include_builtins: bool = True) -> None:
        self._handlers: dict[str, ToolHandler] = dict(BUILTIN_FUNCTIONS) if include_builtins else {}

    def register(self, name: str, handler: ToolHandler) -> None:
        if not name or not name.strip():
            msg = "Function name must be a non-empty string"
            raise ValueError(msg)
        self._handlers[name.strip()] = handler

    def names(self) -> list[str]:
        return sorted(self._handlers)

    def execute(self, tool_call: dict[str, Any]) -> str:
        function = tool_call.get("function") if isinstance(tool_call, dict) else None
        if not isinstance(function, dict):
            return json.dumps({"error": "Tool call is missing a function"})
        name = function.get("name")
        handler = self._handlers.get(name) if isinstance(name, str) else None
        if handler is None:
            return json.dumps({"error": f"Function '{name}' not found"})

        raw_arguments = function.get("arguments") or "{}"
        try:
            arguments = json.loads(raw_arguments) if isinstance(raw_arguments, str) else raw_arguments
        except ValueError:
            return json.dumps({"error": f"Invalid arguments for function '{name}'"})
        if not isinstance(arguments, dict):
            return json.dumps({"error": f"Invalid arguments for function '{name}'"})

        try:
            result = handler(arguments)
        except Exception as exc:
            logger.warning("tool_execution_failed function=%s error=%s", name, exc)
            return json.dumps({"error": f"Error executing function '{name}': {exc}"})
        return json.dumps(result, ensure_ascii=False, default=str)
