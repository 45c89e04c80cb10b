from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any

from duck_bridge.errors import InvalidRequestError

VALID_ROLES = ("system", "user", "assistant", "tool")
SAMPLING_FIELDS = (
    "temperature",
    "max_tokens",
    "top_p",
    "frequency_penalty",
    "presence_penalty",
    "stop",
)
_TOOL_NAME_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


@dataclass(slots=True)
class ChatMessage:
    role: str
    content: str | None
    name: str | None = None
    tool_call_id: str | None = None
    tool_calls: list[dict[str, Any]] | None = None

    @property
    def text(self) -> str:
        return self.content or ""


@dataclass(slots=True)
class ChatRequest:
    model: str
    messages: list[ChatMessage]
    stream: bool = False
    tools: list[dict[str, Any]] | None = None
    tool_choice: str | dict[str, Any] | None = None
    include_usage: bool = False
    sampling: dict[str, Any] = field(default_factory=dict)


def validate_chat_request(payload: Any, *, default_model: str) -> ChatRequest:
    if not isinstance(payload, dict):
        raise InvalidRequestError("Expected a JSON object request body.")

    raw_messages = payload.get("messages")
    if not isinstance(raw_messages, list):
        raise InvalidRequestError(
            "messages field is required and must be an array", param="messages"
        )
    if not raw_messages:
        raise InvalidRequestError("messages array cannot be empty", param="messages")

    messages = [_validate_message(item, index) for index, item in enumerate(raw_messages)]

    tools = payload.get("tools")
    if tools is not None:
        validate_tools(tools)
        tools = list(tools)

    tool_choice = payload.get("tool_choice")
    _validate_tool_choice(tool_choice)

    model = payload.get("model")
    if not isinstance(model, str) or not model.strip():
        model = default_model

    stream_options = payload.get("stream_options")
    include_usage = isinstance(stream_options, dict) and bool(
        stream_options.get("include_usage")
    )

    return ChatRequest(
        model=model.strip(),
        messages=messages,
        stream=bool(payload.get("stream", False)),
        tools=tools or None,
        tool_choice=tool_choice,
        include_usage=include_usage,
        sampling={key: payload[key] for key in SAMPLING_FIELDS if key in payload},
    )


def validate_tools(tools: Any) -> None:
    if not isinstance(tools, list):
        raise InvalidRequestError("Invalid tools: tools must be an array", param="tools")

    errors: list[str] = []
    for index, tool in enumerate(tools):
        if not isinstance(tool, dict):
            errors.append(f"Tool at index {index} must be an object")
            continue
        if tool.get("type") != "function":
            errors.append(f"Tool at index {index} must have type 'function'")
            continue
        function = tool.get("function")
        if not isinstance(function, dict):
            errors.append(f"Tool at index {index} must have a function object")
            continue
        name = function.get("name")
        if not isinstance(name, str) or not _TOOL_NAME_RE.match(name):
            errors.append(f"Tool at index {index} must have a valid function name")
        description = function.get("description")
        if description is not None and not isinstance(description, str):
            errors.append(f"Tool at index {index} description must be a string")
        parameters = function.get("parameters")
        if parameters is not None:
            if not isinstance(parameters, dict) or parameters.get("type") != "object":
                errors.append(f"Tool at index {index} parameters must be an object schema")
            elif "properties" in parameters and not isinstance(parameters["properties"], dict):
                errors.append(f"Tool at index {index} parameters.properties must be an object")

    if errors:
        raise InvalidRequestError(f"Invalid tools: {', '.join(errors)}", param="tools")


def _validate_tool_choice(choice: Any) -> None:
    if choice is None or choice in ("none", "auto", "required"):
        return
    if isinstance(choice, dict) and choice.get("type") == "function":
        function = choice.get("function")
        if isinstance(function, dict) and isinstance(function.get("name"), str):
            return
    raise InvalidRequestError(
        "tool_choice must be 'none', 'auto', 'required' or a function selector",
        param="tool_choice",
    )


def _validate_message(raw: Any, index: int) -> ChatMessage:
    if not isinstance(raw, dict):
        raise InvalidRequestError(
            f"Message at index {index} must be an object", param=f"messages.{index}"
        )

    role = raw.get("role")
    if role not in VALID_ROLES:
        raise InvalidRequestError(
            "Each message must have a valid role (system, user, assistant, or tool)",
            param=f"messages.{index}.role",
        )

    if role == "tool":
        tool_call_id = raw.get("tool_call_id")
        if not isinstance(tool_call_id, str) or not tool_call_id:
            raise InvalidRequestError(
                "Tool messages must have a tool_call_id",
                param=f"messages.{index}.tool_call_id",
            )
        content = _coerce_content(raw.get("content"))
        if content is None:
            raise InvalidRequestError(
                "Tool messages must have content as a string",
                param=f"messages.{index}.content",
            )
        return ChatMessage(role=role, content=content, tool_call_id=tool_call_id)

    if "content" not in raw:
        raise InvalidRequestError(
            "Each message must have content as a string or null",
            param=f"messages.{index}.content",
        )
    content = _coerce_content(raw["content"])
    if content is None and raw["content"] is not None:
        raise InvalidRequestError(
            "Each message must have content as a string or null",
            param=f"messages.{index}.content",
        )

    tool_calls = raw.get("tool_calls")
    if tool_calls is not None and not isinstance(tool_calls, list):
        raise InvalidRequestError(
            "tool_calls must be an array", param=f"messages.{index}.tool_calls"
        )

    name = raw.get("name")
    return ChatMessage(
        role=role,
        content=content,
        name=name if isinstance(name, str) else None,
        tool_calls=tool_calls or None,
    )


def _coerce_content(value: Any) -> str | None:
    if isinstance(value, str):
        return value
    if value is None:
        return None
    # Content-part arrays: only the text parts reach the upstream.
    if isinstance(value, list):
        chunks: list[str] = []
        for item in value:
            if isinstance(item, str):
                chunks.append(item)
                continue
            if not isinstance(item, dict):
                return None
            text = item.get("text")
            if isinstance(text, str):
                chunks.append(text)
        return "\n".join(chunks)
    return None
