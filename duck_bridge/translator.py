from __future__ import annotations

import json
import logging
import math
import time
from collections.abc import AsyncGenerator, AsyncIterable, Sequence
from typing import Any
from uuid import uuid4

from duck_bridge.errors import BridgeError
from duck_bridge.models import ChatMessage

logger = logging.getLogger("uvicorn.error")

FALLBACK_RESPONSE = (
    "I apologize, but I'm unable to provide a response at the moment. Please try again."
)
STREAM_DONE = b"data: [DONE]\n\n"
REPLAY_CHUNK_CHARS = 10


def estimate_tokens(text: str) -> int:
    """Rough token count, about four characters per token."""
    return math.ceil(len(text) / 4)


def generate_completion_id() -> str:
    return f"chatcmpl-{uuid4().hex[:24]}"


def current_timestamp() -> int:
    return int(time.time())


def prompt_text(messages: Sequence[ChatMessage] | Sequence[dict[str, Any]]) -> str:
    parts: list[str] = []
    for message in messages:
        if isinstance(message, ChatMessage):
            parts.append(message.text)
        else:
            parts.append(str(message.get("content") or ""))
    return " ".join(parts)


def to_upstream_messages(
    messages: Sequence[ChatMessage],
    *,
    tool_prompt: str | None = None,
) -> list[dict[str, str]]:
    """Collapse an OpenAI conversation onto the two roles the upstream accepts.

    System text is held back and prepended to the next user message; tool
    results become user messages; assistant tool calls are rendered as text.
    The tool-instruction block, if any, leads the first user message.
    """
    upstream: list[dict[str, str]] = []
    pending_system: list[str] = []

    for message in messages:
        if message.role == "system":
            if message.text:
                pending_system.append(message.text)
            continue

        if message.role == "tool":
            content = f"Tool result ({message.tool_call_id}): {message.text}"
            role = "user"
        elif message.role == "assistant":
            content = _assistant_text(message)
            role = "assistant"
        else:
            content = message.text
            role = "user"

        if role == "user" and pending_system:
            content = _prepend(pending_system, content)
            pending_system = []
        upstream.append({"role": role, "content": content})

    if pending_system:
        last_user = _last_user_index(upstream)
        if last_user is None:
            upstream.append({"role": "user", "content": "\n\n".join(pending_system)})
        else:
            upstream[last_user]["content"] = _prepend(
                pending_system, upstream[last_user]["content"]
            )

    if tool_prompt:
        block = (
            f"[SYSTEM INSTRUCTIONS] {tool_prompt}\n\n"
            "Please follow these instructions when responding to the following user message."
        )
        first_user = next(
            (index for index, item in enumerate(upstream) if item["role"] == "user"),
            None,
        )
        if first_user is None:
            upstream.insert(0, {"role": "user", "content": block})
        else:
            upstream[first_user]["content"] = _prepend([block], upstream[first_user]["content"])

    return upstream


def _prepend(blocks: list[str], content: str) -> str:
    if not content:
        return "\n\n".join(blocks)
    return "\n\n".join([*blocks, content])


def _last_user_index(messages: list[dict[str, str]]) -> int | None:
    for index in range(len(messages) - 1, -1, -1):
        if messages[index]["role"] == "user":
            return index
    return None


def _assistant_text(message: ChatMessage) -> str:
    if not message.tool_calls:
        return message.text
    rendered: list[str] = []
    for call in message.tool_calls:
        function = call.get("function") if isinstance(call, dict) else None
        if not isinstance(function, dict):
            continue
        rendered.append(
            json.dumps(
                {
                    "name": function.get("name"),
                    "arguments": function.get("arguments") or "{}",
                },
                ensure_ascii=False,
            )
        )
    calls_text = "\n".join(f"[FUNCTION CALL] {item}" for item in rendered)
    if message.text and calls_text:
        return f"{message.text}\n{calls_text}"
    return message.text or calls_text


def build_completion(
    *,
    model: str,
    content: str | None,
    prompt_tokens: int,
    tool_calls: list[dict[str, Any]] | None = None,
    completion_id: str | None = None,
    created: int | None = None,
) -> dict[str, Any]:
    message: dict[str, Any] = {"role": "assistant", "content": content}
    if tool_calls:
        message["content"] = None
        message["tool_calls"] = tool_calls
        finish_reason = "tool_calls"
        completion_tokens = estimate_tokens(json.dumps(tool_calls))
    else:
        if not content:
            message["content"] = FALLBACK_RESPONSE
        finish_reason = "stop"
        completion_tokens = estimate_tokens(message["content"])

    return {
        "id": completion_id or generate_completion_id(),
        "object": "chat.completion",
        "created": created if created is not None else current_timestamp(),
        "model": model,
        "choices": [
            {
                "index": 0,
                "message": message,
                "finish_reason": finish_reason,
            }
        ],
        "usage": _usage(prompt_tokens, completion_tokens),
    }


def _usage(prompt_tokens: int, completion_tokens: int) -> dict[str, int]:
    return {
        "prompt_tokens": prompt_tokens,
        "completion_tokens": completion_tokens,
        "total_tokens": prompt_tokens + completion_tokens,
    }


def _sse(payload: dict[str, Any]) -> bytes:
    return f"data: {json.dumps(payload, ensure_ascii=False, separators=(',', ':'))}\n\n".encode(
        "utf-8"
    )


def chat_completion_chunk(
    completion_id: str,
    created: int,
    model: str,
    delta: dict[str, Any],
    finish_reason: str | None = None,
) -> bytes:
    return _sse(
        {
            "id": completion_id,
            "object": "chat.completion.chunk",
            "created": created,
            "model": model,
            "choices": [
                {
                    "index": 0,
                    "delta": delta,
                    "finish_reason": finish_reason,
                }
            ],
        }
    )


def usage_chunk(
    completion_id: str,
    created: int,
    model: str,
    prompt_tokens: int,
    completion_tokens: int,
) -> bytes:
    return _sse(
        {
            "id": completion_id,
            "object": "chat.completion.chunk",
            "created": created,
            "model": model,
            "choices": [],
            "usage": _usage(prompt_tokens, completion_tokens),
        }
    )


async def stream_completion(
    fragments: AsyncIterable[str],
    *,
    model: str,
    prompt_tokens: int,
    include_usage: bool = False,
) -> AsyncGenerator[bytes, None]:
    """Reshape upstream text fragments into OpenAI chunk frames, in fixed order."""
    completion_id = generate_completion_id()
    created = current_timestamp()
    completion_tokens = 0
    emitted = False

    yield chat_completion_chunk(completion_id, created, model, {"role": "assistant"})
    try:
        async for fragment in fragments:
            emitted = True
            completion_tokens += estimate_tokens(fragment)
            yield chat_completion_chunk(completion_id, created, model, {"content": fragment})
    except BridgeError as exc:
        logger.warning(
            "upstream_stream_error model=%s error_type=%s error=%s",
            model,
            exc.__class__.__name__,
            exc.message,
        )
        yield _sse(exc.to_payload())
        yield STREAM_DONE
        return

    if not emitted:
        completion_tokens = estimate_tokens(FALLBACK_RESPONSE)
        yield chat_completion_chunk(
            completion_id, created, model, {"content": FALLBACK_RESPONSE}
        )
    yield chat_completion_chunk(completion_id, created, model, {}, finish_reason="stop")
    if include_usage:
        yield usage_chunk(completion_id, created, model, prompt_tokens, completion_tokens)
    yield STREAM_DONE


async def replay_completion(
    completion: dict[str, Any],
    *,
    include_usage: bool = False,
) -> AsyncGenerator[bytes, None]:
    """Stream an already-built completion, used when the reply had to be buffered."""
    completion_id = completion["id"]
    created = completion["created"]
    model = completion["model"]
    choice = completion["choices"][0]
    message = choice["message"]

    if message.get("tool_calls"):
        tool_calls = [
            {"index": index, **call} for index, call in enumerate(message["tool_calls"])
        ]
        yield chat_completion_chunk(
            completion_id,
            created,
            model,
            {"role": "assistant", "tool_calls": tool_calls},
        )
        yield chat_completion_chunk(
            completion_id, created, model, {}, finish_reason="tool_calls"
        )
    else:
        content = message.get("content") or ""
        yield chat_completion_chunk(completion_id, created, model, {"role": "assistant"})
        for start in range(0, len(content), REPLAY_CHUNK_CHARS):
            yield chat_completion_chunk(
                completion_id,
                created,
                model,
                {"content": content[start : start + REPLAY_CHUNK_CHARS]},
            )
        yield chat_completion_chunk(completion_id, created, model, {}, finish_reason="stop")

    if include_usage:
        usage = completion["usage"]
        yield usage_chunk(
            completion_id,
            created,
            model,
            usage["prompt_tokens"],
            usage["completion_tokens"],
        )
    yield STREAM_DONE
