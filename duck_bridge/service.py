from __future__ import annotations

import logging
from collections.abc import AsyncGenerator, Sequence
from typing import Any

from duck_bridge.models import ChatRequest, validate_chat_request
from duck_bridge.runtime.governor import RateGovernor
from duck_bridge.tools import FunctionRegistry, ToolCallEmulator
from duck_bridge.translator import (
    build_completion,
    current_timestamp,
    estimate_tokens,
    prompt_text,
    replay_completion,
    stream_completion,
    to_upstream_messages,
)
from duck_bridge.upstream.client import UpstreamClient, UpstreamStream

logger = logging.getLogger("uvicorn.error")


class FrameStream:
    """SSE frames for one response, tied to the upstream reply feeding them.

    ``aclose()`` may be called at any point, including before the first frame
    is pulled, and always releases the upstream connection.
    """

    def __init__(
        self,
        frames: AsyncGenerator[bytes, None],
        *,
        upstream: UpstreamStream | None = None,
    ) -> None:
        self._frames = frames
        self._upstream = upstream
        self._closed = False

    def __aiter__(self) -> FrameStream:
        return self

    async def __anext__(self) -> bytes:
        try:
            return await self._frames.__anext__()
        except BaseException:
            await self.aclose()
            raise

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._frames.aclose()
        finally:
            if self._upstream is not None:
                await self._upstream.aclose()


class ChatService:
    """Glue between the HTTP layer and the upstream bridge."""

    def __init__(
        self,
        upstream: UpstreamClient,
        governor: RateGovernor,
        *,
        default_model: str,
        available_models: Sequence[str],
        emulator: ToolCallEmulator | None = None,
        registry: FunctionRegistry | None = None,
    ) -> None:
        self._upstream = upstream
        self._governor = governor
        self._default_model = default_model
        self._available_models = list(available_models)
        self._emulator = emulator or ToolCallEmulator()
        self._registry = registry or FunctionRegistry()

    @property
    def registry(self) -> FunctionRegistry:
        return self._registry

    def validate_request(self, payload: Any) -> ChatRequest:
        return validate_chat_request(payload, default_model=self._default_model)

    async def create_chat_completion(self, request: ChatRequest) -> dict[str, Any]:
        if self._emulator.should_emulate(request.tools, request.tool_choice):
            return await self._complete_with_tools(request)

        upstream_messages = to_upstream_messages(request.messages)
        content = await self._upstream.chat(request.model, upstream_messages)
        return build_completion(
            model=request.model,
            content=content,
            prompt_tokens=estimate_tokens(prompt_text(upstream_messages)),
        )

    async def create_chat_completion_stream(self, request: ChatRequest) -> FrameStream:
        """Start a streamed completion.

        Everything that can fail before the first byte (admission, challenge,
        upstream status) happens while this coroutine is awaited, so callers
        can still answer with a proper HTTP error. Tool requests are buffered
        because the reply has to be inspected before it can be framed.
        """
        if self._emulator.should_emulate(request.tools, request.tool_choice):
            completion = await self._complete_with_tools(request)
            return FrameStream(replay_completion(completion, include_usage=request.include_usage))

        upstream_messages = to_upstream_messages(request.messages)
        stream = await self._upstream.open_stream(request.model, upstream_messages)
        frames = stream_completion(
            stream,
            model=request.model,
            prompt_tokens=estimate_tokens(prompt_text(upstream_messages)),
            include_usage=request.include_usage,
        )
        return FrameStream(frames, upstream=stream)

    async def _complete_with_tools(self, request: ChatRequest) -> dict[str, Any]:
        tools = request.tools or []
        tool_prompt = self._emulator.build_prompt(tools, request.tool_choice)
        upstream_messages = to_upstream_messages(request.messages, tool_prompt=tool_prompt)
        content = await self._upstream.chat(request.model, upstream_messages)

        tool_calls = self._emulator.extract(content, tools)
        if not tool_calls and self._emulator.requires_call(tools, request.tool_choice):
            tool_calls = [self._emulator.force_call(tools, request.tool_choice, request.messages)]
        logger.info(
            "tool_emulation model=%s tools=%d tool_calls=%d",
            request.model,
            len(tools),
            len(tool_calls),
        )
        return build_completion(
            model=request.model,
            content=content,
            prompt_tokens=estimate_tokens(prompt_text(upstream_messages)),
            tool_calls=tool_calls or None,
        )

    def list_models(self) -> dict[str, Any]:
        created = current_timestamp()
        return {
            "object": "list",
            "data": [
                {
                    "id": model_id,
                    "object": "model",
                    "created": created,
                    "owned_by": "duckai",
                }
                for model_id in self._available_models
            ],
        }

    async def rate_limit_status(self) -> dict[str, Any]:
        return await self._governor.status()

    def execute_tool_call(self, tool_call: dict[str, Any]) -> str:
        return self._registry.execute(tool_call)
