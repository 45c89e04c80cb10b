from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from typing import Any

from duck_bridge.runtime.governor import RateGovernor
from duck_bridge.runtime.rate_state import InMemoryRateStateStore
from duck_bridge.service import ChatService


class _TrackedStream:
    def __init__(self, fragments: list[str]) -> None:
        self._fragments = fragments
        self.closed = False

    def __aiter__(self) -> AsyncIterator[str]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[str]:
        for fragment in self._fragments:
            yield fragment

    async def aclose(self) -> None:
        self.closed = True


class _FakeUpstream:
    def __init__(self, stream: _TrackedStream) -> None:
        self.stream = stream

    async def open_stream(self, model: str, messages: list[dict[str, str]]) -> _TrackedStream:
        return self.stream


def _service(stream: _TrackedStream) -> ChatService:
    upstream: Any = _FakeUpstream(stream)
    return ChatService(
        upstream,
        RateGovernor(InMemoryRateStateStore()),
        default_model="gpt-4o-mini",
        available_models=["gpt-4o-mini"],
    )


def _stream_request(service: ChatService) -> Any:
    return service.validate_request(
        {
            "model": "gpt-4o-mini",
            "stream": True,
            "messages": [{"role": "user", "content": "Hi"}],
        }
    )


def test_stream_closed_before_first_frame_releases_upstream() -> None:
    stream = _TrackedStream(["Hello"])
    service = _service(stream)

    async def run() -> None:
        frames = await service.create_chat_completion_stream(_stream_request(service))
        await frames.aclose()
        await frames.aclose()

    asyncio.run(run())

    assert stream.closed is True


def test_stream_closed_after_partial_read_releases_upstream() -> None:
    stream = _TrackedStream(["Hello", " there"])
    service = _service(stream)

    async def run() -> bytes:
        frames = await service.create_chat_completion_stream(_stream_request(service))
        first = await frames.__anext__()
        await frames.aclose()
        return first

    first = asyncio.run(run())

    assert first.startswith(b"data: ")
    assert stream.closed is True


def test_stream_drained_to_the_end_releases_upstream() -> None:
    stream = _TrackedStream(["Hello"])
    service = _service(stream)

    async def run() -> list[bytes]:
        frames = await service.create_chat_completion_stream(_stream_request(service))
        return [frame async for frame in frames]

    collected = asyncio.run(run())

    assert collected[-1] == b"data: [DONE]\n\n"
    assert stream.closed is True
