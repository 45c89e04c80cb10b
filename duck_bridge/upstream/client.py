from __future__ import annotations

import json
import logging
import math
from collections.abc import AsyncIterator, Callable, Iterable
from typing import Any

import httpx

from duck_bridge.errors import RateLimitedError, UpstreamError, UpstreamUnavailableError
from duck_bridge.runtime.governor import RateGovernor
from duck_bridge.upstream.challenge import CHALLENGE_HEADER, ChallengeSolver
from duck_bridge.upstream.user_agents import random_user_agent

logger = logging.getLogger("uvicorn.error")

EVENT_PREFIX = "data: "
DEFAULT_RETRY_AFTER_SECONDS = 60.0
MAX_RETRY_AFTER_SECONDS = 86_400.0


def parse_retry_after_seconds(
    headers: httpx.Headers, default_seconds: float = DEFAULT_RETRY_AFTER_SECONDS
) -> float:
    raw = headers.get("retry-after")
    if not raw or not raw.strip():
        return default_seconds
    try:
        seconds = float(raw.strip())
    except ValueError:
        return default_seconds
    if not math.isfinite(seconds) or seconds < 0:
        return default_seconds
    return min(seconds, MAX_RETRY_AFTER_SECONDS)


def parse_event_line(line: str) -> dict[str, Any] | None:
    """Decode one upstream event line; anything that is not a JSON data object is noise."""
    if not line.startswith(EVENT_PREFIX):
        return None
    payload = line[len(EVENT_PREFIX) :].strip()
    if not payload or payload == "[DONE]":
        return None
    try:
        parsed = json.loads(payload)
    except ValueError:
        return None
    if isinstance(parsed, dict):
        return parsed
    return None


def _raise_for_error_payload(payload: Any) -> None:
    if isinstance(payload, dict) and payload.get("action") == "error":
        raise UpstreamError(
            f"Duck.ai error: {json.dumps(payload, separators=(',', ':'))}",
            status=_as_status(payload.get("status")),
        )


def _as_status(value: Any) -> int | None:
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    return None


def extract_messages(lines: Iterable[str]) -> str:
    parts: list[str] = []
    for line in lines:
        event = parse_event_line(line)
        if event is None:
            continue
        _raise_for_error_payload(event)
        message = event.get("message")
        if isinstance(message, str) and message:
            parts.append(message)
    return "".join(parts)


class UpstreamStream:
    """Live upstream reply: async iterator of text fragments bound to one HTTP response."""

    def __init__(self, response: httpx.Response) -> None:
        self._response = response
        self._closed = False

    def __aiter__(self) -> AsyncIterator[str]:
        return self._iter_fragments()

    async def _iter_fragments(self) -> AsyncIterator[str]:
        try:
            async for line in self._response.aiter_lines():
                event = parse_event_line(line)
                if event is None:
                    continue
                _raise_for_error_payload(event)
                message = event.get("message")
                if isinstance(message, str) and message:
                    yield message
        except httpx.RequestError as exc:
            logger.warning(
                "upstream_stream_error url=%s error=%s",
                self._response.request.url,
                exc,
            )
            raise UpstreamUnavailableError(f"Upstream stream interrupted: {exc}") from exc
        finally:
            await self.aclose()

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._response.aclose()


class UpstreamClient:
    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        governor: RateGovernor,
        solver: ChallengeSolver,
        chat_url: str,
        fe_version: str,
        user_agent_factory: Callable[[], str] = random_user_agent,
    ) -> None:
        self._client = client
        self._governor = governor
        self._solver = solver
        self._chat_url = chat_url
        self._fe_version = fe_version
        self._user_agent_factory = user_agent_factory

    async def chat(self, model: str, messages: list[dict[str, str]]) -> str:
        response = await self._send(model, messages, stream=False)
        try:
            text = response.text
        finally:
            await response.aclose()

        try:
            whole_body = json.loads(text)
        except ValueError:
            whole_body = None
        _raise_for_error_payload(whole_body)

        return extract_messages(text.split("\n")).strip()

    async def open_stream(self, model: str, messages: list[dict[str, str]]) -> UpstreamStream:
        response = await self._send(model, messages, stream=True)
        return UpstreamStream(response)

    async def _send(
        self,
        model: str,
        messages: list[dict[str, str]],
        *,
        stream: bool,
    ) -> httpx.Response:
        await self._governor.admit()

        user_agent = self._user_agent_factory()
        token = await self._solver.solve(user_agent)
        logger.info(
            "upstream_chat_start model=%s messages=%d stream=%s",
            model,
            len(messages),
            stream,
        )

        request = self._client.build_request(
            "POST",
            self._chat_url,
            headers=self._chat_headers(user_agent, token),
            json={"model": model, "messages": messages},
        )
        try:
            response = await self._client.send(request, stream=stream)
        except httpx.RequestError as exc:
            raise UpstreamUnavailableError(f"Failed to reach upstream chat endpoint: {exc}") from exc

        if response.status_code == 429:
            retry_after = parse_retry_after_seconds(response.headers)
            await response.aclose()
            await self._governor.mark_rate_limited(int(retry_after * 1000))
            logger.warning(
                "upstream_rate_limited model=%s retry_after_seconds=%.1f",
                model,
                retry_after,
            )
            raise RateLimitedError(retry_after)

        if response.status_code >= 400:
            if stream:
                await response.aread()
            await response.aclose()
            logger.warning(
                "upstream_chat_error model=%s status=%d",
                model,
                response.status_code,
            )
            raise UpstreamError(
                f"DuckAI API error: {response.status_code} {response.reason_phrase}",
                status=response.status_code,
            )

        if not stream:
            await response.aread()
        await self._governor.clear_rate_limited()
        return response

    def _chat_headers(self, user_agent: str, token: str) -> dict[str, str]:
        return {
            "accept": "text/event-stream",
            "accept-language": "en-US,en;q=0.9",
            "cache-control": "no-cache",
            "content-type": "application/json",
            "pragma": "no-cache",
            "priority": "u=1, i",
            "referer": "https://duckduckgo.com/",
            "sec-fetch-dest": "empty",
            "sec-fetch-mode": "cors",
            "sec-fetch-site": "same-origin",
            "x-fe-version": self._fe_version,
            "user-agent": user_agent,
            CHALLENGE_HEADER: token,
        }
