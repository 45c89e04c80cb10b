from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

from redis.asyncio import from_url as redis_from_url
from redis.exceptions import RedisError

from duck_bridge.utils.persistence import JsonFileStore

_logger = logging.getLogger("uvicorn.error")


@dataclass(slots=True)
class RateLimitWindow:
    request_timestamps: list[int] = field(default_factory=list)
    last_request_time: int = 0
    is_limited: bool = False
    retry_after: int | None = None

    def purge(self, now_ms: float, window_ms: int) -> None:
        cutoff = now_ms - window_ms
        self.request_timestamps = [ts for ts in self.request_timestamps if ts > cutoff]

    def to_record(self) -> dict[str, Any]:
        record: dict[str, Any] = {
            "requestTimestamps": list(self.request_timestamps),
            "lastRequestTime": self.last_request_time,
            "isLimited": self.is_limited,
        }
        if self.retry_after is not None:
            record["retryAfter"] = self.retry_after
        return record

    @classmethod
    def from_record(cls, record: Any) -> RateLimitWindow | None:
        """Parse a persisted record; returns None for anything unrecognizable."""
        if not isinstance(record, dict):
            return None

        last_request_time = _as_int(record.get("lastRequestTime")) or 0
        is_limited = bool(record.get("isLimited", False))
        retry_after = _as_int(record.get("retryAfter"))

        # Fixed-window records from older releases carry no usable timestamps.
        if "requestCount" in record and "windowStart" in record:
            return cls(
                request_timestamps=[],
                last_request_time=last_request_time,
                is_limited=is_limited,
                retry_after=retry_after,
            )

        raw_timestamps = record.get("requestTimestamps")
        timestamps: list[int] = []
        if isinstance(raw_timestamps, list):
            for item in raw_timestamps:
                value = _as_int(item)
                if value is not None:
                    timestamps.append(value)
        timestamps.sort()
        return cls(
            request_timestamps=timestamps,
            last_request_time=last_request_time,
            is_limited=is_limited,
            retry_after=retry_after,
        )


class RateStateStore(Protocol):
    async def read(self) -> RateLimitWindow | None: ...

    async def write(self, window: RateLimitWindow) -> None: ...


class FileRateStateStore:
    """Window shared through a JSON file that every worker process reads and rewrites."""

    def __init__(self, path: str | Path) -> None:
        self._file = JsonFileStore(path)

    @property
    def path(self) -> Path:
        return self._file.path

    async def read(self) -> RateLimitWindow | None:
        try:
            payload = await asyncio.to_thread(self._file.load, default=None)
        except (OSError, ValueError) as exc:
            _logger.warning("rate_state_file_unavailable op=read path=%s error=%s", self.path, exc)
            return None
        return RateLimitWindow.from_record(payload)

    async def write(self, window: RateLimitWindow) -> None:
        try:
            await asyncio.to_thread(self._file.write, window.to_record())
        except OSError as exc:
            _logger.warning(
                "rate_state_file_unavailable op=write path=%s error=%s", self.path, exc
            )


class InMemoryRateStateStore:
    def __init__(self, window: RateLimitWindow | None = None) -> None:
        self._record = window.to_record() if window is not None else None

    async def read(self) -> RateLimitWindow | None:
        return RateLimitWindow.from_record(self._record)

    async def write(self, window: RateLimitWindow) -> None:
        self._record = window.to_record()


class RedisRateStateStore:
    """Window kept under one Redis key so workers on several hosts share it.

    Redis outages degrade to a fresh window rather than failing admissions.
    """

    def __init__(self, redis_client: Any, key: str) -> None:
        self._redis = redis_client
        self._key = key

    async def read(self) -> RateLimitWindow | None:
        try:
            raw = await self._redis.get(self._key)
        except RedisError as exc:
            _logger.warning("rate_state_redis_unavailable op=read error=%s", exc)
            return None
        if raw is None:
            return None
        try:
            decoded = raw.decode("utf-8") if isinstance(raw, bytes) else raw
            payload = json.loads(decoded)
        except (UnicodeDecodeError, ValueError):
            return None
        return RateLimitWindow.from_record(payload)

    async def write(self, window: RateLimitWindow) -> None:
        payload = json.dumps(window.to_record(), separators=(",", ":"))
        try:
            await self._redis.set(self._key, payload)
        except RedisError as exc:
            _logger.warning("rate_state_redis_unavailable op=write error=%s", exc)

    async def close(self) -> None:
        await self._redis.aclose()


def build_rate_state_store(
    *,
    path: str | Path,
    redis_url: str | None = None,
    redis_key: str = "duck_bridge:rate_limit",
    logger: logging.Logger | None = None,
) -> RateStateStore:
    if not redis_url:
        if logger is not None:
            logger.info("rate_state_store backend=file path=%s", path)
        return FileRateStateStore(path)

    client = redis_from_url(redis_url, decode_responses=False)
    if logger is not None:
        logger.info("rate_state_store backend=redis key=%s", redis_key)
    return RedisRateStateStore(redis_client=client, key=redis_key)


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str):
        try:
            return int(float(value.strip()))
        except ValueError:
            return None
    return None
