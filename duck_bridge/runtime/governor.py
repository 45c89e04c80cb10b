from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from duck_bridge.runtime.rate_state import RateLimitWindow, RateStateStore

logger = logging.getLogger("uvicorn.error")


def _wall_clock_ms() -> float:
    return time.time() * 1000.0


async def _sleep_ms(milliseconds: float) -> None:
    await asyncio.sleep(milliseconds / 1000.0)


@dataclass(slots=True)
class GovernorConfig:
    max_requests: int = 20
    window_ms: int = 60_000
    min_interval_ms: int = 1_000
    buffer_ms: int = 100


class RateGovernor:
    """Sliding-window pacing for outgoing upstream calls.

    The window lives in a shared ``RateStateStore`` so that several worker
    processes draw from the same budget. The store is reloaded before every
    admission decision and rewritten after every admission. Admissions in one
    process are serialized; across processes the read-modify-write is not
    atomic, so concurrent workers can briefly exceed the cap.
    """

    def __init__(
        self,
        store: RateStateStore,
        config: GovernorConfig | None = None,
        *,
        clock: Callable[[], float] = _wall_clock_ms,
        sleep: Callable[[float], Awaitable[None]] = _sleep_ms,
    ) -> None:
        self._store = store
        self._config = config or GovernorConfig()
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._window = RateLimitWindow()

    @property
    def config(self) -> GovernorConfig:
        return self._config

    async def admit(self) -> None:
        async with self._lock:
            while True:
                await self._reload()
                wait_ms = self._compute_wait_ms(self._clock())
                if wait_ms <= 0:
                    break
                logger.info(
                    "rate_governor_wait wait_ms=%d window=%d/%d",
                    int(wait_ms),
                    len(self._window.request_timestamps),
                    self._config.max_requests,
                )
                await self._sleep(wait_ms)

            now = int(self._clock())
            self._window.request_timestamps.append(now)
            self._window.last_request_time = now
            self._window.purge(now, self._config.window_ms)
            await self._store.write(self._window)
            logger.info(
                "rate_governor_admitted window=%d/%d limited=%s",
                len(self._window.request_timestamps),
                self._config.max_requests,
                self._window.is_limited,
            )

    async def status(self) -> dict[str, Any]:
        await self._reload()
        now = self._clock()
        timestamps = self._window.request_timestamps
        time_until_reset = 0.0
        if timestamps:
            time_until_reset = max(0.0, timestamps[0] + self._config.window_ms - now)
        return {
            "requests_in_current_window": len(timestamps),
            "max_requests_per_minute": self._config.max_requests,
            "time_until_window_reset_ms": int(time_until_reset),
            "is_currently_limited": self._window.is_limited,
            "retry_after_ms": self._window.retry_after,
            "recommended_wait_ms": int(self._compute_wait_ms(now)),
        }

    async def mark_rate_limited(self, retry_after_ms: int) -> None:
        async with self._lock:
            await self._reload()
            self._window.is_limited = True
            self._window.retry_after = int(retry_after_ms)
            await self._store.write(self._window)

    async def clear_rate_limited(self) -> None:
        async with self._lock:
            await self._reload()
            if not self._window.is_limited and self._window.retry_after is None:
                return
            self._window.is_limited = False
            self._window.retry_after = None
            await self._store.write(self._window)

    async def _reload(self) -> None:
        stored = await self._store.read()
        if stored is not None:
            self._window = stored
        self._window.purge(self._clock(), self._config.window_ms)

    def _compute_wait_ms(self, now: float) -> float:
        timestamps = self._window.request_timestamps
        if timestamps and len(timestamps) >= self._config.max_requests:
            wait = timestamps[0] + self._config.window_ms - now + self._config.buffer_ms
            return max(0.0, wait)

        since_last = now - self._window.last_request_time
        if since_last < self._config.min_interval_ms:
            return max(0.0, self._config.min_interval_ms - since_last)
        return 0.0
