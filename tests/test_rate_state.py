from __future__ import annotations

import asyncio
import json
import logging
from typing import TYPE_CHECKING, Any

from redis.exceptions import ConnectionError as RedisConnectionError

from duck_bridge.runtime.rate_state import (
    FileRateStateStore,
    RateLimitWindow,
    RedisRateStateStore,
    build_rate_state_store,
)

if TYPE_CHECKING:
    from pathlib import Path


class _FakeRedis:
    def __init__(self) -> None:
        self.values: dict[str, bytes] = {}
        self.closed = False

    async def get(self, key: str) -> bytes | None:
        return self.values.get(key)

    async def set(self, key: str, value: str) -> None:
        self.values[key] = value.encode("utf-8")

    async def aclose(self) -> None:
        self.closed = True


class _BrokenRedis:
    async def get(self, key: str) -> Any:
        raise RedisConnectionError("connection refused")

    async def set(self, key: str, value: str) -> None:
        raise RedisConnectionError("connection refused")


def test_window_record_uses_camel_case_keys() -> None:
    window = RateLimitWindow(
        request_timestamps=[1_000, 2_000],
        last_request_time=2_000,
        is_limited=True,
        retry_after=30_000,
    )
    assert window.to_record() == {
        "requestTimestamps": [1_000, 2_000],
        "lastRequestTime": 2_000,
        "isLimited": True,
        "retryAfter": 30_000,
    }
    assert "retryAfter" not in RateLimitWindow().to_record()


def test_from_record_converts_legacy_fixed_window_format() -> None:
    window = RateLimitWindow.from_record(
        {
            "requestCount": 7,
            "windowStart": 1_700_000_000_000,
            "lastRequestTime": 1_700_000_005_000,
            "isLimited": True,
            "retryAfter": 5_000,
        }
    )
    assert window is not None
    assert window.request_timestamps == []
    assert window.last_request_time == 1_700_000_005_000
    assert window.is_limited is True
    assert window.retry_after == 5_000


def test_from_record_rejects_garbage_and_sorts_timestamps() -> None:
    assert RateLimitWindow.from_record(None) is None
    assert RateLimitWindow.from_record([1, 2, 3]) is None

    window = RateLimitWindow.from_record(
        {"requestTimestamps": [300, "100", None, 200.0, True], "lastRequestTime": 300}
    )
    assert window is not None
    assert window.request_timestamps == [100, 200, 300]


def test_purge_drops_entries_at_or_before_window_start() -> None:
    window = RateLimitWindow(request_timestamps=[0, 1_000, 40_000, 61_000])
    window.purge(now_ms=61_000, window_ms=60_000)
    assert window.request_timestamps == [40_000, 61_000]


def test_file_store_round_trip_and_unreadable_file(tmp_path: Path) -> None:
    path = tmp_path / "rate.json"
    store = FileRateStateStore(path)
    assert asyncio.run(store.read()) is None

    asyncio.run(store.write(RateLimitWindow(request_timestamps=[5], last_request_time=5)))
    assert json.loads(path.read_text(encoding="utf-8"))["requestTimestamps"] == [5]
    loaded = asyncio.run(store.read())
    assert loaded is not None
    assert loaded.last_request_time == 5

    path.write_text("definitely not json", encoding="utf-8")
    assert asyncio.run(store.read()) is None


def test_redis_store_round_trip() -> None:
    redis_client = _FakeRedis()
    store = RedisRateStateStore(redis_client=redis_client, key="bridge:test")

    assert asyncio.run(store.read()) is None
    asyncio.run(store.write(RateLimitWindow(request_timestamps=[10, 20], last_request_time=20)))
    assert json.loads(redis_client.values["bridge:test"])["lastRequestTime"] == 20

    loaded = asyncio.run(store.read())
    assert loaded is not None
    assert loaded.request_timestamps == [10, 20]

    asyncio.run(store.close())
    assert redis_client.closed is True


def test_redis_store_degrades_when_redis_is_down(caplog: Any) -> None:
    store = RedisRateStateStore(redis_client=_BrokenRedis(), key="bridge:test")
    with caplog.at_level(logging.WARNING):
        assert asyncio.run(store.read()) is None
        asyncio.run(store.write(RateLimitWindow()))
    assert "rate_state_redis_unavailable" in caplog.text


def test_build_rate_state_store_defaults_to_file(tmp_path: Path) -> None:
    store = build_rate_state_store(path=tmp_path / "rate.json")
    assert isinstance(store, FileRateStateStore)
    assert store.path == tmp_path / "rate.json"


def test_file_store_reads_binary_garbage_as_absent(tmp_path: Path) -> None:
    path = tmp_path / "rate.json"
    path.write_bytes(b"\xff\xfe\x00garbage")
    assert asyncio.run(FileRateStateStore(path).read()) is None


def test_file_store_degrades_when_path_is_unusable(tmp_path: Path, caplog: Any) -> None:
    path = tmp_path / "dir_as_file"
    path.mkdir()
    store = FileRateStateStore(path)

    with caplog.at_level(logging.WARNING):
        assert asyncio.run(store.read()) is None
        asyncio.run(store.write(RateLimitWindow(request_timestamps=[1])))

    assert "rate_state_file_unavailable op=read" in caplog.text
    assert "rate_state_file_unavailable op=write" in caplog.text
    assert path.is_dir()
    assert [item.name for item in tmp_path.iterdir()] == ["dir_as_file"]
