from __future__ import annotations

from typing import TYPE_CHECKING

from duck_bridge.utils.persistence import JsonFileStore

if TYPE_CHECKING:
    from pathlib import Path


def test_json_file_store_load_returns_default_when_missing(tmp_path: Path) -> None:
    path = tmp_path / "missing.json"
    store = JsonFileStore(path)
    payload = store.load(default={"ok": True})
    assert payload == {"ok": True}
    assert store.exists() is False


def test_json_file_store_write_and_load_round_trip(tmp_path: Path) -> None:
    path = tmp_path / "nested" / "state.json"
    store = JsonFileStore(path)
    original = {"requestTimestamps": [1, 2, 3], "isLimited": False}
    store.write(original)

    loaded = store.load(default={})
    assert loaded == original
    assert path.exists()
    assert [item.name for item in path.parent.iterdir()] == ["state.json"]


def test_json_file_store_treats_invalid_json_as_default(tmp_path: Path) -> None:
    path = tmp_path / "broken.json"
    path.write_text("{not json", encoding="utf-8")
    store = JsonFileStore(path)
    assert store.load(default=None) is None

    path.write_text("   ", encoding="utf-8")
    assert store.load(default={"fresh": True}) == {"fresh": True}


def test_json_file_store_treats_undecodable_bytes_as_default(tmp_path: Path) -> None:
    path = tmp_path / "binary.json"
    path.write_bytes(b"\xff\xfe\x00garbage")
    store = JsonFileStore(path)
    assert store.load(default={"fresh": True}) == {"fresh": True}
