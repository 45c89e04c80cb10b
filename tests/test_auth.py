from __future__ import annotations

from typing import TYPE_CHECKING, Any

from tests.client_test_utils import build_test_client

if TYPE_CHECKING:
    from pathlib import Path


def test_v1_models_allows_when_no_keys_configured(monkeypatch: Any, tmp_path: Path) -> None:
    with build_test_client(monkeypatch, tmp_path) as client:
        response = client.get("/v1/models")
        assert response.status_code == 200
        body = response.json()
        assert body["object"] == "list"
        ids = [item["id"] for item in body["data"]]
        assert "mistralai/Mistral-Small-24B-Instruct-2501" in ids
        assert all(item["owned_by"] == "duckai" for item in body["data"])


def test_v1_models_rejects_without_token_when_keys_configured(
    monkeypatch: Any, tmp_path: Path
) -> None:
    with build_test_client(monkeypatch, tmp_path, INGRESS_API_KEYS="bridge-key-1") as client:
        response = client.get("/v1/models")
        assert response.status_code == 401
        assert response.json()["error"] == {
            "message": "Missing Bearer token.",
            "type": "authentication_error",
            "param": None,
            "code": "invalid_api_key",
        }


def test_v1_models_rejects_wrong_key(monkeypatch: Any, tmp_path: Path) -> None:
    with build_test_client(monkeypatch, tmp_path, SERVER_API_KEY="secret") as client:
        response = client.get("/v1/models", headers={"Authorization": "Bearer nope"})
        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Incorrect API key."


def test_v1_models_accepts_any_configured_key(monkeypatch: Any, tmp_path: Path) -> None:
    with build_test_client(
        monkeypatch,
        tmp_path,
        INGRESS_API_KEYS="bridge-key-1,bridge-key-2",
        SERVER_API_KEY="server-key",
    ) as client:
        for key in ("bridge-key-2", "server-key"):
            response = client.get("/v1/models", headers={"Authorization": f"Bearer {key}"})
            assert response.status_code == 200


def test_health_is_public(monkeypatch: Any, tmp_path: Path) -> None:
    with build_test_client(monkeypatch, tmp_path, SERVER_API_KEY="secret") as client:
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}


def test_available_models_override(monkeypatch: Any, tmp_path: Path) -> None:
    with build_test_client(monkeypatch, tmp_path, AVAILABLE_MODELS="gpt-4o-mini, gpt-5-mini") as client:
        response = client.get("/v1/models")
        assert [item["id"] for item in response.json()["data"]] == ["gpt-4o-mini", "gpt-5-mini"]
