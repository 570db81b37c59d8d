"""Tests for storegate/main.py – FastAPI routes, dependencies and error mapping."""

from __future__ import annotations

import base64
from collections.abc import Iterator
from unittest.mock import patch

import httpx
import pytest
from fastapi.testclient import TestClient

from storegate.config import Settings
from storegate.errors import ErrorKind, StoreGateError
from storegate.main import (
    StorageProvider,
    app,
    get_optional_storage,
    get_settings,
    get_storage,
    load_backend,
)
from storegate.retrieve import retrieve
from tests.fakes import GATEWAY, FakeBackend, gateway_transport


def _settings(**overrides) -> Settings:
    values = {
        "private_key": "server-key",
        "delegation": "server-delegation",
        "gateway_url": GATEWAY,
        "allowed_url_domains": ("example.com",),
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture()
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture()
def settings() -> Settings:
    return _settings()


@pytest.fixture()
def client(settings: Settings, backend: FakeBackend) -> Iterator[TestClient]:
    provider = StorageProvider(settings, backend)
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_storage] = lambda: provider
    app.dependency_overrides[get_optional_storage] = lambda: provider
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode()


# ── /api/health ──────────────────────────────────────────────────────────────


class TestHealth:
    def test_reports_version(self, client: TestClient) -> None:
        resp = client.get("/api/health")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "ok"
        assert body["version"] == app.version
        assert body["connected"] is False

    def test_connected_after_first_upload(self, client: TestClient) -> None:
        client.post("/api/upload", json={"file": _b64(b"x"), "name": "x.txt"})
        assert client.get("/api/health").json()["connected"] is True

    def test_without_backend(self) -> None:
        app.dependency_overrides[get_optional_storage] = lambda: None
        try:
            resp = TestClient(app).get("/api/health")
        finally:
            app.dependency_overrides.clear()
        assert resp.status_code == 200
        assert resp.json()["connected"] is False


# ── /api/upload ──────────────────────────────────────────────────────────────


class TestUpload:
    def test_inline_upload(self, client: TestClient, backend: FakeBackend) -> None:
        resp = client.post("/api/upload", json={"file": _b64(b"hello"), "name": "hello.txt"})
        assert resp.status_code == 200
        body = resp.json()
        assert set(body["files"]) == {"hello.txt"}
        assert body["url"] == f"{GATEWAY}/ipfs/{body['root']}"
        assert backend.connect_calls[0]["delegation"] == "server-delegation"
        assert backend.connect_calls[0]["headers"]["X-Client"].startswith("storegate/")

    def test_default_facade_is_reused(self, client: TestClient, backend: FakeBackend) -> None:
        for name in ("a.txt", "b.txt"):
            client.post("/api/upload", json={"file": _b64(b"x"), "name": name})
        assert len(backend.connect_calls) == 1

    def test_request_delegation_gets_own_client(self, client: TestClient, backend: FakeBackend) -> None:
        resp = client.post(
            "/api/upload",
            json={"file": _b64(b"x"), "name": "x.txt", "delegation": "caller-delegation"},
        )
        assert resp.status_code == 200
        assert backend.connect_calls[-1]["delegation"] == "caller-delegation"
        assert client.get("/api/health").json()["connected"] is False

    def test_request_gateway_used_in_url(self, client: TestClient) -> None:
        resp = client.post(
            "/api/upload",
            json={"file": _b64(b"x"), "name": "x.txt", "gateway_url": "https://other.gw"},
        )
        assert resp.json()["url"].startswith("https://other.gw/ipfs/")

    def test_publish_flag_passed_to_backend(self, client: TestClient, backend: FakeBackend) -> None:
        client.post("/api/upload", json={"file": _b64(b"x"), "name": "x.txt", "publish_to_filecoin": True})
        assert backend.client.uploads[0]["publish_to_filecoin"] is True
        assert backend.client.uploads[0]["retries"] == 3

    @pytest.mark.parametrize(
        "body",
        [
            {"name": "x.txt"},
            {"name": "x.txt", "file": _b64(b"x"), "url": "https://example.com/x"},
            {"name": "", "file": _b64(b"x")},
            {"name": "x.txt", "file": "not base64!"},
        ],
    )
    def test_invalid_body_422(self, client: TestClient, body: dict) -> None:
        assert client.post("/api/upload", json=body).status_code == 422

    def test_url_domain_rejected_403(self, client: TestClient, backend: FakeBackend) -> None:
        resp = client.post("/api/upload", json={"url": "https://evil.net/x", "name": "x.bin"})
        assert resp.status_code == 403
        assert resp.json()["kind"] == "domain_not_allowed"
        assert backend.client.uploads == []

    def test_url_scheme_rejected_403(self, client: TestClient) -> None:
        resp = client.post("/api/upload", json={"url": "ftp://example.com/x", "name": "x.bin"})
        assert resp.status_code == 403
        assert resp.json()["kind"] == "scheme_not_allowed"


class TestUploadErrors:
    def test_missing_delegation_401(self, backend: FakeBackend) -> None:
        settings = _settings(delegation=None)
        app.dependency_overrides[get_settings] = lambda: settings
        app.dependency_overrides[get_storage] = lambda: StorageProvider(settings, backend)
        try:
            resp = TestClient(app).post("/api/upload", json={"file": _b64(b"x"), "name": "x.txt"})
        finally:
            app.dependency_overrides.clear()
        assert resp.status_code == 401
        body = resp.json()
        assert body["kind"] == "missing_credential"
        assert "DELEGATION" in body["message"]
        assert backend.connect_calls == []

    def test_inline_too_large_403(self, backend: FakeBackend) -> None:
        settings = _settings(max_file_size=3)
        app.dependency_overrides[get_settings] = lambda: settings
        app.dependency_overrides[get_storage] = lambda: StorageProvider(settings, backend)
        try:
            resp = TestClient(app).post("/api/upload", json={"file": _b64(b"hello"), "name": "x.txt"})
        finally:
            app.dependency_overrides.clear()
        assert resp.status_code == 403
        assert resp.json()["kind"] == "file_too_large"

    def test_default_client_recovers_after_failed_connect(self, settings: Settings) -> None:
        """A connection failure on one request does not stick to later ones."""
        backend = FakeBackend(fail_with=RuntimeError("temporarily unavailable"))
        provider = StorageProvider(settings, backend)
        app.dependency_overrides[get_settings] = lambda: settings
        app.dependency_overrides[get_storage] = lambda: provider
        body = {"file": _b64(b"x"), "name": "x.txt"}
        try:
            with TestClient(app) as client:
                first = client.post("/api/upload", json=body)
                backend.fail_with = None
                second = client.post("/api/upload", json=body)
                third = client.post("/api/upload", json=body)
        finally:
            app.dependency_overrides.clear()
        assert first.status_code == 502
        assert second.status_code == 200
        assert third.status_code == 200
        assert len(backend.connect_calls) == 2
        assert provider.default_connected

    def test_backend_connect_failure_502(self, settings: Settings) -> None:
        failing = FakeBackend(fail_with=RuntimeError("service unavailable"))
        app.dependency_overrides[get_settings] = lambda: settings
        app.dependency_overrides[get_storage] = lambda: StorageProvider(settings, failing)
        try:
            resp = TestClient(app).post("/api/upload", json={"file": _b64(b"x"), "name": "x.txt"})
        finally:
            app.dependency_overrides.clear()
        assert resp.status_code == 502
        body = resp.json()
        assert body["name"] == "StoreGateError"
        assert body["kind"] == "backend_error"
        assert body["cause"] == "service unavailable"


# ── /api/retrieve ────────────────────────────────────────────────────────────


class TestRetrieve:
    def test_round_trip(self, client: TestClient, backend: FakeBackend) -> None:
        payload = b"stored and served\n" * 12
        root = client.post("/api/upload", json={"file": _b64(payload), "name": "notes.txt"}).json()["root"]

        async def fake_retrieve(filepath, gateway_url, **kwargs):
            async with httpx.AsyncClient(transport=gateway_transport(backend.client.dag)) as http:
                return await retrieve(filepath, gateway_url, client=http, **kwargs)

        with patch("storegate.main.retrieve", new=fake_retrieve):
            resp = client.post("/api/retrieve", json={"filepath": f"/ipfs/{root}/notes.txt"})

        assert resp.status_code == 200
        body = resp.json()
        assert base64.b64decode(body["data"]) == payload
        assert body["mime_type"] == "text/plain"

    def test_invalid_path_400(self, client: TestClient) -> None:
        resp = client.post("/api/retrieve", json={"filepath": "https://example.com/x"})
        assert resp.status_code == 400
        assert resp.json()["kind"] == "invalid_path"

    def test_gateway_error_502(self, client: TestClient) -> None:
        error = StoreGateError(ErrorKind.GATEWAY_ERROR, "Error fetching file: 500 Internal Server Error")
        with patch("storegate.main.retrieve", side_effect=error):
            resp = client.post("/api/retrieve", json={"filepath": "x/y"})
        assert resp.status_code == 502
        assert resp.json()["message"] == "Error fetching file: 500 Internal Server Error"

    def test_missing_file_404(self, client: TestClient) -> None:
        error = StoreGateError(ErrorKind.PATH_NOT_FOUND, "file does not exist: x/y")
        with patch("storegate.main.retrieve", side_effect=error):
            resp = client.post("/api/retrieve", json={"filepath": "x/y"})
        assert resp.status_code == 404


# ── backend loading ──────────────────────────────────────────────────────────


class TestLoadBackend:
    def test_loads_factory(self) -> None:
        assert isinstance(load_backend("tests.fakes:FakeBackend"), FakeBackend)

    @pytest.mark.parametrize("target", ["tests.fakes", "no.such.module:factory", "tests.fakes:missing"])
    def test_bad_target(self, target: str) -> None:
        with pytest.raises(StoreGateError) as exc_info:
            load_backend(target)
        assert exc_info.value.kind is ErrorKind.BACKEND_ERROR
