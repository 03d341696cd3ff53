import pytest
from fastapi.testclient import TestClient

import server
from botflow.backend import Backend
from botflow.errors import AuthError, RateLimitError
from botflow.reference_lookup import ReferenceLookup

from conftest import FakeLlm, FakeStore, make_document


@pytest.fixture
def client(monkeypatch):
    def install(llm=None, store=None):
        backend = Backend(validator=store or FakeStore(), llm_factory=lambda payload: llm or FakeLlm())
        monkeypatch.setattr(server, "backend", backend)
        return TestClient(server.app)

    return install


def test_refine_empty_errors(client):
    text = make_document().to_text()
    resp = client().post("/refine", json={"document": text, "errors": [], "iteration": 1})
    assert resp.status_code == 200
    assert resp.json()["document"] == text


def test_parse_failure_maps_to_422(client):
    resp = client(llm=FakeLlm("nothing useful")).post("/generate", json={"config": "x"})
    assert resp.status_code == 422
    assert resp.json()["attempted"][0] == "fenced_structured"


def test_schema_error_maps_to_422(client):
    resp = client().post("/validate", json={"document": "not a table", "artifactId": "Acme.Bot"})
    assert resp.status_code == 422


def test_rate_limit_maps_to_429(client):
    resp = client(llm=FakeLlm(RateLimitError("slow down", retry_after_seconds=42))).post("/generate", json={"config": "x"})
    assert resp.status_code == 429
    body = resp.json()
    assert body["isRateLimit"] is True
    assert body["retryAfterSeconds"] == 42


def test_auth_error_maps_to_401(client):
    resp = client(llm=FakeLlm(AuthError())).post("/generate", json={"config": "x"})
    assert resp.status_code == 401
    assert resp.json()["authError"] is True


def test_all_versions_locked_maps_to_409(client):
    store = FakeStore(tags=["v1"], locked={"Acme.Bot.v1", "Acme.Bot.v2"})
    resp = client(store=store).post("/validate", json={"document": make_document().to_text(), "artifactId": "Acme.Bot"})
    assert resp.status_code == 409
    assert resp.json()["probedVersions"] == ["Acme.Bot.v1", "Acme.Bot.v2"]


def test_bad_artifact_id_maps_to_400(client):
    resp = client().post("/publish", json={"document": make_document().to_text(), "artifactId": "bad id"})
    assert resp.status_code == 400


def test_validate_accepted(client):
    resp = client(store=FakeStore(tags=["v3"])).post(
        "/validate", json={"document": make_document().to_text(), "artifactId": "Acme.Bot"}
    )
    assert resp.json() == {"accepted": True, "versionId": "Acme.Bot.v3"}


def test_internal_value_error_is_not_a_client_error(monkeypatch):
    backend = Backend(validator=FakeStore(), llm_factory=lambda payload: FakeLlm(ValueError("bad model output")))
    monkeypatch.setattr(server, "backend", backend)
    resp = TestClient(server.app, raise_server_exceptions=False).post("/generate", json={"config": "x"})
    assert resp.status_code == 500


def test_malformed_scripts_map_to_400(client):
    resp = client().post(
        "/publish",
        json={"document": make_document().to_text(), "artifactId": "Acme.Bot", "scripts": [{"content": "x"}]},
    )
    assert resp.status_code == 400


def test_build_backend_wires_reference_lookup(monkeypatch):
    monkeypatch.setattr(server, "REFERENCE_BASE_URL", "https://docs.test/mcp")
    assert isinstance(server.build_backend().reference, ReferenceLookup)
    monkeypatch.setattr(server, "REFERENCE_BASE_URL", "")
    assert server.build_backend().reference is None
