import httpx
import pytest
import respx

from botflow.errors import (
    ArtifactNotFoundError,
    AuthError,
    InvalidRequestError,
    NetworkError,
    RateLimitError,
    RemoteServiceError,
)
from botflow.validator_client import (
    ACCEPTED,
    CONTENT_ERRORS,
    VERSION_LOCKED,
    ArtifactVersion,
    ValidatorClient,
    is_lock_message,
    tag_number,
)

BASE = "https://botmanager.test/api"


@pytest.fixture
def client():
    c = ValidatorClient(BASE, token="test-token", retry_delay=0)
    yield c
    c.close()


@respx.mock
def test_submit_accepted_sends_bearer_token(client):
    route = respx.post(f"{BASE}/versions/Acme.Bot.v2/graph").mock(return_value=httpx.Response(200, json={"ok": True}))
    outcome = client.submit("Acme.Bot.v2", "csv text")
    assert outcome.status == ACCEPTED
    assert outcome.accepted
    request = route.calls.last.request
    assert request.headers["Authorization"] == "Bearer test-token"
    assert b'"csv": "csv text"' in request.content or b'"csv":"csv text"' in request.content


@respx.mock
def test_submit_content_errors_flat_shape(client):
    respx.post(f"{BASE}/versions/Acme.Bot.v2/graph").mock(return_value=httpx.Response(400, json={"errors": [
        {"nodeIdentifier": 105, "category": "content", "field": "Message", "message": "Too long"},
        {"nodeIdentifier": "210", "category": "routing", "field": "Next Nodes", "message": "Node 999 does not exist"},
    ]}))
    outcome = client.submit("Acme.Bot.v2", "csv")
    assert outcome.status == CONTENT_ERRORS
    assert [e.node_number for e in outcome.errors] == [105, 210]
    assert outcome.errors[1].field == "Next Nodes"


@respx.mock
def test_submit_content_errors_bot_manager_shape(client):
    respx.post(f"{BASE}/versions/Acme.Bot.v2/graph").mock(return_value=httpx.Response(422, json={"errors": [
        {"row_num": 3, "node_num": 105, "err_msgs": [
            {"field_name": "Message", "error_description": "Too long", "field_entry": "xxx"},
            {"field_name": "Rich Asset Content", "error_description": "Invalid JSON", "field_entry": "{"},
        ]},
    ]}))
    outcome = client.submit("Acme.Bot.v2", "csv")
    assert outcome.status == CONTENT_ERRORS
    assert len(outcome.errors) == 2
    assert outcome.errors[0].field_entry == "xxx"
    assert outcome.errors[1].message == "Invalid JSON"


@respx.mock
def test_submit_content_errors_nested_pairing(client):
    respx.post(f"{BASE}/versions/Acme.Bot.v2/graph").mock(return_value=httpx.Response(400, json=[
        [105, [["content", "Message", "Too long"], ["content", "Intent", "Unknown intent"]]],
    ]))
    outcome = client.submit("Acme.Bot.v2", "csv")
    assert outcome.status == CONTENT_ERRORS
    assert [(e.node_number, e.field) for e in outcome.errors] == [(105, "Message"), (105, "Intent")]


@respx.mock
def test_lock_status_is_not_a_content_error(client):
    respx.post(f"{BASE}/versions/Acme.Bot.v1/graph").mock(return_value=httpx.Response(409, json={"message": "Conflict"}))
    outcome = client.submit("Acme.Bot.v1", "csv")
    assert outcome.status == VERSION_LOCKED
    assert outcome.locked
    assert len(outcome.errors) == 1
    assert not outcome.errors[0].is_row_addressed


@respx.mock
def test_lock_message_on_bad_request(client):
    respx.post(f"{BASE}/versions/Acme.Bot.v1/graph").mock(
        return_value=httpx.Response(400, json={"error": "Version v1 is locked and cannot be modified"})
    )
    assert client.submit("Acme.Bot.v1", "csv").locked


@respx.mock
def test_row_addressed_error_mentioning_lock_stays_content(client):
    respx.post(f"{BASE}/versions/Acme.Bot.v1/graph").mock(return_value=httpx.Response(400, json={"errors": [
        {"nodeIdentifier": 7, "field": "Behaviors", "message": "Behavior 'locked' is not supported"},
    ]}))
    assert client.submit("Acme.Bot.v1", "csv").status == CONTENT_ERRORS


@respx.mock
def test_lock_status_with_row_addressed_errors_stays_content(client):
    respx.post(f"{BASE}/versions/Acme.Bot.v1/graph").mock(return_value=httpx.Response(409, json={"errors": [
        {"nodeIdentifier": 105, "category": "routing", "field": "Next Nodes", "message": "Node 999 does not exist"},
    ]}))
    outcome = client.submit("Acme.Bot.v1", "csv")
    assert outcome.status == CONTENT_ERRORS
    assert not outcome.locked
    assert [(e.node_number, e.field) for e in outcome.errors] == [(105, "Next Nodes")]


@respx.mock
def test_success_status_with_flat_error_list_is_rejected(client):
    respx.post(f"{BASE}/versions/Acme.Bot.v2/graph").mock(return_value=httpx.Response(200, json=[
        {"nodeIdentifier": 105, "category": "content", "field": "Message", "message": "Too long"},
    ]))
    outcome = client.submit("Acme.Bot.v2", "csv")
    assert not outcome.accepted
    assert outcome.status == CONTENT_ERRORS
    assert outcome.errors[0].node_number == 105


@respx.mock
def test_success_status_with_valid_false_is_rejected(client):
    respx.post(f"{BASE}/versions/Acme.Bot.v2/graph").mock(
        return_value=httpx.Response(200, json={"valid": False, "message": "Compilation failed"})
    )
    outcome = client.submit("Acme.Bot.v2", "csv")
    assert outcome.status == CONTENT_ERRORS
    assert [(e.node_number, e.message) for e in outcome.errors] == [(None, "Compilation failed")]


@respx.mock
def test_success_false_without_errors_is_rejected(client):
    respx.post(f"{BASE}/versions/Acme.Bot.v2/graph").mock(return_value=httpx.Response(200, json={"success": False}))
    outcome = client.submit("Acme.Bot.v2", "csv")
    assert not outcome.accepted
    assert outcome.errors[0].message == "Validation failed"


@respx.mock
def test_success_status_with_empty_error_list_is_accepted(client):
    respx.post(f"{BASE}/versions/Acme.Bot.v2/graph").mock(
        return_value=httpx.Response(200, json={"valid": True, "errors": []})
    )
    assert client.submit("Acme.Bot.v2", "csv").accepted


@respx.mock
def test_upload_script(client):
    route = respx.post(f"{BASE}/versions/Acme.Bot.v1/scripts").mock(return_value=httpx.Response(201, json={}))
    client.upload_script("Acme.Bot.v1", "LookupOrder", "def run(ctx): pass")
    body = route.calls.last.request.content
    assert b"LookupOrder" in body and b"def run(ctx): pass" in body


@respx.mock
def test_upload_script_failure(client):
    respx.post(f"{BASE}/versions/Acme.Bot.v1/scripts").mock(return_value=httpx.Response(500, text="boom"))
    with pytest.raises(RemoteServiceError):
        client.upload_script("Acme.Bot.v1", "LookupOrder", "x")


@respx.mock
def test_bare_numeric_version_tags(client):
    respx.get(f"{BASE}/bots/Acme.Bot/versions").mock(return_value=httpx.Response(200, json=["9", 10, {"tag": "v2"}]))
    assert client.list_versions("Acme.Bot") == ["v9", "v10", "v2"]


@respx.mock
def test_unauthorized_raises_auth_error(client):
    respx.post(f"{BASE}/versions/Acme.Bot.v1/graph").mock(return_value=httpx.Response(401, json={"message": "expired"}))
    with pytest.raises(AuthError):
        client.submit("Acme.Bot.v1", "csv")


@respx.mock
def test_rate_limit_carries_retry_after(client):
    respx.get(f"{BASE}/bots/Acme.Bot/versions").mock(return_value=httpx.Response(429, headers={"Retry-After": "17"}))
    with pytest.raises(RateLimitError) as exc:
        client.list_versions("Acme.Bot")
    assert exc.value.retry_after_seconds == 17


@respx.mock
def test_reads_are_retried_on_transport_failure(client):
    route = respx.get(f"{BASE}/bots/Acme.Bot/versions").mock(side_effect=[
        httpx.ConnectError("refused"),
        httpx.Response(200, json={"versions": [{"version": "v1"}, {"id": "Acme.Bot.v3"}, "v2"]}),
    ])
    assert client.list_versions("Acme.Bot") == ["v1", "v3", "v2"]
    assert route.call_count == 2


@respx.mock
def test_reads_give_up_after_three_attempts(client):
    route = respx.get(f"{BASE}/bots/Acme.Bot").mock(side_effect=httpx.ConnectTimeout("slow"))
    with pytest.raises(NetworkError):
        client.get_artifact("Acme.Bot")
    assert route.call_count == 3


@respx.mock
def test_writes_are_not_retried(client):
    route = respx.post(f"{BASE}/versions/Acme.Bot.v1/graph").mock(side_effect=httpx.ConnectError("refused"))
    with pytest.raises(NetworkError):
        client.submit("Acme.Bot.v1", "csv")
    assert route.call_count == 1


@respx.mock
def test_missing_artifact(client):
    respx.get(f"{BASE}/bots/Acme.Bot").mock(return_value=httpx.Response(404))
    respx.post(f"{BASE}/bots/Acme.Bot/versions").mock(return_value=httpx.Response(404))
    assert client.get_artifact("Acme.Bot") is None
    with pytest.raises(ArtifactNotFoundError):
        client.create_version("Acme.Bot")


@respx.mock
def test_create_artifact_splits_the_id(client):
    route = respx.post(f"{BASE}/bots").mock(return_value=httpx.Response(201, json={"id": "Acme.Bot"}))
    client.create_artifact("Acme.Bot")
    body = route.calls.last.request.content
    assert b"customerName" in body and b"Acme" in body and b"botName" in body


@respx.mock
def test_create_version_reads_tag(client):
    respx.post(f"{BASE}/bots/Acme.Bot/versions").mock(return_value=httpx.Response(201, json={"version": "v4"}))
    version = client.create_version("Acme.Bot")
    assert version == ArtifactVersion("Acme.Bot", "v4")
    assert version.version_id == "Acme.Bot.v4"


@respx.mock
def test_server_error_is_remote_service_error(client):
    respx.post(f"{BASE}/versions/Acme.Bot.v1/graph").mock(return_value=httpx.Response(500, text="boom"))
    with pytest.raises(RemoteServiceError) as exc:
        client.submit("Acme.Bot.v1", "csv")
    assert exc.value.status_code == 500


@respx.mock
def test_deploy(client):
    respx.post(f"{BASE}/versions/Acme.Bot.v1/deploy").mock(
        return_value=httpx.Response(200, json={"previewUrl": "https://preview.test/x"})
    )
    assert client.deploy("Acme.Bot.v1", "sandbox") == {"previewUrl": "https://preview.test/x"}
    with pytest.raises(InvalidRequestError):
        client.deploy("Acme.Bot.v1", "staging")


def test_is_lock_message():
    assert is_lock_message("Version is immutable")
    assert is_lock_message("version is read-only")
    assert is_lock_message("LOCKED")
    assert not is_lock_message("Message is too long")
    assert not is_lock_message("please unlock the door")


def test_tag_number_reads_trailing_integer():
    assert tag_number("v12") == 12
    assert tag_number("10") == 10
    assert tag_number("Acme.Bot.v3") == 3
    assert tag_number("draft") is None
