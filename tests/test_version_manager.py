import pytest

from botflow.errors import ContentValidationError, VersionLockedError
from botflow.version_manager import (
    VersionManager,
    generate_artifact_id,
    highest_version,
    next_version,
    validate_artifact_id,
)

from conftest import FakeStore


def test_version_arithmetic():
    assert highest_version(["v1", "v10", "v2"]) == "v10"
    assert next_version(["v1", "v10"]) == "v11"
    assert highest_version([]) == "v1"


def test_version_arithmetic_accepts_bare_numbers():
    assert highest_version(["9", "10", "v2"]) == "10"
    assert next_version(["9", "10"]) == "v11"


def test_highest_version_tie_keeps_first_occurrence():
    assert highest_version(["V3", "v3", "v1"]) == "V3"


def test_highest_version_skips_unparseable_tags():
    assert highest_version(["draft", "v4", "latest"]) == "v4"


def test_probing_goes_newest_first_and_stops_on_first_writable():
    store = FakeStore(tags=["v1", "v3", "v2"], locked={"Acme.Bot.v3"})
    result = VersionManager(store).resolve_writable_version("Acme.Bot", "csv")
    assert result.version_id == "Acme.Bot.v2"
    assert result.accepted
    assert store.submitted == ["Acme.Bot.v3", "Acme.Bot.v2"]
    assert not result.created


def test_probing_skips_last_known_locked():
    store = FakeStore(tags=["v1", "v2"])
    result = VersionManager(store).resolve_writable_version("Acme.Bot", "csv", last_known_locked="Acme.Bot.v2")
    assert store.submitted == ["Acme.Bot.v1"]
    assert result.version_id == "Acme.Bot.v1"


def test_content_errors_stop_probing():
    store = FakeStore(tags=["v1", "v2", "v3"], locked={"Acme.Bot.v3"}, content_errors={"Acme.Bot.v2"})
    result = VersionManager(store).resolve_writable_version("Acme.Bot", "csv")
    assert not result.accepted
    assert result.version_id == "Acme.Bot.v2"
    assert [e.node_number for e in result.errors] == [105]
    assert store.submitted == ["Acme.Bot.v3", "Acme.Bot.v2"]


def test_all_locked_creates_a_new_version():
    store = FakeStore(tags=["v1", "v2"], locked={"Acme.Bot.v1", "Acme.Bot.v2"})
    result = VersionManager(store).resolve_writable_version("Acme.Bot", "csv")
    assert result.created
    assert result.version_id == "Acme.Bot.v3"
    assert result.probed == ["Acme.Bot.v2", "Acme.Bot.v1", "Acme.Bot.v3"]


def test_missing_artifact_is_created_then_version_create_retried_once():
    store = FakeStore(artifact_exists=False)
    result = VersionManager(store).resolve_writable_version("Acme.Bot", "csv")
    assert store.created_artifacts == ["Acme.Bot"]
    assert store.create_version_calls == 2
    assert result.version_id == "Acme.Bot.v1"
    assert result.accepted


def test_new_version_locked_too_raises():
    store = FakeStore(tags=["v1"], locked={"Acme.Bot.v1", "Acme.Bot.v2"})
    with pytest.raises(VersionLockedError) as exc:
        VersionManager(store).resolve_writable_version("Acme.Bot", "csv")
    assert exc.value.version_ids == ["Acme.Bot.v1", "Acme.Bot.v2"]


def test_publish_with_locked_version_falls_back_and_deploys():
    store = FakeStore(tags=["v1", "v2"], locked={"Acme.Bot.v2"})
    result = VersionManager(store).publish("Acme.Bot", "csv", version_id="Acme.Bot.v2", environment="sandbox")
    assert result.success
    assert result.version_id == "Acme.Bot.v1"
    assert result.deployed
    assert result.preview_locator == "https://preview.test/Acme.Bot.v1"
    assert store.deployed == [("Acme.Bot.v1", "sandbox")]


def test_publish_with_content_errors_does_not_deploy():
    store = FakeStore(tags=["v1"], content_errors={"Acme.Bot.v1"})
    result = VersionManager(store).publish("Acme.Bot", "csv", environment="production")
    assert not result.success
    assert not result.deployed
    assert store.deployed == []
    assert result.errors
    assert store.scripts == []


def test_publish_uploads_scripts_before_deploying():
    store = FakeStore(tags=["v1"])
    scripts = [{"name": "LookupOrder", "content": "def run(ctx): pass"}, {"name": "SendReceipt", "content": "x"}]
    result = VersionManager(store).publish("Acme.Bot", "csv", environment="sandbox", scripts=scripts)
    assert result.success
    assert result.scripts_uploaded == ["LookupOrder", "SendReceipt"]
    assert store.scripts == [("Acme.Bot.v1", "LookupOrder"), ("Acme.Bot.v1", "SendReceipt")]
    assert store.deployed == [("Acme.Bot.v1", "sandbox")]


def test_raise_for_content_carries_errors_and_version():
    store = FakeStore(tags=["v1"], content_errors={"Acme.Bot.v1"})
    result = VersionManager(store).resolve_writable_version("Acme.Bot", "csv")
    with pytest.raises(ContentValidationError) as exc:
        result.raise_for_content()
    assert exc.value.version_id == "Acme.Bot.v1"
    assert [e.node_number for e in exc.value.errors] == [105]


@pytest.mark.parametrize(
    "artifact_id, ok",
    [
        ("Acme.SupportBot", True),
        ("acme.SupportBot", True),
        ("Acme.supportBot", False),
        ("AcmeSupportBot", False),
        ("Acme.Support.Bot", False),
        ("Acme.Support-Bot", False),
        ("", False),
    ],
)
def test_validate_artifact_id(artifact_id, ok):
    assert validate_artifact_id(artifact_id)[0] is ok


def test_generate_artifact_id():
    assert generate_artifact_id("acme corp", "support-bot v2") == "Acmecorp.Supportbotv2"
