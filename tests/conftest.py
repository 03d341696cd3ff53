import pytest

from botflow.errors import ArtifactNotFoundError
from botflow.flow_csv import format_row
from botflow.flow_document import FlowDocument, Node, RichAsset
from botflow.llm_client import reset_backoff_state
from botflow.validation_errors import ValidationError
from botflow.validator_client import (
    ACCEPTED,
    CONTENT_ERRORS,
    VERSION_LOCKED,
    ArtifactVersion,
    SubmissionOutcome,
)
from botflow.version_manager import next_version

E2E_NUMBERS = [102, 103, 104, 105, 106, 208, 209, 210, 211, 212]


def make_node(number, **overrides):
    values = dict(
        number=number,
        kind="decision",
        name=f"Step {number}",
        next_nodes=[number + 1],
        message=f"Hello from {number}",
    )
    values.update(overrides)
    return Node(**values)


def make_document(numbers=None):
    numbers = numbers or E2E_NUMBERS
    return FlowDocument.from_nodes(make_node(n) for n in numbers)


def fixed_row(number, message="Fixed"):
    fields = make_node(number, message=message).to_fields()
    return format_row(fields)


class FakeLlm:
    """Returns canned responses in order and records every prompt."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.prompts = []

    def invoke(self, prompt, **kwargs):
        self.prompts.append(prompt)
        if not self.responses:
            raise AssertionError("FakeLlm ran out of responses")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response(prompt) if callable(response) else response


class FakeStore:
    """
    In-memory stand-in for the bot manager. `judge(text)` may return
    validation errors for the submitted document.
    """

    def __init__(self, tags=None, locked=(), content_errors=(), artifact_exists=True, judge=None):
        self.tags = list(tags or [])
        self.locked = set(locked)
        self.content_errors = set(content_errors)
        self.artifact_exists = artifact_exists
        self.judge = judge
        self.texts = []
        self.submitted = []
        self.created_artifacts = []
        self.create_version_calls = 0
        self.deployed = []
        self.scripts = []

    def list_versions(self, artifact_id):
        return list(self.tags)

    def get_artifact(self, artifact_id):
        return {"id": artifact_id} if self.artifact_exists else None

    def create_artifact(self, artifact_id):
        self.artifact_exists = True
        self.created_artifacts.append(artifact_id)
        return {"id": artifact_id}

    def create_version(self, artifact_id):
        self.create_version_calls += 1
        if not self.artifact_exists:
            raise ArtifactNotFoundError(artifact_id)
        tag = next_version(self.tags) if self.tags else "v1"
        self.tags.append(tag)
        return ArtifactVersion(artifact_id, tag)

    def submit(self, version_id, text):
        self.submitted.append(version_id)
        self.texts.append(text)
        if version_id in self.locked:
            return SubmissionOutcome(VERSION_LOCKED, version_id, [ValidationError(None, message="locked")])
        if version_id in self.content_errors:
            return SubmissionOutcome(CONTENT_ERRORS, version_id, [ValidationError(105, "content", "Message", "bad")])
        if self.judge is not None:
            errors = self.judge(text)
            if errors:
                return SubmissionOutcome(CONTENT_ERRORS, version_id, errors)
        return SubmissionOutcome(ACCEPTED, version_id)

    def upload_script(self, version_id, name, content):
        self.scripts.append((version_id, name))

    def deploy(self, version_id, environment):
        self.deployed.append((version_id, environment))
        return {"previewUrl": f"https://preview.test/{version_id}"}


@pytest.fixture
def document():
    return make_document()


@pytest.fixture
def buttons_node():
    return make_node(
        300,
        kind="decision",
        name="Pick, one",
        message='Say "yes"\nor no',
        rich_asset=RichAsset("buttons", [{"label": "Yes", "dest": 301}, {"label": "No", "dest": 302}]),
        what_next={"true": 301, "false": 302},
    )


@pytest.fixture(autouse=True)
def _clear_backoff():
    reset_backoff_state()
    yield
    reset_backoff_state()
