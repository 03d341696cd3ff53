# botflow/version_manager.py

import logging
import re
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Tuple

from botflow.errors import ArtifactNotFoundError, ContentValidationError, VersionLockedError
from botflow.validation_errors import ValidationError
from botflow.validator_client import ArtifactVersion, ValidatorClient, tag_number

logger = logging.getLogger("botflow_backend")

_PREVIEW_KEYS = ("previewUrl", "preview_url", "previewLocator", "url", "widgetUrl")


def validate_artifact_id(artifact_id: str) -> Tuple[bool, str]:
    """Artifact ids look like `Customer.BotName`: two alphanumeric parts, bot name capitalised."""
    if not artifact_id:
        return False, "Artifact id is required"
    parts = artifact_id.split(".")
    if len(parts) != 2:
        return False, "Artifact id must be in format: CustomerName.BotName"
    customer, bot = parts
    if not customer:
        return False, "Customer name is required"
    if not bot:
        return False, "Bot name is required"
    if not re.match(r"[A-Z]", bot):
        return False, "Bot name must start with an uppercase letter"
    if not re.fullmatch(r"[A-Za-z0-9]+", customer) or not re.fullmatch(r"[A-Za-z0-9]+", bot):
        return False, "Artifact id may only contain letters and digits"
    return True, ""


def generate_artifact_id(client_name: str, project_name: str) -> str:
    def clean(s):
        s = re.sub(r"[^a-zA-Z0-9]", "", s or "")
        return s[:1].upper() + s[1:]
    return f"{clean(client_name)}.{clean(project_name)}"


def highest_version(tags: Iterable[str]) -> str:
    """Tag with the largest trailing integer; the first one wins a tie. "v1" when empty."""
    best_tag, best_n = None, None
    for tag in tags or []:
        n = tag_number(tag)
        if n is None:
            continue
        if best_n is None or n > best_n:
            best_tag, best_n = tag, n
    return best_tag if best_tag is not None else "v1"


def next_version(tags: Iterable[str]) -> str:
    return f"v{tag_number(highest_version(tags)) + 1}"


@dataclass
class ResolveResult:
    version_id: str
    accepted: bool
    errors: List[ValidationError] = field(default_factory=list)
    probed: List[str] = field(default_factory=list)
    created: bool = False

    def raise_for_content(self) -> None:
        if not self.accepted:
            raise ContentValidationError(self.errors, version_id=self.version_id)


@dataclass
class PublishResult:
    success: bool
    version_id: str
    deployed: bool = False
    preview_locator: Optional[str] = None
    errors: List[ValidationError] = field(default_factory=list)
    scripts_uploaded: List[str] = field(default_factory=list)


class VersionManager:
    """
    Finds a version of an artifact that still accepts writes.

    Existing versions are probed newest first. A lock answer moves on to the
    next candidate; content errors end the probing at once and are handed
    back. When every candidate is locked a fresh version is created and
    tried last.
    """

    def __init__(self, client: ValidatorClient):
        self.client = client

    def ensure_artifact(self, artifact_id: str) -> bool:
        """Create the artifact when the store does not know it. True if created."""
        if self.client.get_artifact(artifact_id) is not None:
            return False
        logger.info(f"[Versions] artifact {artifact_id} missing, creating it")
        self.client.create_artifact(artifact_id)
        return True

    def create_version(self, artifact_id: str) -> ArtifactVersion:
        try:
            return self.client.create_version(artifact_id)
        except ArtifactNotFoundError:
            logger.info(f"[Versions] {artifact_id} does not exist yet; creating artifact and retrying once")
            self.ensure_artifact(artifact_id)
            return self.client.create_version(artifact_id)

    @staticmethod
    def candidates(artifact_id: str, tags: List[str], last_known_locked: str | None = None) -> List[str]:
        skip = (last_known_locked or "").strip()
        ordered = sorted(
            (t for t in tags if tag_number(t) is not None),
            key=lambda t: tag_number(t),
            reverse=True,
        )
        out = []
        for tag in ordered:
            version_id = ArtifactVersion(artifact_id, tag).version_id
            if skip and skip in (tag, version_id):
                continue
            if version_id not in out:
                out.append(version_id)
        return out

    def resolve_writable_version(
        self,
        artifact_id: str,
        document_text: str,
        last_known_locked: str | None = None,
    ) -> ResolveResult:
        tags = self.client.list_versions(artifact_id)
        probed: List[str] = []

        for version_id in self.candidates(artifact_id, tags, last_known_locked):
            outcome = self.client.submit(version_id, document_text)
            probed.append(version_id)
            if outcome.locked:
                logger.info(f"[Versions] {version_id} is locked, trying the next candidate")
                continue
            return ResolveResult(version_id, outcome.accepted, outcome.errors, probed)

        expected = next_version(tags) if tags else "v1"
        version = self.create_version(artifact_id)
        if version.tag != expected:
            logger.debug(f"[Versions] store assigned {version.tag} (expected {expected})")

        outcome = self.client.submit(version.version_id, document_text)
        probed.append(version.version_id)
        if outcome.locked:
            raise VersionLockedError(probed)
        return ResolveResult(version.version_id, outcome.accepted, outcome.errors, probed, created=True)

    def publish(
        self,
        artifact_id: str,
        document_text: str,
        version_id: str | None = None,
        environment: str | None = None,
        scripts: Optional[List[dict]] = None,
    ) -> PublishResult:
        """
        Write the document to `version_id` when given (falling back to
        discovery if that version turns out locked). Once the document is
        accepted, upload the custom action `scripts` ({name, content}) to the
        same version, then deploy when an environment is requested.
        """
        resolved: Optional[ResolveResult] = None
        if version_id:
            outcome = self.client.submit(version_id, document_text)
            if outcome.locked:
                resolved = self.resolve_writable_version(artifact_id, document_text, last_known_locked=version_id)
            else:
                resolved = ResolveResult(version_id, outcome.accepted, outcome.errors, [version_id])
        else:
            resolved = self.resolve_writable_version(artifact_id, document_text)

        if not resolved.accepted:
            return PublishResult(False, resolved.version_id, errors=resolved.errors)

        uploaded = []
        for script in scripts or []:
            self.client.upload_script(resolved.version_id, script["name"], script["content"])
            uploaded.append(script["name"])

        if not environment:
            return PublishResult(True, resolved.version_id, scripts_uploaded=uploaded)

        body = self.client.deploy(resolved.version_id, environment)
        preview = next((str(body[k]) for k in _PREVIEW_KEYS if body.get(k)), None)
        return PublishResult(True, resolved.version_id, deployed=True, preview_locator=preview, scripts_uploaded=uploaded)
