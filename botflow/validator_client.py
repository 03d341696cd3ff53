# botflow/validator_client.py
"""
HTTP client for the remote bot manager (compiler / validator / version store).

    GET  /bots/{id}                    artifact lookup (404 = absent)
    POST /bots                         create artifact
    GET  /bots/{id}/versions           list version tags
    POST /bots/{id}/versions           create next version (404 = artifact absent)
    POST /versions/{versionId}/graph   compile + validate a document
    POST /versions/{versionId}/scripts upload one custom action script
    POST /versions/{versionId}/deploy  deploy to sandbox / production

Only reads are retried on transport failures. Status codes are mapped to the
typed errors in botflow.errors so callers can tell state problems (locked
version) from content problems (row-addressed errors).
"""

import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, List, Optional

import httpx

from botflow.errors import (
    ArtifactNotFoundError,
    AuthError,
    InvalidRequestError,
    NetworkError,
    RateLimitError,
    RemoteServiceError,
)
from botflow.settings import BOT_MANAGER_BASE_URL, BOT_MANAGER_TIMEOUT_SECONDS, get_bot_manager_token
from botflow.validation_errors import ValidationError, normalize_errors

logger = logging.getLogger("botflow_backend")

NETWORK_RETRIES = 3
DEFAULT_RETRY_AFTER_SECONDS = 60
LOCK_STATUS_CODES = (409, 423)
ENVIRONMENTS = ("sandbox", "production")

_LOCK_RE = re.compile(r"\block(ed)?\b|\bimmutable\b|\bread[- ]only\b|cannot be modified", re.IGNORECASE)
_TAG_RE = re.compile(r"(\d+)$")

ACCEPTED = "accepted"
CONTENT_ERRORS = "content_errors"
VERSION_LOCKED = "version_locked"


def is_lock_message(text: str) -> bool:
    return bool(_LOCK_RE.search(text or ""))


def tag_number(tag: str) -> Optional[int]:
    m = _TAG_RE.search((tag or "").strip())
    return int(m.group(1)) if m else None


@dataclass
class ArtifactVersion:
    artifact_id: str
    tag: str

    @property
    def version_id(self) -> str:
        return f"{self.artifact_id}.{self.tag}"

    @property
    def number(self) -> int:
        return tag_number(self.tag) or 0


@dataclass
class SubmissionOutcome:
    status: str
    version_id: str
    errors: List[ValidationError] = field(default_factory=list)
    message: str = ""

    @property
    def accepted(self) -> bool:
        return self.status == ACCEPTED

    @property
    def locked(self) -> bool:
        return self.status == VERSION_LOCKED


def _split_artifact_id(artifact_id: str):
    customer, _, bot = artifact_id.partition(".")
    return customer, bot


def _tag_from_item(item) -> Optional[str]:
    if isinstance(item, dict):
        for key in ("version", "tag", "versionTag", "name", "id", "versionId"):
            value = item.get(key)
            if value not in (None, ""):
                item = value
                break
        else:
            return None
    if isinstance(item, int):
        return f"v{item}"
    text = str(item).strip()
    m = _TAG_RE.search(text)
    return f"v{m.group(1)}" if m else None


class ValidatorClient:
    def __init__(
        self,
        base_url: str = BOT_MANAGER_BASE_URL,
        *,
        token: str | None = None,
        timeout: float = BOT_MANAGER_TIMEOUT_SECONDS,
        network_retries: int = NETWORK_RETRIES,
        retry_delay: float = 0.5,
        client: httpx.Client | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._token = token
        self._network_retries = max(1, network_retries)
        self._retry_delay = retry_delay
        self._client = client or httpx.Client(base_url=self.base_url, timeout=timeout)

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "ValidatorClient":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # -----------------------
    # Transport
    # -----------------------

    def _headers(self) -> dict:
        token = self._token or get_bot_manager_token()
        return {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    def _request(self, method: str, path: str, *, json: Any = None) -> httpx.Response:
        idempotent = method.upper() == "GET"
        attempts = self._network_retries if idempotent else 1
        last_exc: Exception | None = None

        for attempt in range(attempts):
            try:
                resp = self._client.request(method, path, json=json, headers=self._headers())
            except httpx.TransportError as e:
                last_exc = e
                logger.warning(f"[BotManager] {method} {path} transport failure (attempt {attempt+1}/{attempts}): {e}")
                if attempt + 1 < attempts and self._retry_delay:
                    time.sleep(self._retry_delay * (attempt + 1))
                continue
            self._raise_for_access(resp)
            return resp

        raise NetworkError(f"{method} {path} failed after {attempts} attempt(s): {last_exc}") from last_exc

    def _raise_for_access(self, resp: httpx.Response) -> None:
        if resp.status_code in (401, 403):
            raise AuthError(self._message_of(resp) or "Bot manager token is invalid or expired")
        if resp.status_code == 429:
            retry_after = DEFAULT_RETRY_AFTER_SECONDS
            header = resp.headers.get("retry-after")
            if header:
                try:
                    retry_after = max(1, int(float(header)))
                except ValueError:
                    pass
            raise RateLimitError("Bot manager rate limit reached", retry_after_seconds=retry_after)

    @staticmethod
    def _body(resp: httpx.Response):
        if not resp.content:
            return None
        try:
            return resp.json()
        except ValueError:
            return resp.text

    def _message_of(self, resp: httpx.Response) -> str:
        body = self._body(resp)
        if isinstance(body, dict):
            for key in ("message", "error", "detail", "error_description"):
                if body.get(key):
                    return str(body[key])
        if isinstance(body, str):
            return body.strip()
        return ""

    def _unexpected(self, resp: httpx.Response, what: str) -> RemoteServiceError:
        return RemoteServiceError(
            f"{what} failed with HTTP {resp.status_code}: {self._message_of(resp)[:300]}",
            status_code=resp.status_code,
            payload=self._body(resp),
        )

    # -----------------------
    # Artifacts and versions
    # -----------------------

    def get_artifact(self, artifact_id: str) -> Optional[dict]:
        resp = self._request("GET", f"/bots/{artifact_id}")
        if resp.status_code == 404:
            return None
        if not resp.is_success:
            raise self._unexpected(resp, f"get artifact {artifact_id}")
        body = self._body(resp)
        return body if isinstance(body, dict) else {"id": artifact_id}

    def create_artifact(self, artifact_id: str, *, language: str = "en", bot_type: str = "consumer") -> dict:
        customer, bot = _split_artifact_id(artifact_id)
        payload = {
            "customerName": customer,
            "botName": bot,
            "botLanguage": language,
            "botType": bot_type,
        }
        resp = self._request("POST", "/bots", json=payload)
        if not resp.is_success:
            raise self._unexpected(resp, f"create artifact {artifact_id}")
        logger.info(f"[BotManager] created artifact {artifact_id}")
        body = self._body(resp)
        return body if isinstance(body, dict) else {"id": artifact_id}

    def list_versions(self, artifact_id: str) -> List[str]:
        resp = self._request("GET", f"/bots/{artifact_id}/versions")
        if resp.status_code == 404:
            return []
        if not resp.is_success:
            raise self._unexpected(resp, f"list versions of {artifact_id}")
        body = self._body(resp)
        items = body.get("versions", body.get("data", [])) if isinstance(body, dict) else body
        if not isinstance(items, list):
            return []
        tags = [_tag_from_item(item) for item in items]
        return [t for t in tags if t]

    def create_version(self, artifact_id: str) -> ArtifactVersion:
        resp = self._request("POST", f"/bots/{artifact_id}/versions")
        if resp.status_code == 404:
            raise ArtifactNotFoundError(artifact_id)
        if not resp.is_success:
            raise self._unexpected(resp, f"create version of {artifact_id}")
        tag = _tag_from_item(self._body(resp))
        if not tag:
            raise RemoteServiceError(
                f"create version of {artifact_id} returned no version tag",
                status_code=resp.status_code,
                payload=self._body(resp),
            )
        logger.info(f"[BotManager] created version {artifact_id}.{tag}")
        return ArtifactVersion(artifact_id, tag)

    # -----------------------
    # Submission
    # -----------------------

    def _classify_errors(self, version_id: str, errors: List[ValidationError], status_code: int) -> SubmissionOutcome:
        # a node address always means content, whatever the status says
        if any(e.is_row_addressed for e in errors):
            return SubmissionOutcome(CONTENT_ERRORS, version_id, errors)
        if status_code in LOCK_STATUS_CODES or any(is_lock_message(e.message) for e in errors):
            message = "; ".join(e.message for e in errors if e.message) or "Version is locked"
            return SubmissionOutcome(VERSION_LOCKED, version_id, [ValidationError(None, "version", "", message)], message)
        return SubmissionOutcome(CONTENT_ERRORS, version_id, errors)

    @staticmethod
    def _rejection_of(body) -> List[ValidationError]:
        """Errors carried by a 2xx answer: an error list, or a `valid`/`success` flag set to false."""
        if isinstance(body, list):
            return normalize_errors(body)
        if not isinstance(body, dict):
            return []
        errors = normalize_errors(body["errors"]) if body.get("errors") else []
        if not errors and (body.get("valid") is False or body.get("success") is False):
            message = next((str(body[k]) for k in ("message", "error", "detail") if body.get(k)), "Validation failed")
            errors = [ValidationError(None, message=message)]
        return errors

    def submit(self, version_id: str, document_text: str) -> SubmissionOutcome:
        """
        Upload the canonical document text to a version and classify the
        compiler's answer as accepted, content errors or version locked.
        """
        resp = self._request("POST", f"/versions/{version_id}/graph", json={"csv": document_text})
        body = self._body(resp)

        if resp.is_success:
            errors = self._rejection_of(body)
            if not errors:
                logger.info(f"[BotManager] {version_id} accepted the document")
                return SubmissionOutcome(ACCEPTED, version_id)
            outcome = self._classify_errors(version_id, errors, resp.status_code)
            logger.info(f"[BotManager] {version_id} answered {resp.status_code} but rejected the document -> {outcome.status}")
            return outcome

        if resp.status_code in LOCK_STATUS_CODES or resp.status_code in (400, 422):
            errors = normalize_errors(body)
            if not errors:
                errors = [ValidationError(None, message=f"Validation failed with HTTP {resp.status_code}")]
            outcome = self._classify_errors(version_id, errors, resp.status_code)
            logger.info(f"[BotManager] {version_id} -> {outcome.status} ({len(outcome.errors)} error(s))")
            return outcome

        raise self._unexpected(resp, f"submit to {version_id}")

    def upload_script(self, version_id: str, name: str, content: str) -> None:
        resp = self._request("POST", f"/versions/{version_id}/scripts", json={"name": name, "content": content})
        if not resp.is_success:
            raise self._unexpected(resp, f"upload script {name} to {version_id}")
        logger.info(f"[BotManager] uploaded script {name} to {version_id}")

    def deploy(self, version_id: str, environment: str = "sandbox") -> dict:
        if environment not in ENVIRONMENTS:
            raise InvalidRequestError(f"environment must be one of {ENVIRONMENTS}, got {environment!r}")
        resp = self._request("POST", f"/versions/{version_id}/deploy", json={"environment": environment})
        if not resp.is_success:
            raise self._unexpected(resp, f"deploy {version_id} to {environment}")
        body = self._body(resp)
        logger.info(f"[BotManager] deployed {version_id} to {environment}")
        return body if isinstance(body, dict) else {}
