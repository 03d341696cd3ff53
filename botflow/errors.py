# botflow/errors.py

from typing import List, Optional


class BotflowError(Exception):
    pass


class ParseError(BotflowError):
    """
    No extraction strategy produced a structurally valid document.
    `attempted` lists the strategies in the order they were tried.
    """

    def __init__(self, message: str, attempted: Optional[List[str]] = None):
        super().__init__(message)
        self.attempted = list(attempted or [])


class SchemaError(BotflowError):
    """Wrong field count, missing header or unusable node numbers."""


class InvalidRequestError(BotflowError, ValueError):
    """The caller sent an unusable value, such as a malformed artifact id."""


class ContentValidationError(BotflowError):
    """Row-addressed rejection of a document by the validator. Drives the repair loop."""

    def __init__(self, errors: list, version_id: Optional[str] = None, message: str = ""):
        super().__init__(message or f"{len(errors)} validation error(s)")
        self.errors = list(errors)
        self.version_id = version_id


class VersionLockedError(BotflowError):
    def __init__(self, version_ids: List[str], message: str = ""):
        super().__init__(message or f"All probed versions are locked: {', '.join(version_ids) or '(none)'}")
        self.version_ids = list(version_ids)


class RateLimitError(BotflowError):
    def __init__(self, message: str, retry_after_seconds: int = 60):
        super().__init__(message)
        self.retry_after_seconds = int(retry_after_seconds)


class AuthError(BotflowError):
    def __init__(self, message: str = "API token is invalid or expired"):
        super().__init__(message)


class NetworkError(BotflowError):
    pass


class RemoteServiceError(BotflowError):
    def __init__(self, message: str, status_code: int | None = None, payload=None):
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload


class ArtifactNotFoundError(RemoteServiceError):
    """The remote store has no artifact with the requested id."""

    def __init__(self, artifact_id: str):
        super().__init__(f"Artifact not found: {artifact_id}", status_code=404)
        self.artifact_id = artifact_id


class LookupTimeout(NetworkError):
    def __init__(self, request_id: str, timeout: float):
        super().__init__(f"No reply for reference request {request_id} within {timeout:.1f}s")
        self.request_id = request_id
        self.timeout = timeout
