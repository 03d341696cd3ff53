# botflow/llm_client.py

import asyncio
import logging
import random
import re
import threading
import time
from typing import Any, Callable, Dict, Optional, TypeVar

import openai
from langchain_google_vertexai import VertexAI
from openai import OpenAI

from botflow.errors import AuthError, NetworkError, RateLimitError
from botflow.model_props import is_openai_model, parse_model_name

T = TypeVar("T")

logger = logging.getLogger("botflow_backend")

DEFAULT_RETRY_AFTER_SECONDS = 60

# Global backoff state (shared across all clients)
_global_backoff_lock = threading.Lock()
_global_wait_until = 0.0
_global_backoff_seconds = float(DEFAULT_RETRY_AFTER_SECONDS)
_GLOBAL_BACKOFF_MAX = 600.0


def reset_backoff_state() -> None:
    global _global_wait_until, _global_backoff_seconds
    with _global_backoff_lock:
        _global_wait_until = 0.0
        _global_backoff_seconds = float(DEFAULT_RETRY_AFTER_SECONDS)


def _status_code_of(e: Exception) -> Optional[int]:
    code = getattr(e, "status_code", None)
    if code is None:
        code = getattr(e, "code", None)
    if code is None:
        response = getattr(e, "response", None)
        code = getattr(response, "status_code", None)
    try:
        return int(code) if code is not None else None
    except (TypeError, ValueError):
        return None


def _is_rate_limit_error(e: Exception) -> bool:
    if isinstance(e, openai.RateLimitError) or _status_code_of(e) == 429:
        return True
    msg = str(e)
    return (
        "RESOURCE_EXHAUSTED" in msg
        or "Resource has been exhausted" in msg
        or "Too Many Requests" in msg
        or "rate limit" in msg.lower()
    )


def _is_auth_error(e: Exception) -> bool:
    if isinstance(e, (openai.AuthenticationError, openai.PermissionDeniedError)):
        return True
    if _status_code_of(e) in (401, 403):
        return True
    msg = str(e)
    return (
        "UNAUTHENTICATED" in msg
        or "PERMISSION_DENIED" in msg
        or "invalid api key" in msg.lower()
        or "invalid_api_key" in msg
    )


def _is_transient_error(e: Exception) -> bool:
    if isinstance(e, (asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return True
    if isinstance(e, (openai.APITimeoutError, openai.APIConnectionError)):
        return True
    msg = repr(e)
    return (
        "TimeoutError" in msg
        or "timed out" in msg.lower()
        or "DEADLINE_EXCEEDED" in msg
        or "UNAVAILABLE" in msg
    )


def _retry_after_hint(e: Exception) -> Optional[int]:
    response = getattr(e, "response", None)
    headers = getattr(response, "headers", None)
    if headers is not None:
        value = headers.get("retry-after") or headers.get("Retry-After")
        if value:
            try:
                return max(1, int(float(value)))
            except ValueError:
                pass
    m = re.search(r"retry (?:after|in) (\d+(?:\.\d+)?)\s*s", str(e), flags=re.IGNORECASE)
    if m:
        return max(1, int(float(m.group(1))))
    return None


def _register_rate_limit(hint: Optional[int]) -> int:
    """
    Push the shared wait window forward and return the wait the caller
    should be told about.
    """
    global _global_wait_until, _global_backoff_seconds

    with _global_backoff_lock:
        now = time.monotonic()
        if hint is not None:
            delay = float(hint)
        else:
            base = _global_backoff_seconds
            delay = random.uniform(base * 0.95, base * 1.35)
            _global_backoff_seconds = min(_global_backoff_seconds * 2, _GLOBAL_BACKOFF_MAX)
        _global_wait_until = max(_global_wait_until, now + delay)
        return max(1, int(round(delay)))


def _remaining_global_wait() -> float:
    with _global_backoff_lock:
        return _global_wait_until - time.monotonic()


def _reset_backoff_on_success() -> None:
    global _global_backoff_seconds
    with _global_backoff_lock:
        _global_backoff_seconds = max(float(DEFAULT_RETRY_AFTER_SECONDS), _global_backoff_seconds * 0.5)


def call_with_retries_sync(
    fn: Callable[[], T],
    *,
    retries: int = 3,
    log: Callable[[str], None] | None = None,
) -> T:
    """
    Run a sync LLM call with rate-limit and auth classification.

    Rate limits never block: while a shared wait window is open, or when the
    provider answers 429, a RateLimitError carrying the suggested wait is
    raised right away. Auth failures raise AuthError. Timeouts and transport
    failures are retried `retries` times, then surface as NetworkError.
    """
    remaining = _remaining_global_wait()
    if remaining > 0:
        raise RateLimitError(
            "Model provider is rate limiting requests; try again later.",
            retry_after_seconds=max(1, int(round(remaining))),
        )

    last_exception: Exception | None = None
    attempts = max(1, retries)
    for attempt in range(attempts):
        start_time = time.time()
        try:
            result = fn()
            _reset_backoff_on_success()
            return result
        except Exception as e:
            elapsed = time.time() - start_time
            last_exception = e

            if _is_rate_limit_error(e):
                wait = _register_rate_limit(_retry_after_hint(e))
                if log:
                    log(f"Attempt {attempt+1} rate limited, suggesting a {wait}s wait: {e}")
                raise RateLimitError(str(e) or "Rate limited", retry_after_seconds=wait) from e

            if _is_auth_error(e):
                if log:
                    log(f"Attempt {attempt+1} rejected credentials: {e}")
                raise AuthError(str(e) or "Model provider rejected the credentials") from e

            if not _is_transient_error(e):
                raise

            if log:
                log(f"Attempt {attempt+1} failed (elapsed={elapsed:.2f}s): {e}")

    raise NetworkError(f"All {attempts} retry attempts failed: {last_exception}") from last_exception


class BaseLlmClient:
    """
    Provider setup and token usage accounting.
    """

    last_usage: Optional[Dict[str, int]]

    def _add_usage(self, inc: Dict[str, int]) -> None:
        if self.last_usage is None:
            self.last_usage = dict(inc)
            return
        for k, v in inc.items():
            self.last_usage[k] = (self.last_usage.get(k, 0) or 0) + (v or 0)

    def _merge_usage(self, resp: Any) -> None:
        usage = getattr(resp, "usage", None) if resp is not None else None
        if usage is None:
            return
        details = getattr(usage, "input_tokens_details", None)
        self._add_usage({
            "prompt_token_count": getattr(usage, "input_tokens", 0) or 0,
            "candidates_token_count": getattr(usage, "output_tokens", 0) or 0,
            "total_token_count": getattr(usage, "total_tokens", 0) or 0,
            "cached_content_token_count": (getattr(details, "cached_tokens", 0) or 0) if details else 0,
        })

    def _merge_vertex_usage(self, resp: Any) -> None:
        usage_metadata = getattr(resp, "usage_metadata", None)
        if usage_metadata is None:
            rm = getattr(resp, "response_metadata", None)
            if isinstance(rm, dict):
                usage_metadata = rm.get("usage_metadata")
        if not usage_metadata:
            return

        def get(*keys: str) -> int:
            for k in keys:
                if isinstance(usage_metadata, dict):
                    v = usage_metadata.get(k)
                else:
                    v = getattr(usage_metadata, k, None)
                if v:
                    return int(v)
            return 0

        self._add_usage({
            "prompt_token_count": get("prompt_token_count", "input_tokens"),
            "candidates_token_count": get("candidates_token_count", "output_tokens"),
            "total_token_count": get("total_token_count", "total_tokens"),
            "cached_content_token_count": get("cached_content_token_count"),
        })

    def _setup_provider(self, model_name, vertex_cls, vertex_project, vertex_region, timeout):
        self.provider = "openai" if is_openai_model(model_name) else "vertex"
        self.model_name = model_name
        self._timeout = timeout
        self.last_usage = None
        self._openai_params: Dict[str, Any] = {}

        if self.provider == "vertex":
            self._vertex = vertex_cls(
                project=vertex_project,
                location=vertex_region,
                model_name=model_name,
                timeout=timeout,
            )
            self._client = None
        else:
            self._vertex = None
            self.model_name, self._openai_params = parse_model_name(model_name)
            client_kwargs: Dict[str, Any] = {"max_retries": 0}
            if timeout is not None:
                client_kwargs["timeout"] = timeout
            self._client = OpenAI(**client_kwargs)


class LlmClient(BaseLlmClient):
    """
    Completion-style wrapper used for generation and repair:

        text = llm.invoke("some prompt")

    Vertex goes through VertexAI.invoke, OpenAI through the Responses API.
    """

    def __init__(
        self,
        model_name: str,
        *,
        vertex_project: str,
        vertex_region: str,
        timeout: float | None = None,
    ):
        self._setup_provider(model_name, VertexAI, vertex_project, vertex_region, timeout)

    def _invoke_once(self, prompt: str) -> str:
        if self.provider == "vertex":
            resp = self._vertex.invoke(prompt)
            self._merge_vertex_usage(resp)
            if isinstance(resp, str):
                return resp
            return getattr(resp, "content", str(resp))

        resp = self._client.responses.create(
            model=self.model_name,
            input=prompt,
            **self._openai_params,
        )
        self._merge_usage(resp)
        return (getattr(resp, "output_text", "") or "").strip()

    def invoke(self, prompt: str, *, retries: int = 3) -> str:
        text = call_with_retries_sync(
            lambda: self._invoke_once(prompt),
            retries=retries,
            log=lambda msg: logger.warning(f"[LLM-RETRY] {msg}"),
        )
        logger.info(f"[LLM] {self.provider}:{self.model_name} usage so far {self.last_usage or {}}")
        return text

