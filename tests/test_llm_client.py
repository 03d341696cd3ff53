from types import SimpleNamespace

import pytest

from botflow.errors import AuthError, InvalidRequestError, NetworkError, RateLimitError
from botflow.llm_client import DEFAULT_RETRY_AFTER_SECONDS, LlmClient, call_with_retries_sync
from botflow.model_props import is_openai_model, parse_model_name


class StatusError(Exception):
    def __init__(self, message, status_code):
        super().__init__(message)
        self.status_code = status_code


class FakeResponse:
    def __init__(self, headers):
        self.headers = headers
        self.status_code = 429


class HeaderError(Exception):
    def __init__(self, message, headers):
        super().__init__(message)
        self.response = FakeResponse(headers)


def failing(*errors, result="ok"):
    calls = []

    def fn():
        calls.append(1)
        if len(calls) <= len(errors):
            raise errors[len(calls) - 1]
        return result

    return fn, calls


def test_success_passes_through():
    fn, calls = failing()
    assert call_with_retries_sync(fn) == "ok"
    assert calls == [1]


def test_resource_exhausted_raises_immediately_with_retry_after_header():
    fn, calls = failing(HeaderError("Too Many Requests", {"retry-after": "12"}))
    with pytest.raises(RateLimitError) as exc:
        call_with_retries_sync(fn, retries=3)
    assert exc.value.retry_after_seconds == 12
    assert calls == [1]


def test_rate_limit_without_hint_suggests_a_wait():
    fn, _ = failing(Exception("429 RESOURCE_EXHAUSTED: quota"))
    with pytest.raises(RateLimitError) as exc:
        call_with_retries_sync(fn)
    assert exc.value.retry_after_seconds >= int(DEFAULT_RETRY_AFTER_SECONDS * 0.95)


def test_open_backoff_window_fails_fast():
    fn, _ = failing(HeaderError("Too Many Requests", {"retry-after": "30"}))
    with pytest.raises(RateLimitError):
        call_with_retries_sync(fn)

    fn2, calls2 = failing()
    with pytest.raises(RateLimitError) as exc:
        call_with_retries_sync(fn2)
    assert calls2 == []
    assert 0 < exc.value.retry_after_seconds <= 30


def test_auth_failure_is_distinct():
    fn, calls = failing(StatusError("Incorrect API key provided", 401))
    with pytest.raises(AuthError):
        call_with_retries_sync(fn)
    assert calls == [1]


def test_timeouts_are_retried_then_succeed():
    fn, calls = failing(TimeoutError("timed out"), TimeoutError("timed out"))
    assert call_with_retries_sync(fn, retries=3) == "ok"
    assert len(calls) == 3


def test_timeouts_exhaust_into_network_error():
    fn, calls = failing(*[ConnectionError("reset")] * 5)
    logged = []
    with pytest.raises(NetworkError):
        call_with_retries_sync(fn, retries=3, log=logged.append)
    assert len(calls) == 3
    assert len(logged) == 3


def test_other_errors_propagate_unchanged():
    fn, calls = failing(KeyError("boom"))
    with pytest.raises(KeyError):
        call_with_retries_sync(fn)
    assert calls == [1]


def test_model_props():
    assert is_openai_model("gpt-5.1_repair")
    assert not is_openai_model("gemini-2.5-flash")
    base, params = parse_model_name("gpt-5.1_repair")
    assert base == "gpt-5.1"
    assert params == {"text": {"verbosity": "low"}, "reasoning": {"effort": "low"}, "service_tier": "default"}
    assert parse_model_name("gpt-5.1") == ("gpt-5.1", {})
    assert parse_model_name("gpt-5.1_high_flex")[1]["service_tier"] == "flex"
    with pytest.raises(InvalidRequestError):
        parse_model_name("gpt-5.1_bogus")


def openai_client_with(*outputs):
    responses = [
        SimpleNamespace(output_text=text, usage=SimpleNamespace(input_tokens=10, output_tokens=5, total_tokens=15, input_tokens_details=None))
        for text in outputs
    ]
    llm = LlmClient.__new__(LlmClient)
    llm.provider = "openai"
    llm.model_name = "gpt-5.1"
    llm._openai_params = {"service_tier": "default"}
    llm.last_usage = None
    llm._client = SimpleNamespace(responses=SimpleNamespace(create=lambda **kwargs: responses.pop(0)))
    return llm


def test_invoke_accumulates_usage_across_calls():
    llm = openai_client_with(" first ", "second")
    assert llm.invoke("prompt one") == "first"
    assert llm.invoke("prompt two") == "second"
    assert llm.last_usage["total_token_count"] == 30
    assert llm.last_usage["prompt_token_count"] == 20
