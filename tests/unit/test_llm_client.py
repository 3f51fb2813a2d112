from __future__ import annotations

from typing import Any, Dict, List

import httpx
import pytest

from callsight.llm_client import (
    AnthropicClient,
    ChatCompletionOptions,
    ChatMessage,
    GeminiClient,
    LLMProviderError,
    OpenAIClient,
    create_llm_client,
    is_retryable_status,
)


class _FakeResponse:
    def __init__(self, status_code: int, body: Any) -> None:
        self.status_code = status_code
        self._body = body
        self.text = str(body)

    def json(self) -> Any:
        return self._body


class _FakeClient:
    def __init__(self, response: _FakeResponse, recorder: List[Dict[str, Any]]) -> None:
        self._response = response
        self._recorder = recorder

    def __enter__(self) -> "_FakeClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        return None

    def post(self, url: str, json: Dict[str, Any], headers: Dict[str, str]) -> _FakeResponse:
        self._recorder.append({"url": url, "payload": json, "headers": headers})
        return self._response


def _install(monkeypatch: pytest.MonkeyPatch, status: int, body: Any) -> List[Dict[str, Any]]:
    calls: List[Dict[str, Any]] = []

    def fake_client(*args, **kwargs):
        return _FakeClient(_FakeResponse(status, body), calls)

    monkeypatch.setattr("callsight.llm_client.httpx.Client", fake_client)
    return calls


MESSAGES = [
    ChatMessage(role="system", content="be terse"),
    ChatMessage(role="user", content="hello"),
    ChatMessage(role="assistant", content="hi"),
    ChatMessage(role="user", content="summarize"),
]


def test_openai_payload_and_usage(monkeypatch: pytest.MonkeyPatch) -> None:
    calls = _install(
        monkeypatch,
        200,
        {
            "choices": [{"message": {"content": "{\"tags\": []}"}}],
            "usage": {"prompt_tokens": 12, "completion_tokens": 3, "total_tokens": 15},
        },
    )
    client = OpenAIClient("sk-test", "gpt-4o-mini", base_url="http://llm.local/v1/")
    result = client.chat_completion(MESSAGES, ChatCompletionOptions(temperature=0.1, json_mode=True))

    assert result.content == "{\"tags\": []}"
    assert result.total_tokens == 15
    assert calls[0]["url"] == "http://llm.local/v1/chat/completions"
    assert calls[0]["headers"]["Authorization"] == "Bearer sk-test"
    payload = calls[0]["payload"]
    assert payload["model"] == "gpt-4o-mini"
    assert payload["temperature"] == 0.1
    assert payload["response_format"] == {"type": "json_object"}
    assert [m["role"] for m in payload["messages"]] == ["system", "user", "assistant", "user"]


def test_anthropic_moves_system_prompt(monkeypatch: pytest.MonkeyPatch) -> None:
    calls = _install(
        monkeypatch,
        200,
        {
            "content": [{"type": "text", "text": "part one "}, {"type": "text", "text": "two"}],
            "usage": {"input_tokens": 20, "output_tokens": 5},
        },
    )
    client = AnthropicClient("ak-test")
    result = client.chat_completion(MESSAGES)

    payload = calls[0]["payload"]
    assert payload["system"] == "be terse"
    assert all(m["role"] != "system" for m in payload["messages"])
    assert calls[0]["headers"]["x-api-key"] == "ak-test"
    assert result.content == "part one two"
    assert result.total_tokens == 25


def test_gemini_maps_roles_and_sends_key_in_header(monkeypatch: pytest.MonkeyPatch) -> None:
    calls = _install(
        monkeypatch,
        200,
        {
            "candidates": [{"content": {"parts": [{"text": "answer"}]}}],
            "usageMetadata": {"promptTokenCount": 7, "candidatesTokenCount": 2, "totalTokenCount": 9},
        },
    )
    client = GeminiClient("gk-test", "gemini-2.0-flash")
    result = client.chat_completion(MESSAGES, ChatCompletionOptions(json_mode=True))

    call = calls[0]
    assert call["url"].endswith("/models/gemini-2.0-flash:generateContent")
    assert "key=" not in call["url"]
    assert call["headers"]["x-goog-api-key"] == "gk-test"
    assert [c["role"] for c in call["payload"]["contents"]] == ["user", "model", "user"]
    assert call["payload"]["systemInstruction"] == {"parts": [{"text": "be terse"}]}
    assert call["payload"]["generationConfig"]["responseMimeType"] == "application/json"
    assert result.content == "answer"
    assert result.total_tokens == 9


@pytest.mark.parametrize(
    "status,retryable",
    [(429, True), (503, True), (408, True), (400, False), (401, False), (404, False)],
)
def test_http_errors_carry_retryable_flag(
    monkeypatch: pytest.MonkeyPatch, status: int, retryable: bool
) -> None:
    _install(monkeypatch, status, {"error": "nope"})
    client = OpenAIClient("sk-test")
    with pytest.raises(LLMProviderError) as excinfo:
        client.chat_completion(MESSAGES)
    assert excinfo.value.retryable is retryable
    assert excinfo.value.status_code == status
    assert excinfo.value.provider == "openai"


def test_timeout_is_retryable(monkeypatch: pytest.MonkeyPatch) -> None:
    class _TimeoutClient(_FakeClient):
        def post(self, url, json, headers):
            raise httpx.ReadTimeout("slow")

    monkeypatch.setattr(
        "callsight.llm_client.httpx.Client",
        lambda *args, **kwargs: _TimeoutClient(_FakeResponse(200, {}), []),
    )
    with pytest.raises(LLMProviderError) as excinfo:
        OpenAIClient("sk-test").chat_completion(MESSAGES)
    assert excinfo.value.retryable is True


def test_missing_api_key_rejected() -> None:
    with pytest.raises(LLMProviderError):
        OpenAIClient("")


def test_factory_selects_adapter() -> None:
    assert isinstance(create_llm_client("OpenAI", "k"), OpenAIClient)
    assert isinstance(create_llm_client("anthropic", "k"), AnthropicClient)
    google = create_llm_client("google", "k", "gemini-1.5-pro")
    assert isinstance(google, GeminiClient)
    assert google.model_name == "gemini-1.5-pro"
    with pytest.raises(ValueError):
        create_llm_client("mistral", "k")


def test_retryable_status_classes() -> None:
    assert is_retryable_status(500)
    assert is_retryable_status(409)
    assert not is_retryable_status(422)
