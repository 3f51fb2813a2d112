"""Provider-neutral chat completion clients.

Each adapter turns the shared message list into its provider's wire format
and normalizes the reply into a ChatCompletionResult. Transport failures are
raised as LLMProviderError with a ``retryable`` flag so callers never have to
parse provider-specific error text.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Literal, Optional, Protocol, Sequence

import httpx

Role = Literal["system", "user", "assistant"]
ProviderName = Literal["openai", "anthropic", "google"]

SUPPORTED_PROVIDERS = ("openai", "anthropic", "google")
DEFAULT_MODELS: Dict[str, str] = {
    "openai": "gpt-4o",
    "anthropic": "claude-sonnet-4-20250514",
    "google": "gemini-2.0-flash",
}
DEFAULT_MAX_TOKENS = 4000
DEFAULT_TEMPERATURE = 0.3
_RETRYABLE_STATUS = {408, 409, 429}


class LLMProviderError(RuntimeError):
    def __init__(
        self,
        message: str,
        *,
        provider: str = "",
        status_code: Optional[int] = None,
        retryable: bool = False,
    ) -> None:
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code
        self.retryable = retryable


@dataclass(frozen=True)
class ChatMessage:
    role: Role
    content: str


@dataclass(frozen=True)
class ChatCompletionOptions:
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    json_mode: bool = False


@dataclass(frozen=True)
class ChatCompletionResult:
    content: str
    input_tokens: int
    output_tokens: int
    total_tokens: int


def is_retryable_status(status_code: int) -> bool:
    return status_code in _RETRYABLE_STATUS or status_code >= 500


class ChatCompletionClient(Protocol):
    provider_name: str
    model_name: str

    def chat_completion(
        self,
        messages: Sequence[ChatMessage],
        options: Optional[ChatCompletionOptions] = None,
    ) -> ChatCompletionResult:
        ...


def _split_system(messages: Sequence[ChatMessage]) -> tuple[str, List[ChatMessage]]:
    system_text = "\n\n".join(m.content for m in messages if m.role == "system")
    rest = [m for m in messages if m.role != "system"]
    return system_text, rest


class LLMClient:
    provider_name: str = ""

    def __init__(self, api_key: str, model: Optional[str] = None, timeout_s: float = 60.0) -> None:
        if not api_key:
            raise LLMProviderError(
                f"{self.provider_name} API key is not configured",
                provider=self.provider_name,
            )
        self._api_key = api_key
        self.model_name = model or DEFAULT_MODELS[self.provider_name]
        self._timeout_s = timeout_s

    def chat_completion(
        self,
        messages: Sequence[ChatMessage],
        options: Optional[ChatCompletionOptions] = None,
    ) -> ChatCompletionResult:
        raise NotImplementedError

    def _post_json(self, url: str, payload: Dict[str, Any], headers: Dict[str, str]) -> Dict[str, Any]:
        timeout = httpx.Timeout(self._timeout_s)
        try:
            with httpx.Client(timeout=timeout) as client:
                response = client.post(url, json=payload, headers=headers)
        except httpx.TimeoutException as exc:
            raise LLMProviderError(
                f"{self.provider_name} request timeout: {exc}",
                provider=self.provider_name,
                retryable=True,
            ) from exc
        except httpx.HTTPError as exc:
            raise LLMProviderError(
                f"{self.provider_name} network error: {exc}",
                provider=self.provider_name,
                retryable=True,
            ) from exc

        if response.status_code < 200 or response.status_code >= 300:
            detail = response.text.strip()
            if len(detail) > 400:
                detail = detail[:400]
            raise LLMProviderError(
                f"{self.provider_name} API error ({response.status_code}): {detail}",
                provider=self.provider_name,
                status_code=response.status_code,
                retryable=is_retryable_status(response.status_code),
            )
        body = response.json()
        if not isinstance(body, dict):
            raise LLMProviderError(
                f"{self.provider_name} returned a non-object response",
                provider=self.provider_name,
            )
        return body


class OpenAIClient(LLMClient):
    provider_name = "openai"

    def __init__(
        self,
        api_key: str,
        model: Optional[str] = None,
        timeout_s: float = 60.0,
        base_url: str = "https://api.openai.com/v1",
    ) -> None:
        super().__init__(api_key, model, timeout_s)
        self._base_url = base_url.rstrip("/")

    def chat_completion(
        self,
        messages: Sequence[ChatMessage],
        options: Optional[ChatCompletionOptions] = None,
    ) -> ChatCompletionResult:
        options = options or ChatCompletionOptions()
        payload: Dict[str, Any] = {
            "model": self.model_name,
            "messages": [{"role": m.role, "content": m.content} for m in messages],
            "temperature": DEFAULT_TEMPERATURE if options.temperature is None else options.temperature,
            "max_tokens": options.max_tokens or DEFAULT_MAX_TOKENS,
        }
        if options.json_mode:
            payload["response_format"] = {"type": "json_object"}

        body = self._post_json(
            f"{self._base_url}/chat/completions",
            payload,
            {"Authorization": f"Bearer {self._api_key}"},
        )
        choices = body.get("choices") or []
        content = ""
        if choices:
            content = ((choices[0] or {}).get("message") or {}).get("content") or ""
        usage = body.get("usage") or {}
        return ChatCompletionResult(
            content=content,
            input_tokens=int(usage.get("prompt_tokens") or 0),
            output_tokens=int(usage.get("completion_tokens") or 0),
            total_tokens=int(usage.get("total_tokens") or 0),
        )


class AnthropicClient(LLMClient):
    provider_name = "anthropic"

    def __init__(
        self,
        api_key: str,
        model: Optional[str] = None,
        timeout_s: float = 60.0,
        base_url: str = "https://api.anthropic.com/v1",
        api_version: str = "2023-06-01",
    ) -> None:
        super().__init__(api_key, model, timeout_s)
        self._base_url = base_url.rstrip("/")
        self._api_version = api_version

    def chat_completion(
        self,
        messages: Sequence[ChatMessage],
        options: Optional[ChatCompletionOptions] = None,
    ) -> ChatCompletionResult:
        options = options or ChatCompletionOptions()
        system_text, rest = _split_system(messages)
        payload: Dict[str, Any] = {
            "model": self.model_name,
            "max_tokens": options.max_tokens or DEFAULT_MAX_TOKENS,
            "messages": [{"role": m.role, "content": m.content} for m in rest],
        }
        if system_text:
            payload["system"] = system_text
        if options.temperature is not None:
            payload["temperature"] = options.temperature

        body = self._post_json(
            f"{self._base_url}/messages",
            payload,
            {"x-api-key": self._api_key, "anthropic-version": self._api_version},
        )
        content = "".join(
            block.get("text") or ""
            for block in body.get("content") or []
            if block.get("type") == "text"
        )
        usage = body.get("usage") or {}
        input_tokens = int(usage.get("input_tokens") or 0)
        output_tokens = int(usage.get("output_tokens") or 0)
        return ChatCompletionResult(
            content=content,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            total_tokens=input_tokens + output_tokens,
        )


class GeminiClient(LLMClient):
    provider_name = "google"

    def __init__(
        self,
        api_key: str,
        model: Optional[str] = None,
        timeout_s: float = 60.0,
        base_url: str = "https://generativelanguage.googleapis.com/v1beta",
    ) -> None:
        super().__init__(api_key, model, timeout_s)
        self._base_url = base_url.rstrip("/")

    def chat_completion(
        self,
        messages: Sequence[ChatMessage],
        options: Optional[ChatCompletionOptions] = None,
    ) -> ChatCompletionResult:
        options = options or ChatCompletionOptions()
        system_text, rest = _split_system(messages)
        generation_config: Dict[str, Any] = {
            "temperature": DEFAULT_TEMPERATURE if options.temperature is None else options.temperature,
            "maxOutputTokens": options.max_tokens or DEFAULT_MAX_TOKENS,
        }
        if options.json_mode:
            generation_config["responseMimeType"] = "application/json"
        payload: Dict[str, Any] = {
            "contents": [
                {
                    "role": "model" if m.role == "assistant" else "user",
                    "parts": [{"text": m.content}],
                }
                for m in rest
            ],
            "generationConfig": generation_config,
        }
        if system_text:
            payload["systemInstruction"] = {"parts": [{"text": system_text}]}

        body = self._post_json(
            f"{self._base_url}/models/{self.model_name}:generateContent",
            payload,
            {"x-goog-api-key": self._api_key},
        )
        candidates = body.get("candidates") or []
        parts: List[Dict[str, Any]] = []
        if candidates:
            parts = ((candidates[0] or {}).get("content") or {}).get("parts") or []
        usage = body.get("usageMetadata") or {}
        return ChatCompletionResult(
            content="".join(part.get("text") or "" for part in parts),
            input_tokens=int(usage.get("promptTokenCount") or 0),
            output_tokens=int(usage.get("candidatesTokenCount") or 0),
            total_tokens=int(usage.get("totalTokenCount") or 0),
        )


def create_llm_client(
    provider: str,
    api_key: str,
    model: Optional[str] = None,
    *,
    timeout_s: float = 60.0,
    base_url: Optional[str] = None,
) -> LLMClient:
    normalized = provider.strip().lower()
    if normalized == "openai":
        return OpenAIClient(api_key, model, timeout_s, base_url or "https://api.openai.com/v1")
    if normalized == "anthropic":
        return AnthropicClient(api_key, model, timeout_s, base_url or "https://api.anthropic.com/v1")
    if normalized == "google":
        return GeminiClient(
            api_key, model, timeout_s, base_url or "https://generativelanguage.googleapis.com/v1beta"
        )
    raise ValueError(f"unsupported AI provider: {provider}")
