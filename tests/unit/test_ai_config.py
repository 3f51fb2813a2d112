from __future__ import annotations

from typing import Any, Dict, List, Optional

import pytest

from callsight.ai_config import AIClientResolver, AIConfigError
from callsight.config import Settings
from callsight.llm_failover import CircuitBreakerRegistry
from callsight.store import OrgAISettings


class _FakeStore:
    def __init__(self, org_settings: Optional[OrgAISettings] = None) -> None:
        self.org_settings = org_settings

    def get_org_ai_settings(self, organization_id: str) -> Optional[OrgAISettings]:
        return self.org_settings


class _StubClient:
    def __init__(self, provider: str, model: Optional[str]) -> None:
        self.provider_name = provider
        self.model_name = model or "default"


def _factory(recorder: List[Dict[str, Any]]):
    def build(provider: str, api_key: str, model: Optional[str] = None, **kwargs: Any) -> _StubClient:
        recorder.append({"provider": provider, "api_key": api_key, "model": model, **kwargs})
        return _StubClient(provider, model)

    return build


def _settings(**overrides: Any) -> Settings:
    values = {
        "openai_api_key": "sk-openai",
        "anthropic_api_key": "sk-anthropic",
        "google_api_key": "",
        "llm_default_provider": "openai",
        "llm_default_model": "gpt-4o",
        "llm_fallback_provider": "anthropic",
        "llm_fallback_model": "",
    }
    values.update(overrides)
    return Settings(**values)


def test_platform_defaults_used_without_org_settings() -> None:
    built: List[Dict[str, Any]] = []
    resolver = AIClientResolver(_FakeStore(), _settings(), CircuitBreakerRegistry(), client_factory=_factory(built))

    client = resolver.resolve("org-a")

    assert client.primary.provider_name == "openai"
    assert client.fallback is not None and client.fallback.provider_name == "anthropic"
    assert built[0]["api_key"] == "sk-openai"
    assert built[0]["base_url"] == "https://api.openai.com/v1"
    assert client.circuit_key == "openai:gpt-4o"


def test_org_preference_wins() -> None:
    built: List[Dict[str, Any]] = []
    org = OrgAISettings(
        organization_id="org-a",
        default_provider="anthropic",
        default_model="claude-sonnet-4-20250514",
        fallback_provider=None,
        fallback_model=None,
    )
    resolver = AIClientResolver(_FakeStore(org), _settings(), CircuitBreakerRegistry(), client_factory=_factory(built))

    client = resolver.resolve("org-a")

    assert client.primary.provider_name == "anthropic"
    assert client.fallback is None
    assert len(built) == 1


def test_missing_fallback_key_degrades_to_primary_only() -> None:
    resolver = AIClientResolver(
        _FakeStore(),
        _settings(llm_fallback_provider="google"),
        CircuitBreakerRegistry(),
        client_factory=_factory([]),
    )
    assert resolver.resolve("org-a").fallback is None


def test_missing_primary_key_or_unknown_provider_raises() -> None:
    registry = CircuitBreakerRegistry()
    with pytest.raises(AIConfigError):
        AIClientResolver(_FakeStore(), _settings(openai_api_key=""), registry, client_factory=_factory([])).resolve("o")
    with pytest.raises(AIConfigError):
        AIClientResolver(
            _FakeStore(), _settings(llm_default_provider="mistral"), registry, client_factory=_factory([])
        ).resolve("o")


def test_same_provider_pairing_shares_breaker() -> None:
    registry = CircuitBreakerRegistry()
    resolver = AIClientResolver(_FakeStore(), _settings(), registry, client_factory=_factory([]))
    assert resolver.resolve("org-a").breaker is resolver.resolve("org-b").breaker
