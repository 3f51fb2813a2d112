from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional

from .config import Settings
from .llm_client import SUPPORTED_PROVIDERS, ChatCompletionClient, create_llm_client
from .llm_failover import CircuitBreakerRegistry, FailoverLLMClient
from .logging_utils import get_logger
from .store import TranscriptStore

logger = get_logger(__name__)

ClientFactory = Callable[..., ChatCompletionClient]


class AIConfigError(RuntimeError):
    pass


@dataclass(frozen=True)
class ProviderChoice:
    provider: str
    model: Optional[str]


class AIClientResolver:
    """Builds the failover-wrapped model client an organization should use.

    An organization's own provider preference wins; otherwise the platform
    defaults from settings apply. Provider credentials always come from
    settings.
    """

    def __init__(
        self,
        store: TranscriptStore,
        settings: Settings,
        registry: CircuitBreakerRegistry,
        client_factory: ClientFactory = create_llm_client,
    ) -> None:
        self._store = store
        self._settings = settings
        self._registry = registry
        self._client_factory = client_factory

    def _api_key(self, provider: str) -> str:
        return {
            "openai": self._settings.openai_api_key,
            "anthropic": self._settings.anthropic_api_key,
            "google": self._settings.google_api_key,
        }.get(provider, "")

    def _base_url(self, provider: str) -> str:
        return {
            "openai": self._settings.openai_base_url,
            "anthropic": self._settings.anthropic_base_url,
            "google": self._settings.google_base_url,
        }[provider]

    def _choices(self, organization_id: str) -> tuple[ProviderChoice, Optional[ProviderChoice]]:
        org_settings = self._store.get_org_ai_settings(organization_id)
        if org_settings is not None:
            primary = ProviderChoice(org_settings.default_provider, org_settings.default_model)
            fallback_provider = org_settings.fallback_provider
            fallback_model = org_settings.fallback_model
        else:
            primary = ProviderChoice(
                self._settings.llm_default_provider,
                self._settings.llm_default_model or None,
            )
            fallback_provider = self._settings.llm_fallback_provider or None
            fallback_model = self._settings.llm_fallback_model or None
        fallback = ProviderChoice(fallback_provider, fallback_model) if fallback_provider else None
        return primary, fallback

    def _build(self, choice: ProviderChoice) -> ChatCompletionClient:
        provider = choice.provider.strip().lower()
        if provider not in SUPPORTED_PROVIDERS:
            raise AIConfigError(f"unsupported AI provider: {choice.provider}")
        api_key = self._api_key(provider)
        if not api_key:
            raise AIConfigError(f"no API key configured for provider {provider}")
        return self._client_factory(
            provider,
            api_key,
            choice.model,
            timeout_s=self._settings.llm_timeout_s,
            base_url=self._base_url(provider),
        )

    def resolve(self, organization_id: str) -> FailoverLLMClient:
        primary_choice, fallback_choice = self._choices(organization_id)
        primary = self._build(primary_choice)

        fallback: Optional[ChatCompletionClient] = None
        if fallback_choice is not None:
            try:
                fallback = self._build(fallback_choice)
            except AIConfigError as exc:
                logger.warning(
                    "ai_config.fallback_unavailable org=%s provider=%s error=%s",
                    organization_id,
                    fallback_choice.provider,
                    str(exc),
                )

        return FailoverLLMClient(
            primary,
            fallback,
            self._registry,
            failure_threshold=self._settings.llm_failure_threshold,
            cooldown_s=self._settings.llm_cooldown_s,
            max_attempts=self._settings.llm_max_attempts,
        )
