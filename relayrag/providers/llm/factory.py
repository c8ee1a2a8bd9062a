from __future__ import annotations

from typing import Mapping

from relayrag.core.config import get_settings
from relayrag.core.errors import ProviderConfigError
from relayrag.providers.llm.anthropic_provider import AnthropicProvider
from relayrag.providers.llm.base import LLMProvider
from relayrag.providers.llm.catalog import Vendor, parse_vendor
from relayrag.providers.llm.fake import FakeLLMProvider
from relayrag.providers.llm.gemini_vertex import GeminiVertexProvider
from relayrag.providers.llm.openai_provider import OpenAIProvider


class ProviderRegistry:
    """Closed mapping from vendor to adapter, built once at startup and injected."""

    def __init__(self, providers: Mapping[Vendor, LLMProvider]) -> None:
        self._providers = dict(providers)

    def get(self, vendor: str | Vendor) -> LLMProvider:
        key = parse_vendor(vendor)
        provider = self._providers.get(key)
        if provider is None:
            raise ProviderConfigError(f"AI vendor not enabled: {key.value}")
        return provider

    def vendors(self) -> list[Vendor]:
        return list(self._providers)


def build_provider_registry() -> ProviderRegistry:
    # Adapters validate credentials lazily so one missing key only disables its vendor.
    providers: dict[Vendor, LLMProvider] = {
        Vendor.ANTHROPIC: AnthropicProvider(),
        Vendor.OPENAI: OpenAIProvider(),
        Vendor.GOOGLE: GeminiVertexProvider(),
    }
    if get_settings().enable_fake_vendor:
        providers[Vendor.FAKE] = FakeLLMProvider()
    return ProviderRegistry(providers)
