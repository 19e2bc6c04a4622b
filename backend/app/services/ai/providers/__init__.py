"""
Provider Adapters Package

One adapter per ProviderKind. To add a provider:
1. Add a member to ``ProviderKind`` and a settings model in ``app.core.models``
2. Create a module implementing ``BaseProvider``
3. Register it in PROVIDER_REGISTRY below

The registry must cover every ProviderKind; importing this package fails
otherwise.
"""

from typing import Any

from app.core.models import ProviderKind
from app.services.ai.providers.base import BaseProvider
from app.services.ai.providers.gemini import GeminiProvider
from app.services.ai.providers.http_api import HttpApiProvider
from app.services.ai.providers.ollama import OllamaProvider

PROVIDER_REGISTRY: dict[ProviderKind, type[BaseProvider]] = {
    ProviderKind.GEMINI: GeminiProvider,
    ProviderKind.OLLAMA: OllamaProvider,
    ProviderKind.HTTP_API: HttpApiProvider,
}

_missing = set(ProviderKind) - set(PROVIDER_REGISTRY)
if _missing:
    raise RuntimeError(f"No adapter registered for: {sorted(k.value for k in _missing)}")


def get_all_providers() -> dict[str, dict[str, Any]]:
    """Return display info for all registered providers."""
    return {kind.value: cls.get_provider_info() for kind, cls in PROVIDER_REGISTRY.items()}


__all__ = [
    "PROVIDER_REGISTRY",
    "BaseProvider",
    "GeminiProvider",
    "HttpApiProvider",
    "OllamaProvider",
    "get_all_providers",
]
