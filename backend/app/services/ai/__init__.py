"""
AI Service Package

Provider gateway for user-configured inference backends:
- Credential vault for provider secrets
- Configuration resolution
- Message normalization and structured output
- Provider adapters (Gemini, Ollama, OpenAI-compatible HTTP)
"""

from app.services.ai.encryption import CredentialVault, get_vault
from app.services.ai.gateway import AIGateway, GatewayResult, GatewayStream, GenerationOverrides
from app.services.ai.interface import AIProviderInterface, ProviderResponse, SystemPrompt

__all__ = [
    "AIGateway",
    "AIProviderInterface",
    "CredentialVault",
    "GatewayResult",
    "GatewayStream",
    "GenerationOverrides",
    "ProviderResponse",
    "SystemPrompt",
    "get_vault",
]
