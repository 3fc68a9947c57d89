"""Model back-ends for agent turns."""
from .base import ApprovalCallback, Provider, TurnRequest
from .registry import ProviderRegistry, build_provider_registry
from .claude_provider import ClaudeProvider
from .gemini_provider import GeminiProvider

__all__ = [
    "ApprovalCallback",
    "Provider",
    "TurnRequest",
    "ProviderRegistry",
    "build_provider_registry",
    "ClaudeProvider",
    "GeminiProvider",
]
