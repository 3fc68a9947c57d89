"""Model back-ends by the name a client selects ("claude", "gemini", ...)."""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Callable

from ..errors import ProviderNotAvailableError
from .base import Provider

if TYPE_CHECKING:
    from ..config import ProviderConfig

logger = logging.getLogger(__name__)


class ProviderRegistry:
    def __init__(self) -> None:
        self._providers: dict[str, Provider] = {}

    def register(self, name: str, provider: Provider) -> None:
        if name in self._providers:
            logger.warning("Provider %s registered twice; replacing", name)
        self._providers[name] = provider
        logger.info("Provider registered name=%s backend=%s", name, provider.name)

    def get(self, name: str) -> Provider | None:
        return self._providers.get(name)

    def get_or_raise(self, name: str) -> Provider:
        try:
            return self._providers[name]
        except KeyError:
            logger.warning(
                "Unknown model %r requested (registered: %s)",
                name, ", ".join(self._providers) or "none",
            )
            raise ProviderNotAvailableError(name) from None

    def list_names(self) -> list[str]:
        return list(self._providers)

    def list_available(self) -> list[str]:
        """Names whose CLI can actually be launched on this host."""
        return [name for name, p in self._providers.items() if p.is_available()]

    def validate(self) -> dict[str, bool]:
        """Availability per registered name; missing CLIs are logged."""
        report = {name: p.is_available() for name, p in self._providers.items()}
        missing = sorted(name for name, ok in report.items() if not ok)
        if missing:
            logger.warning("Providers without a usable CLI: %s", ", ".join(missing))
        else:
            logger.info("All providers available: %s", ", ".join(report) or "none")
        return report

    async def shutdown_all(self) -> None:
        for name, provider in self._providers.items():
            try:
                await provider.shutdown()
            except Exception:
                logger.exception("Provider %s failed to shut down", name)


def _factories() -> dict[str, Callable[..., Provider]]:
    from .claude_provider import ClaudeProvider
    from .gemini_provider import GeminiProvider

    return {"claude": ClaudeProvider, "gemini": GeminiProvider}


def build_provider_registry(
    provider_configs: dict[str, ProviderConfig] | None = None,
) -> ProviderRegistry:
    """One provider per config entry; both back-ends when none are given."""
    from ..config import ProviderConfig

    factories = _factories()
    configs = provider_configs or {
        kind: ProviderConfig(type=kind) for kind in factories
    }
    registry = ProviderRegistry()
    for name, cfg in configs.items():
        factory = factories.get(cfg.type)
        if factory is None:
            logger.warning("Skipping provider %s: unknown type %r", name, cfg.type)
            continue
        registry.register(name, factory(
            command=cfg.command or cfg.type,
            api_key_env=cfg.api_key_env,
            default_model=cfg.model_id,
            history_window=cfg.history_window,
            turn_timeout_seconds=cfg.turn_timeout_seconds,
        ))
    return registry
