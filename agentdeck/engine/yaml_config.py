"""YAML configuration loader.

Loads an optional YAML file that overrides env-derived engine settings
and declares the model back-ends.

Example YAML:
    engine:
      storage_root: ./storage
      max_agents_per_workspace: 4
      approval_timeout_seconds: 300
      default_model: claude

    providers:
      claude:
        type: claude
        model_id: claude-sonnet-4-5
        history_window: 10
        turn_timeout_seconds: 300
      gemini:
        type: gemini
        command: gemini
        api_key_env: GEMINI_API_KEY
        history_window: 8
        turn_timeout_seconds: 120
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field, fields
from pathlib import Path

import yaml

from .config import EngineConfig, ProviderConfig

logger = logging.getLogger(__name__)

CONFIG_DIRNAME = ".agentdeck"
CONFIG_FILENAME = "agentdeck.yaml"

_DEFAULT_PROVIDERS = {
    "claude": ProviderConfig(type="claude"),
    "gemini": ProviderConfig(type="gemini"),
}


@dataclass
class DeckConfig:
    """Everything the server needs: engine settings + providers."""
    engine: EngineConfig
    providers: dict[str, ProviderConfig] = field(default_factory=dict)


def default_providers() -> dict[str, ProviderConfig]:
    return {
        name: ProviderConfig(type=cfg.type)
        for name, cfg in _DEFAULT_PROVIDERS.items()
    }


def discover_config_path(cwd: Path) -> Path | None:
    """Return ``.agentdeck/agentdeck.yaml`` (or legacy ``agentdeck.yaml``)."""
    candidates = [cwd / CONFIG_DIRNAME / CONFIG_FILENAME, cwd / CONFIG_FILENAME]
    for candidate in candidates:
        if candidate.exists():
            logger.info("Auto-discovered config: %s", candidate)
            return candidate
    logger.info(
        "No config file found (tried %s); using defaults",
        ", ".join(str(c) for c in candidates),
    )
    return None


def _apply_engine_overrides(
    engine: EngineConfig, engine_raw: dict,
) -> EngineConfig:
    known = {f.name: f for f in fields(EngineConfig)}
    for key, value in engine_raw.items():
        if key not in known:
            logger.warning("Ignoring unknown engine setting: %s", key)
            continue
        current = getattr(engine, key)
        if isinstance(current, bool):
            value = bool(value)
        elif isinstance(current, int):
            value = int(value)
        elif isinstance(current, float):
            value = float(value)
        elif isinstance(current, list):
            value = [str(v) for v in (value or [])]
        else:
            value = str(value)
        setattr(engine, key, value)
    return engine


def _parse_provider(name: str, raw: dict) -> ProviderConfig:
    provider_type = str(raw.get("type") or name)
    if provider_type not in _DEFAULT_PROVIDERS:
        raise ValueError(
            f"Provider '{name}' has unsupported type '{provider_type}'"
        )
    history_window = raw.get("history_window")
    turn_timeout = raw.get("turn_timeout_seconds")
    return ProviderConfig(
        type=provider_type,
        command=raw.get("command"),
        model_id=raw.get("model_id"),
        api_key_env=raw.get("api_key_env"),
        history_window=int(history_window) if history_window is not None else None,
        turn_timeout_seconds=float(turn_timeout) if turn_timeout is not None else None,
    )


def load_yaml_config(
    path: str | Path, base: EngineConfig | None = None,
) -> DeckConfig:
    """Load and parse a YAML config file on top of *base* settings."""
    path = Path(path)
    logger.info(
        "load_yaml_config: attempting to load config from %s (exists=%s)",
        path, path.exists(),
    )
    try:
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.error(
            "load_yaml_config: config file not found at %s (absolute path: %s)",
            path, path.absolute(),
        )
        raise
    except yaml.YAMLError as exc:
        logger.error("load_yaml_config: YAML parse error in %s: %s", path, exc)
        raise

    if not isinstance(raw, dict):
        raise ValueError(f"{path}: top level must be a mapping")

    logger.info(
        "Parsed YAML config %s, sections: %s",
        path.name, ", ".join(sorted(raw.keys())) or "(empty)",
    )

    engine = _apply_engine_overrides(
        base or EngineConfig.from_env(), raw.get("engine") or {},
    )

    providers_raw = raw.get("providers")
    if providers_raw:
        providers = {
            name: _parse_provider(name, cfg or {})
            for name, cfg in providers_raw.items()
        }
    else:
        providers = default_providers()

    if engine.default_model not in providers:
        logger.warning(
            "Default model %s is not a configured provider (have: %s)",
            engine.default_model, ", ".join(sorted(providers)),
        )
    return DeckConfig(engine=engine, providers=providers)


def load_config(
    config_path: str | Path | None = None, cwd: Path | None = None,
) -> DeckConfig:
    """Resolve config: explicit path, auto-discovered file, or env only."""
    path = Path(config_path) if config_path else discover_config_path(
        cwd or Path.cwd()
    )
    if path is None:
        return DeckConfig(
            engine=EngineConfig.from_env(), providers=default_providers(),
        )
    return load_yaml_config(path)
