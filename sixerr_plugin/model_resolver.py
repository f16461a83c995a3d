"""Resolve which model the plugin serves and how to authenticate to it.

The local agent keeps its settings in an agent directory:

    <agent_dir>/openclaw.json   {"agents": {"defaults": {"model": {"primary": "provider/model"}}}}
    <agent_dir>/models.json     {"providers": {"<provider>": {"baseUrl": ..., "apiKey": ...,
                                                "models": [{"id": ..., "maxTokens": ...}]}}}
    <agent_dir>/auth.json       {"<provider>": {"key": "..."}}

Failing to resolve the model is fatal at startup. API keys are looked up on
every request so rotated keys are picked up without a restart.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional

from .errors import ModelResolutionError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 120.0


def resolve_agent_dir() -> Path:
    env_dir = os.getenv("OPENCLAW_AGENT_DIR")
    if env_dir:
        return Path(env_dir)
    return Path.home() / ".openclaw" / "agents" / "default" / "agent"


def parse_model_spec(spec: str) -> Optional[tuple[str, str]]:
    """Split "provider/model" on the first slash; model ids may contain slashes."""
    provider, sep, model = spec.partition("/")
    if not sep or not provider or not model:
        return None
    return provider, model


def _read_json(path: Path, what: str) -> Any:
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError:
        raise ModelResolutionError(f"Missing {path} - cannot determine {what}.")
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        raise ModelResolutionError(f"Invalid JSON in {path}")


def read_model_config(agent_dir: Path) -> tuple[str, str]:
    """Read the primary provider/model from openclaw.json."""
    config_path = agent_dir / "openclaw.json"
    config = _read_json(config_path, "which model to use")

    primary = (
        config.get("agents", {}).get("defaults", {}).get("model", {}).get("primary")
        if isinstance(config, dict) else None
    )
    if not primary:
        raise ModelResolutionError(
            f"No agents.defaults.model.primary in {config_path}. "
            'Set it to e.g. "anthropic/claude-sonnet-4-5".'
        )

    parsed = parse_model_spec(primary)
    if not parsed:
        raise ModelResolutionError(
            f'Invalid model spec "{primary}" in {config_path} - expected "provider/model" format.'
        )
    return parsed


@dataclass
class ResolvedModel:
    """A model entry from the registry, with its provider's endpoint."""
    provider: str
    id: str
    base_url: str
    name: str = ""
    max_tokens: Optional[int] = None
    api_key: Optional[str] = None


class ModelRegistry:
    """Model and credential lookup backed by models.json and auth.json."""

    def __init__(self, agent_dir: Path):
        self.agent_dir = agent_dir
        self.models_path = agent_dir / "models.json"
        self.auth_path = agent_dir / "auth.json"

    def find(self, provider: str, model_id: str) -> Optional[ResolvedModel]:
        if not self.models_path.exists():
            return None
        registry = _read_json(self.models_path, "the model registry")
        providers = registry.get("providers", {}) if isinstance(registry, dict) else {}
        entry = providers.get(provider)
        if not isinstance(entry, dict):
            return None

        for model in entry.get("models", []):
            if isinstance(model, dict) and model.get("id") == model_id:
                return ResolvedModel(
                    provider=provider,
                    id=model_id,
                    base_url=model.get("baseUrl") or entry.get("baseUrl", ""),
                    name=model.get("name", model_id),
                    max_tokens=model.get("maxTokens"),
                    api_key=entry.get("apiKey"),
                )
        return None

    def get_api_key(self, model: ResolvedModel) -> Optional[str]:
        """auth.json first, then the registry entry, then <PROVIDER>_API_KEY."""
        if self.auth_path.exists():
            try:
                auth = json.loads(self.auth_path.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError) as e:
                logger.warning(f"Could not read {self.auth_path}: {e}")
                auth = {}
            entry = auth.get(model.provider) if isinstance(auth, dict) else None
            if isinstance(entry, dict) and entry.get("key"):
                return entry["key"]
            if isinstance(entry, str) and entry:
                return entry

        if model.api_key:
            return model.api_key

        env_name = f"{model.provider.upper().replace('-', '_')}_API_KEY"
        return os.getenv(env_name) or None


@dataclass
class InferenceConfig:
    """The resolved model plus a way to obtain its API key."""
    agent_dir: Path
    provider: str
    model: str
    resolved_model: ResolvedModel
    timeout: float = DEFAULT_TIMEOUT
    key_resolver: Callable[[ResolvedModel], Optional[str]] = field(default=lambda model: None, repr=False)

    async def get_api_key(self) -> Optional[str]:
        return self.key_resolver(self.resolved_model)


def resolve_inference_config(
    agent_dir: Optional[Path] = None,
    provider: Optional[str] = None,
    model: Optional[str] = None,
    timeout: Optional[float] = None,
) -> InferenceConfig:
    """Discover the registry in the agent directory and resolve the model.

    Raises:
        ModelResolutionError: if the config is missing/invalid or the model is
            not in the registry.
    """
    agent_dir = Path(agent_dir) if agent_dir else resolve_agent_dir()

    if provider and model:
        configured = (provider, model)
    else:
        configured = read_model_config(agent_dir)
    provider = provider or configured[0]
    model_id = model or configured[1]

    registry = ModelRegistry(agent_dir)
    resolved = registry.find(provider, model_id)
    if resolved is None:
        raise ModelResolutionError(f'Model "{provider}/{model_id}" not found in {registry.models_path}.')
    if not resolved.base_url:
        raise ModelResolutionError(f'Provider "{provider}" has no baseUrl in {registry.models_path}.')

    logger.info(f"Resolved model {provider}/{model_id} at {resolved.base_url}")
    return InferenceConfig(
        agent_dir=agent_dir,
        provider=provider,
        model=model_id,
        resolved_model=resolved,
        timeout=timeout if timeout is not None else DEFAULT_TIMEOUT,
        key_resolver=registry.get_api_key,
    )
