"""Configuration loader and LLM config builder.

Reads project settings from a YAML config file with ``${ENV_VAR}``
interpolation.  Credentials only ever reach the completion providers through
the ``ProjectConfig`` built here.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

from .models import AzureConfig, ModelEndpointOverride, ProjectConfig

load_dotenv()

# ---------------------------------------------------------------------------
# YAML loading with ${ENV_VAR} interpolation
# ---------------------------------------------------------------------------

_ENV_RE = re.compile(r"\$\{([^}]+)\}")


def _resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${ENV_VAR}`` references in strings."""
    if isinstance(value, str):
        return _ENV_RE.sub(lambda m: os.environ.get(m.group(1), ""), value)
    if isinstance(value, dict):
        return {k: _resolve_env_vars(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_resolve_env_vars(v) for v in value]
    return value


AZURE_ENV_VARS: dict[str, str] = {
    "api_key": "AZURE_OPENAI_API_KEY",
    "api_version": "AZURE_OPENAI_API_VERSION",
    "endpoint": "AZURE_OPENAI_ENDPOINT",
}


def apply_azure_fallbacks(config: ProjectConfig) -> ProjectConfig:
    """Fill empty azure credentials from ``AZURE_OPENAI_*`` and drop a trailing slash."""
    for field, env_name in AZURE_ENV_VARS.items():
        if not getattr(config.azure, field):
            setattr(config.azure, field, os.getenv(env_name, ""))
    config.azure.endpoint = config.azure.endpoint.rstrip("/")
    return config


def load_config(config_path: str | Path) -> ProjectConfig:
    """Load a ``ProjectConfig`` from a YAML file.

    Environment variables referenced as ``${VAR_NAME}`` are resolved.
    If ``azure`` fields are empty after resolution, they fall back to
    well-known environment variables (``AZURE_OPENAI_*``).
    """
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path) as f:
        raw = yaml.safe_load(f) or {}

    config = ProjectConfig.model_validate(_resolve_env_vars(raw))
    return apply_azure_fallbacks(config)


# ---------------------------------------------------------------------------
# LLM config builder
# ---------------------------------------------------------------------------

ROLE_FIELDS: dict[str, str] = {
    "extractor": "extractor",
    "skeleton_extractor": "extractor",
    "skeleton_compressor": "extractor",
    "transformer": "transformer",
    "chunk_transformer": "transformer",
    "stitcher": "stitcher",
    "chapter_stitcher": "stitcher",
    "repairer": "stitcher",
    "critic": "critic",
    "claim_finder": "critic",
    "objection_generator": "critic",
    "response_enhancer": "critic",
}


def _is_azure_openai_endpoint(endpoint: str) -> bool:
    """Azure OpenAI resources route by deployment; other endpoints are OpenAI-compatible."""
    host = endpoint.lower()
    return any(marker in host for marker in ("openai.azure.com", "cognitiveservices.azure.com"))


def resolve_endpoint(azure: AzureConfig, override: ModelEndpointOverride | None) -> ModelEndpointOverride:
    """Effective endpoint settings: the per-model override layered over ``azure``."""
    if override is None:
        return ModelEndpointOverride(
            endpoint=azure.endpoint,
            api_key=azure.api_key,
            api_version=azure.api_version,
        )
    return ModelEndpointOverride(
        endpoint=override.endpoint.rstrip("/"),
        api_key=override.api_key or azure.api_key,
        api_version=override.api_version or azure.api_version,
        api_type=override.api_type,
    )


def _config_entry(model: str, settings: ModelEndpointOverride) -> dict[str, Any]:
    """One AG2 ``config_list`` entry for *model*."""
    entry: dict[str, Any] = {"model": model, "api_key": settings.api_key}
    endpoint = settings.endpoint
    if settings.api_type:
        entry["api_type"] = settings.api_type
    elif endpoint and _is_azure_openai_endpoint(endpoint):
        entry.update(
            api_type="azure",
            azure_endpoint=endpoint,
            api_version=settings.api_version,
            azure_deployment=model,
        )
        return entry
    if endpoint:
        entry["base_url"] = endpoint
    return entry


def role_model(role: str, config: ProjectConfig) -> str:
    """Model name configured for *role*, falling back to ``models.default``."""
    field = ROLE_FIELDS.get(role.lower())
    chosen = getattr(config.models, field) if field else None
    return chosen or config.models.default


def role_models(role: str, config: ProjectConfig) -> list[str]:
    """Failover order for *role*: the role's model, then ``models.failover``."""
    ordered: list[str] = []
    for name in [role_model(role, config), *config.models.failover]:
        if name and name not in ordered:
            ordered.append(name)
    return ordered


def build_role_llm_config(
    role: str,
    config: ProjectConfig,
    model: str | None = None,
) -> dict[str, Any]:
    """Return an AG2-compatible ``llm_config`` dict for the given *role*.

    Role mapping:
    - ``extractor`` and skeleton roles -> models.extractor (or default)
    - ``transformer`` -> models.transformer (or default)
    - ``stitcher`` / ``repairer`` -> models.stitcher (or default)
    - ``critic`` and objection roles -> models.critic (or default)

    *model* pins a specific model (used when building failover entries).
    If ``config.models.overrides`` has an entry for the chosen model, its
    endpoint / api_key / api_version take precedence over ``config.azure``.
    """
    chosen = model or role_model(role, config)
    override = config.models.overrides.get(chosen)
    entry = _config_entry(chosen, resolve_endpoint(config.azure, override))
    return {
        "config_list": [entry],
        "timeout": config.timeout,
        "seed": config.seed,
    }
