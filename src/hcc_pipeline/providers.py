"""Text-completion capability.

Every model call in the pipeline goes through ``CompletionProvider.complete``.
``AutogenCompletionProvider`` reaches one configured model through an AG2
assistant agent; ``FailoverProvider`` tries several providers in priority
order.  Failures surface as :class:`~hcc_pipeline.errors.ProviderError`.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol, Sequence

import autogen
from pydantic import BaseModel, Field

from .config import build_role_llm_config, role_models
from .errors import ProviderError
from .models import ProjectConfig

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_MESSAGE = (
    "You are a careful editor of long-form documents. Follow the output format "
    "you are given exactly and never add commentary outside it."
)


class CompletionRequest(BaseModel):
    prompt: str = Field(...)
    system_instructions: str | None = Field(default=None)
    max_output_tokens: int = Field(default=4000)
    temperature: float = Field(default=0.3)


class CompletionResponse(BaseModel):
    text: str = Field(default="")
    provider: str = Field(default="")
    model: str | None = Field(default=None)


class CompletionProvider(Protocol):
    """Anything that can answer a :class:`CompletionRequest`."""

    name: str

    def complete(self, request: CompletionRequest) -> CompletionResponse: ...


# ---------------------------------------------------------------------------
# AG2 adapter
# ---------------------------------------------------------------------------


def extract_response_text(response: Any) -> str:
    """Extract the reply text from an AG2 chat result."""
    if hasattr(response, "summary") and response.summary:
        text = str(response.summary)
    elif hasattr(response, "chat_history") and response.chat_history:
        last = response.chat_history[-1]
        text = last.get("content", "") if isinstance(last, dict) else str(last)
    else:
        text = str(response or "")
    return text.strip()


def _status_of(exc: Exception) -> int | None:
    for attr in ("status_code", "status"):
        value = getattr(exc, attr, None)
        if isinstance(value, int):
            return value
    return None


class AutogenCompletionProvider:
    """One model endpoint, driven through a single-turn AG2 chat."""

    def __init__(self, name: str, llm_config: dict[str, Any], agent_name: str = "Editor") -> None:
        self.name = name
        self.llm_config = llm_config
        self.agent_name = agent_name

    def _request_llm_config(self, request: CompletionRequest) -> dict[str, Any]:
        entries = [
            {**entry, "temperature": request.temperature, "max_tokens": request.max_output_tokens}
            for entry in self.llm_config.get("config_list", [])
        ]
        return {**self.llm_config, "config_list": entries}

    def complete(self, request: CompletionRequest) -> CompletionResponse:
        agent = autogen.AssistantAgent(
            name=self.agent_name,
            system_message=request.system_instructions or DEFAULT_SYSTEM_MESSAGE,
            llm_config=self._request_llm_config(request),
        )
        orchestrator = autogen.UserProxyAgent(
            name="Orchestrator",
            human_input_mode="NEVER",
            code_execution_config=False,
        )
        try:
            response = orchestrator.initiate_chat(
                agent,
                message=request.prompt,
                max_turns=1,
            )
        except Exception as e:
            raise ProviderError(_status_of(e), f"{self.name}: {e}") from e
        return CompletionResponse(
            text=extract_response_text(response),
            provider=self.name,
            model=self.name,
        )


# ---------------------------------------------------------------------------
# Failover
# ---------------------------------------------------------------------------


class FailoverProvider:
    """Try each provider in priority order until one succeeds."""

    def __init__(self, providers: Sequence[CompletionProvider], name: str = "failover") -> None:
        self.providers = list(providers)
        self.name = name

    def complete(self, request: CompletionRequest) -> CompletionResponse:
        if not self.providers:
            raise ProviderError(None, "No completion providers are configured")
        last_error: ProviderError | None = None
        for provider in self.providers:
            try:
                response = provider.complete(request)
            except ProviderError as e:
                logger.warning("Provider %s failed: %s", provider.name, e)
                last_error = e
                continue
            if last_error is not None:
                logger.info("Failover succeeded with provider %s", provider.name)
            return response
        status = last_error.status if last_error else None
        detail = last_error.message if last_error else "unknown"
        raise ProviderError(status, f"All providers failed. Last error: {detail}")


def build_provider(config: ProjectConfig, role: str) -> FailoverProvider:
    """Failover chain for *role*: its configured model, then ``models.failover``."""
    providers = [
        AutogenCompletionProvider(model, build_role_llm_config(role, config, model=model))
        for model in role_models(role, config)
    ]
    return FailoverProvider(providers, name=f"{role}-failover")


class RoleProviders:
    """Provider lookup by role, with an optional single provider for every role."""

    def __init__(self, config: ProjectConfig, provider: CompletionProvider | None = None) -> None:
        self.config = config
        self._fixed = provider
        self._cache: dict[str, CompletionProvider] = {}

    def for_role(self, role: str) -> CompletionProvider:
        if self._fixed is not None:
            return self._fixed
        if role not in self._cache:
            self._cache[role] = build_provider(self.config, role)
        return self._cache[role]
