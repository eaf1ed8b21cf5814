"""Tests for providers.py — AG2 adapter, failover chain and role lookup."""

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest

from hcc_pipeline.errors import ProviderError
from hcc_pipeline.models import ModelConfig, ProjectConfig
from hcc_pipeline.providers import (
    AutogenCompletionProvider,
    CompletionRequest,
    FailoverProvider,
    RoleProviders,
    build_provider,
    extract_response_text,
)

from conftest import FakeProvider

LLM_CONFIG = {"config_list": [{"model": "m1", "api_key": "k"}], "timeout": 30, "seed": 1}


class _StatusError(Exception):
    def __init__(self, message: str, status_code: int) -> None:
        super().__init__(message)
        self.status_code = status_code


class TestExtractResponseText:
    def test_summary(self):
        assert extract_response_text(SimpleNamespace(summary="  hi  ", chat_history=[])) == "hi"

    def test_chat_history_fallback(self):
        result = SimpleNamespace(summary="", chat_history=[{"content": "first"}, {"content": " last "}])
        assert extract_response_text(result) == "last"

    def test_plain_value(self):
        assert extract_response_text("raw reply") == "raw reply"
        assert extract_response_text(None) == ""


class TestAutogenCompletionProvider:
    def test_single_turn_chat(self):
        with patch("hcc_pipeline.providers.autogen") as mock_autogen:
            proxy = mock_autogen.UserProxyAgent.return_value
            proxy.initiate_chat.return_value = SimpleNamespace(summary="Edited text.", chat_history=[])

            provider = AutogenCompletionProvider("m1", LLM_CONFIG)
            response = provider.complete(CompletionRequest(
                prompt="Edit this.", system_instructions="Be brief.",
                max_output_tokens=123, temperature=0.7,
            ))

        assert response.text == "Edited text."
        assert response.provider == "m1"
        kwargs = mock_autogen.AssistantAgent.call_args.kwargs
        assert kwargs["system_message"] == "Be brief."
        entry = kwargs["llm_config"]["config_list"][0]
        assert entry["temperature"] == 0.7
        assert entry["max_tokens"] == 123
        assert entry["model"] == "m1"
        assert kwargs["llm_config"]["timeout"] == 30
        assert mock_autogen.UserProxyAgent.call_args.kwargs["human_input_mode"] == "NEVER"
        assert proxy.initiate_chat.call_args.kwargs["message"] == "Edit this."
        assert proxy.initiate_chat.call_args.kwargs["max_turns"] == 1

    def test_request_settings_do_not_leak_into_base_config(self):
        with patch("hcc_pipeline.providers.autogen") as mock_autogen:
            mock_autogen.UserProxyAgent.return_value.initiate_chat.return_value = SimpleNamespace(
                summary="ok", chat_history=[])
            provider = AutogenCompletionProvider("m1", LLM_CONFIG)
            provider.complete(CompletionRequest(prompt="p", temperature=0.1))
        assert "temperature" not in LLM_CONFIG["config_list"][0]

    def test_failure_maps_to_provider_error(self):
        with patch("hcc_pipeline.providers.autogen") as mock_autogen:
            mock_autogen.UserProxyAgent.return_value.initiate_chat.side_effect = _StatusError("rate limited", 429)
            provider = AutogenCompletionProvider("m1", LLM_CONFIG)
            with pytest.raises(ProviderError) as excinfo:
                provider.complete(CompletionRequest(prompt="p"))
        assert excinfo.value.status == 429
        assert "rate limited" in str(excinfo.value)

    def test_failure_without_status(self):
        with patch("hcc_pipeline.providers.autogen") as mock_autogen:
            mock_autogen.UserProxyAgent.return_value.initiate_chat.side_effect = RuntimeError("boom")
            provider = AutogenCompletionProvider("m1", LLM_CONFIG)
            with pytest.raises(ProviderError) as excinfo:
                provider.complete(CompletionRequest(prompt="p"))
        assert excinfo.value.status is None


class TestFailoverProvider:
    def test_first_success_wins(self):
        first = FakeProvider(["one"], name="a")
        second = FakeProvider(["two"], name="b")
        response = FailoverProvider([first, second]).complete(CompletionRequest(prompt="p"))
        assert response.text == "one"
        assert second.requests == []

    def test_falls_through_on_error(self):
        first = FakeProvider([ProviderError(500, "down")], name="a")
        second = FakeProvider(["two"], name="b")
        response = FailoverProvider([first, second]).complete(CompletionRequest(prompt="p"))
        assert response.text == "two"
        assert response.provider == "b"

    def test_all_fail(self):
        first = FakeProvider([ProviderError(500, "down")], name="a")
        second = FakeProvider([ProviderError(429, "slow down")], name="b")
        with pytest.raises(ProviderError) as excinfo:
            FailoverProvider([first, second]).complete(CompletionRequest(prompt="p"))
        assert excinfo.value.status == 429
        assert "All providers failed" in str(excinfo.value)
        assert "slow down" in str(excinfo.value)

    def test_no_providers(self):
        with pytest.raises(ProviderError):
            FailoverProvider([]).complete(CompletionRequest(prompt="p"))

    def test_other_exceptions_propagate(self):
        first = FakeProvider([ValueError("bug")], name="a")
        second = FakeProvider(["two"], name="b")
        with pytest.raises(ValueError):
            FailoverProvider([first, second]).complete(CompletionRequest(prompt="p"))


class TestRoleProviders:
    def _config(self) -> ProjectConfig:
        return ProjectConfig(models=ModelConfig(default="m1", critic="m3", failover=["m2", "m1"]))

    def test_build_provider_chain(self):
        chain = build_provider(self._config(), "transformer")
        assert [p.name for p in chain.providers] == ["m1", "m2"]
        assert chain.name == "transformer-failover"

    def test_role_model_comes_first(self):
        chain = build_provider(self._config(), "objection_generator")
        assert [p.name for p in chain.providers] == ["m3", "m2", "m1"]
        assert chain.providers[0].llm_config["config_list"][0]["model"] == "m3"

    def test_fixed_provider_for_every_role(self):
        fixed = FakeProvider([])
        roles = RoleProviders(self._config(), provider=fixed)
        assert roles.for_role("extractor") is fixed
        assert roles.for_role("critic") is fixed

    def test_built_providers_are_cached(self):
        roles = RoleProviders(self._config())
        assert roles.for_role("stitcher") is roles.for_role("stitcher")
        assert roles.for_role("stitcher") is not roles.for_role("critic")

    def test_building_does_not_call_models(self):
        with patch("hcc_pipeline.providers.autogen", MagicMock()) as mock_autogen:
            RoleProviders(self._config()).for_role("transformer")
        mock_autogen.AssistantAgent.assert_not_called()
