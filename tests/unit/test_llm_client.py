"""
Unit tests -- LLM client: mock mode, dispatch and failure wrapping.
"""
import pytest

import src.nlq.llm_client as llm_client
from src.core.config import get_settings
from src.core.errors import TranslationError
from src.nlq.llm_client import call_llm


def test_mock_returns_empty_intent():
    assert call_llm("Hello world", provider="mock") == "{}"


def test_unknown_provider_raises():
    with pytest.raises(TranslationError, match="not supported"):
        call_llm("hi", provider="banana")


def test_openai_missing_key_raises(monkeypatch):
    monkeypatch.setattr(get_settings(), "openai_api_key", "")
    with pytest.raises(TranslationError, match="openai_api_key"):
        call_llm("hi", provider="openai")


def test_anthropic_missing_key_raises(monkeypatch):
    monkeypatch.setattr(get_settings(), "anthropic_api_key", "")
    with pytest.raises(TranslationError, match="anthropic_api_key"):
        call_llm("hi", provider="anthropic")


def test_provider_failure_wrapped(monkeypatch):
    def broken(prompt, system, timeout):
        raise TimeoutError("read timed out")

    monkeypatch.setitem(llm_client._PROVIDERS, "mock", broken)
    with pytest.raises(TranslationError, match="read timed out"):
        call_llm("hi", provider="mock")


def test_timeout_and_system_forwarded(monkeypatch):
    seen = {}

    def capture(prompt, system, timeout):
        seen.update(prompt=prompt, system=system, timeout=timeout)
        return "ok"

    monkeypatch.setitem(llm_client._PROVIDERS, "mock", capture)
    assert call_llm("question", provider="mock", system="be brief", timeout=2.5) == "ok"
    assert seen == {"prompt": "question", "system": "be brief", "timeout": 2.5}


def test_default_timeout_from_settings(monkeypatch):
    seen = {}

    def capture(prompt, system, timeout):
        seen["timeout"] = timeout
        return "ok"

    monkeypatch.setitem(llm_client._PROVIDERS, "mock", capture)
    call_llm("q", provider="mock")
    assert seen["timeout"] == get_settings().llm_timeout_s
