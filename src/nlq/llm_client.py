"""
LLM client abstraction -- provider-agnostic wrapper.

Supported providers:
  mock      -- returns an empty JSON object (translator falls back to rules)
  openai    -- OpenAI ChatCompletion (gpt-4o-mini default)
  anthropic -- Anthropic Messages (claude-3-haiku default)

Every call carries a timeout; provider failures and timeouts surface as
TranslationError so the current conversation turn can end cleanly.
"""
from __future__ import annotations

from typing import Any

from src.core.config import get_settings
from src.core.errors import TranslationError
from src.core.logging import get_logger

logger = get_logger(__name__)


_OPENAI_DEFAULT_MODEL = "gpt-4o-mini"
_ANTHROPIC_DEFAULT_MODEL = "claude-3-haiku-20240307"
_MAX_TOKENS = 1024

SYSTEM_PROMPT = (
    "You translate questions about crypto ledger data into structured query "
    "intents. Respond only with what you are asked for."
)


def _call_mock(prompt: str, system: str, timeout: float) -> str:
    logger.info("LLM mock mode -- returning empty intent")
    return "{}"


def _call_openai(prompt: str, system: str, timeout: float) -> str:
    """Call OpenAI ChatCompletion API."""
    settings = get_settings()
    api_key = settings.openai_api_key
    if not api_key:
        raise RuntimeError(
            "openai_api_key is not set.  "
            "Set OPENAI_API_KEY in your .env file or environment."
        )

    try:
        import openai  # type: ignore[import-untyped]
    except ImportError as exc:
        raise RuntimeError(
            "The 'openai' package is not installed.  "
            "Run: pip install openai"
        ) from exc

    client = openai.OpenAI(api_key=api_key, timeout=timeout)
    response = client.chat.completions.create(
        model=_OPENAI_DEFAULT_MODEL,
        messages=[
            {"role": "system", "content": system},
            {"role": "user", "content": prompt},
        ],
        temperature=settings.llm_temperature,
        max_tokens=_MAX_TOKENS,
    )
    text = response.choices[0].message.content or ""
    logger.info("OpenAI response (%d chars)", len(text))
    return text


def _call_anthropic(prompt: str, system: str, timeout: float) -> str:
    """Call Anthropic Messages API."""
    settings = get_settings()
    api_key = settings.anthropic_api_key
    if not api_key:
        raise RuntimeError(
            "anthropic_api_key is not set.  "
            "Set ANTHROPIC_API_KEY in your .env file or environment."
        )

    try:
        import anthropic  # type: ignore[import-untyped]
    except ImportError as exc:
        raise RuntimeError(
            "The 'anthropic' package is not installed.  "
            "Run: pip install anthropic"
        ) from exc

    client = anthropic.Anthropic(api_key=api_key, timeout=timeout)
    response = client.messages.create(
        model=_ANTHROPIC_DEFAULT_MODEL,
        max_tokens=_MAX_TOKENS,
        temperature=settings.llm_temperature,
        system=system,
        messages=[{"role": "user", "content": prompt}],
    )
    text = response.content[0].text if response.content else ""
    logger.info("Anthropic response (%d chars)", len(text))
    return text


_PROVIDERS: dict[str, Any] = {
    "mock": _call_mock,
    "openai": _call_openai,
    "anthropic": _call_anthropic,
}


def call_llm(
    prompt: str,
    provider: str | None = None,
    system: str = SYSTEM_PROMPT,
    timeout: float | None = None,
) -> str:
    """Send *prompt* to the configured (or overridden) LLM provider.

    Parameters
    ----------
    prompt : str
        The full prompt text.
    provider : str, optional
        Override the provider from settings.  One of: mock, openai, anthropic.
    system : str
        System instruction sent alongside the prompt.
    timeout : float, optional
        Seconds to wait for the provider; defaults to ``llm_timeout_s``.

    Raises
    ------
    TranslationError
        Unknown provider, or the provider call failed or timed out.
    """
    settings = get_settings()
    if provider is None:
        provider = settings.llm_provider.lower()
    if timeout is None:
        timeout = settings.llm_timeout_s

    fn = _PROVIDERS.get(provider)
    if fn is None:
        raise TranslationError(
            f"LLM provider '{provider}' is not supported.  "
            f"Choose from: {', '.join(_PROVIDERS)}"
        )

    logger.info("Calling LLM provider=%s  prompt_len=%d  timeout=%.1fs", provider, len(prompt), timeout)
    try:
        return fn(prompt, system, timeout)
    except Exception as exc:
        logger.exception("LLM call failed (provider=%s)", provider)
        raise TranslationError(f"Language model request failed: {exc}") from exc
