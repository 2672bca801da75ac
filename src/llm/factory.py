"""Builds the provider behind the job pipeline's completion capability.

``llm.provider`` in ``mpack.yaml`` is either a vendor name or ``auto``. In
auto mode the vendor comes from the configured key's prefix, then from
whichever vendor key is set in the environment.
"""

import os

from .base import LLMError, LLMProvider

PROVIDERS = ("claude", "openai", "gemini")

_ENV_KEYS = {
    "claude": "ANTHROPIC_API_KEY",
    "openai": "OPENAI_API_KEY",
    "gemini": "GOOGLE_API_KEY",
}

# Model used for block splitting and relationship analysis when llm.model is unset
JOB_MODELS = {
    "claude": "claude-haiku-4-20250514",
    "openai": "gpt-4o-mini",
    "gemini": "gemini-2.0-flash",
}


def create_job_provider(
    provider: str | None = "auto",
    model: str | None = None,
    api_key: str | None = None,
    client=None,
) -> LLMProvider:
    """Create the provider for extraction and relationship jobs.

    Args:
        provider: one of ``PROVIDERS`` or ``"auto"``
        model: overrides the vendor's entry in ``JOB_MODELS``
        api_key: ``llm.api_key``; falls back to the vendor's env var
        client: pre-built SDK client, skips key lookup

    Raises:
        LLMError: unknown vendor, or no key to pick one in auto mode.
    """
    name = resolve_provider_name(provider, api_key)
    if not api_key and client is None:
        api_key = os.getenv(_ENV_KEYS[name])
    model = model or JOB_MODELS[name]

    if name == "claude":
        from .providers.claude import ClaudeProvider

        return ClaudeProvider(api_key=api_key, model=model, client=client)
    if name == "openai":
        from .providers.openai import OpenAIProvider

        return OpenAIProvider(api_key=api_key, model=model, client=client)

    from .providers.gemini import GeminiProvider

    return GeminiProvider(api_key=api_key, model=model, client=client)


def resolve_provider_name(provider: str | None = "auto", api_key: str | None = None) -> str:
    """Map an ``llm.provider`` setting to a concrete vendor name."""
    name = (provider or "auto").strip().lower()
    if name in PROVIDERS:
        return name
    if name != "auto":
        raise LLMError(f"Unknown llm.provider '{provider}'. Use auto, {', '.join(PROVIDERS)}")

    if api_key:
        inferred = _vendor_for_key(api_key)
        if inferred:
            return inferred
    for vendor in PROVIDERS:
        if os.getenv(_ENV_KEYS[vendor]):
            return vendor
    raise LLMError(
        "No LLM API key found. Set llm.api_key in mpack.yaml or one of: "
        + ", ".join(_ENV_KEYS[v] for v in PROVIDERS)
    )


def _vendor_for_key(api_key: str) -> str | None:
    if api_key.startswith("sk-ant-"):
        return "claude"
    if api_key.startswith("sk-"):
        return "openai"
    if api_key.startswith("AI"):
        return "gemini"
    return None
