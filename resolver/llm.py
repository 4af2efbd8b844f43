"""
QA Resolver — Chat Model Factory

Single point of chat-model construction. The generation adapter calls
create_llm() and nothing else builds a model.

Supported providers:
  openai  — OpenAI direct (langchain-openai), the default
  azure   — Azure OpenAI Service (langchain-openai)

Design rules:
  - Returns a langchain BaseChatModel; the adapter is provider-blind
  - Provider packages are imported lazily inside the factories
  - Request timeout comes from the timeout argument or LLM_TIMEOUT_SECONDS
"""

from __future__ import annotations

import os

from langchain_core.language_models.chat_models import BaseChatModel


def _create_openai(model: str, temperature: float, api_key: str | None, **kwargs) -> BaseChatModel:
    from langchain_openai import ChatOpenAI
    return ChatOpenAI(model=model, temperature=temperature, api_key=api_key, **kwargs)


def _create_azure(model: str, temperature: float, api_key: str | None, **kwargs) -> BaseChatModel:
    from langchain_openai import AzureChatOpenAI
    endpoint = os.environ.get("AZURE_OPENAI_ENDPOINT", "")
    if not endpoint:
        raise EnvironmentError("AZURE_OPENAI_ENDPOINT is required for the azure provider")
    return AzureChatOpenAI(
        azure_deployment=model,
        azure_endpoint=endpoint,
        api_key=api_key or os.environ.get("AZURE_OPENAI_API_KEY"),
        api_version=os.environ.get("AZURE_OPENAI_VERSION", "2024-12-01-preview"),
        temperature=temperature,
        **kwargs,
    )


_FACTORIES = {
    "openai": _create_openai,
    "azure": _create_azure,
}


def create_llm(
    model: str,
    temperature: float = 0.0,
    provider: str | None = None,
    api_key: str | None = None,
    max_tokens: int | None = None,
    **kwargs,
) -> BaseChatModel:
    """
    Create a chat model for one generation call.

    Args:
        model:       Provider-specific model id ("gpt-4o-mini").
        temperature: Sampling temperature.
        provider:    "openai" (default) or "azure".
        api_key:     Generation credential; never logged.
        max_tokens:  Completion token cap.

    Returns:
        BaseChatModel, ready for .invoke()
    """
    provider = (provider or "openai").lower().strip()
    if provider not in _FACTORIES:
        raise ValueError(
            f"Unknown provider '{provider}'. "
            f"Supported: {', '.join(_FACTORIES.keys())}"
        )

    timeout = kwargs.pop("timeout", None)
    if timeout is None:
        env_timeout = os.environ.get("LLM_TIMEOUT_SECONDS", "").strip()
        if env_timeout:
            timeout = int(env_timeout)
    if timeout:
        kwargs["timeout"] = timeout
    if max_tokens is not None:
        kwargs["max_tokens"] = max_tokens

    return _FACTORIES[provider](model, temperature, api_key, **kwargs)
