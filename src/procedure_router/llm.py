from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

from dotenv import load_dotenv
from langchain_core.language_models.chat_models import BaseChatModel
from langchain_google_genai import ChatGoogleGenerativeAI
from langchain_openai import ChatOpenAI

logger = logging.getLogger(__name__)

_DEFAULT_TIMEOUT: int = 10
_DEFAULT_MAX_RETRIES: int = 1

API_KEY_ENV_BY_PROVIDER: dict[str, str] = {
    "openai": "OPENAI_API_KEY",
    "gemini": "GOOGLE_API_KEY",
}


def ensure_api_key(provider: str, repo_root: Path | None = None) -> str:
    """Load the provider's API key from environment or .env and return it.

    Searches the environment first, then falls back to a ``.env`` file at the
    given ``repo_root`` (or cwd if not specified).

    Args:
        provider: ``openai`` or ``gemini``.
        repo_root: Optional directory to search for a .env file.

    Returns:
        The API key string.

    Raises:
        ValueError: If ``provider`` is not supported.
        RuntimeError: If the key is unavailable after all sources are checked.
    """
    env_name = API_KEY_ENV_BY_PROVIDER.get(provider)
    if env_name is None:
        raise ValueError(f"Unsupported provider: {provider!r}")
    repo = repo_root if repo_root is not None else Path.cwd()
    env_path = repo / ".env"
    if env_path.is_file():
        load_dotenv(env_path)

    key = os.getenv(env_name, "").strip()
    if not key:
        raise RuntimeError(f"{env_name} is required for {provider} routing")
    return key


def _create_openai(model_name: str, **kwargs: Any) -> BaseChatModel:
    return ChatOpenAI(model=model_name, **kwargs)


def _create_gemini(model_name: str, **kwargs: Any) -> BaseChatModel:
    return ChatGoogleGenerativeAI(model=model_name, **kwargs)


_FACTORIES = {
    "openai": _create_openai,
    "gemini": _create_gemini,
}


def get_chat_model(
    *,
    provider: str,
    model_name: str,
    temperature: float = 0.0,
    timeout: int = _DEFAULT_TIMEOUT,
    max_retries: int = _DEFAULT_MAX_RETRIES,
    repo_root: Path | None = None,
) -> BaseChatModel:
    """Construct a chat model for ``provider`` with a validated API key.

    Args:
        provider: ``openai`` or ``gemini``.
        model_name: Provider model identifier.
        temperature: Sampling temperature.
        timeout: Request timeout in seconds.
        max_retries: Maximum number of retry attempts on transient failures.
        repo_root: Optional repo root for .env file resolution.

    Returns:
        Configured LangChain chat model.

    Raises:
        ValueError: If ``model_name`` is empty or the provider is unknown.
        RuntimeError: If the provider API key is not available.
    """
    if not model_name or not model_name.strip():
        raise ValueError("model_name must be a non-empty string")
    factory = _FACTORIES.get(provider)
    if factory is None:
        raise ValueError(f"Unsupported provider: {provider!r}")
    ensure_api_key(provider, repo_root=repo_root)
    logger.debug("Creating %s chat model %s", provider, model_name)
    return factory(model_name, temperature=temperature, timeout=timeout, max_retries=max_retries)
