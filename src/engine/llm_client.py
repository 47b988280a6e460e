"""LLM client for OpenAI API communication.

Single Responsibility: Handle the chat-completion and embedding calls used by
the query expander and the embedding provider.
No prompt construction, no JSON parsing, no business logic.

The client is lazily initialized as a singleton (connection pooling).
Use reset_clients() in test teardown to clear it.
"""

from __future__ import annotations

import logging
import os
import re
import threading
import time
from typing import Any, Dict, List, Sequence

from openai import OpenAI, RateLimitError

from .types import LLMClientError

logger = logging.getLogger(__name__)


__all__ = [
    "make_openai_client",
    "get_sync_client",
    "reset_clients",
    "call_llm",
    "create_embeddings",
]

# ---------------------------------------------------------------------------
# Singleton state
# ---------------------------------------------------------------------------
_sync_client: OpenAI | None = None
_sync_lock = threading.Lock()

_RATE_LIMIT_RETRIES = 5
_RETRY_AFTER_RE = re.compile(r"try again in (\d+\.?\d*)s")


def _build_sync_client() -> OpenAI:
    """Create an OpenAI client with settings from config.

    Uses timeouts/retries to avoid 'silent stalls' on network issues.
    Falls back to OpenAI() when running under test fakes that don't accept kwargs.
    """
    from ..common.config_loader import get_settings_yaml

    settings = get_settings_yaml()
    openai_settings = settings.get("openai", {})

    timeout_secs = float(
        os.getenv("RAG_OPENAI_TIMEOUT_SECS")
        or openai_settings.get("timeout_secs", 30)
    )
    max_retries = int(
        os.getenv("RAG_OPENAI_MAX_RETRIES")
        or openai_settings.get("max_retries", 3)
    )

    try:
        return OpenAI(timeout=timeout_secs, max_retries=max_retries)
    except TypeError:
        return OpenAI()


def get_sync_client() -> OpenAI:
    """Return the singleton sync OpenAI client (lazy, thread-safe)."""
    global _sync_client  # noqa: PLW0603
    if _sync_client is None:
        with _sync_lock:
            if _sync_client is None:
                _sync_client = _build_sync_client()
    return _sync_client


def reset_clients() -> None:
    """Close and clear the singleton. Call in test teardown."""
    global _sync_client  # noqa: PLW0603
    with _sync_lock:
        if _sync_client is not None:
            close_fn = getattr(_sync_client, "close", None)
            if callable(close_fn):
                close_fn()
            _sync_client = None


def make_openai_client() -> OpenAI:
    """Delegates to singleton get_sync_client()."""
    return get_sync_client()


def _model_skips_temperature(model: str | None, no_temp_models: list[str] | None) -> bool:
    """Check if model doesn't support temperature based on config."""
    if not model or not no_temp_models:
        return False
    return any(model.startswith(prefix) for prefix in no_temp_models)


def _retry_wait(exc: Exception, attempt: int) -> float:
    match = _RETRY_AFTER_RE.search(str(exc))
    return float(match.group(1)) + 0.5 if match else float(2 ** attempt)


def call_llm(
    prompt: str,
    *,
    system: str | None = None,
    model: str | None = None,
    temperature: float | None = None,
    max_tokens: int | None = None,
    json_mode: bool = False,
) -> str:
    """Call the chat model and return the stripped message content.

    Model-specific behavior (temperature support) is driven by
    config/settings.yaml. Rate limits are retried with backoff; every other
    failure is raised as LLMClientError.
    """
    from ..common.config_loader import get_settings_yaml

    client = make_openai_client()
    settings = get_settings_yaml()
    openai_settings = settings.get("openai", {})
    caps = settings.get("model_capabilities", {}) or {}

    eff_model = model or os.getenv("OPENAI_CHAT_MODEL") or openai_settings.get("chat_model")
    eff_temp = temperature if temperature is not None else openai_settings.get("temperature")

    messages: List[Dict[str, str]] = []
    if system:
        messages.append({"role": "system", "content": system})
    messages.append({"role": "user", "content": prompt})

    kwargs: Dict[str, Any] = {"model": eff_model, "messages": messages}
    if eff_temp is not None and not _model_skips_temperature(eff_model, caps.get("no_temperature_models")):
        kwargs["temperature"] = eff_temp
    if max_tokens:
        kwargs["max_tokens"] = int(max_tokens)
    if json_mode:
        kwargs["response_format"] = {"type": "json_object"}

    last_exc: Exception | None = None
    for attempt in range(_RATE_LIMIT_RETRIES):
        try:
            response = client.chat.completions.create(**kwargs)
            content = response.choices[0].message.content or ""
            return content.strip()
        except RateLimitError as exc:
            last_exc = exc
            if attempt < _RATE_LIMIT_RETRIES - 1:
                wait_time = _retry_wait(exc, attempt)
                logger.warning("OpenAI rate limited, retrying in %.1fs (attempt %d)", wait_time, attempt + 1)
                time.sleep(wait_time)
                continue
            raise LLMClientError(f"OpenAI rate limit exceeded after {_RATE_LIMIT_RETRIES} retries.") from exc
        except Exception as exc:  # noqa: BLE001
            raise LLMClientError("OpenAI request failed.") from exc

    raise LLMClientError("OpenAI request failed after retries.") from last_exc


def create_embeddings(texts: Sequence[str], model: str | None = None) -> List[List[float]]:
    """Embed a batch of texts. Raises LLMClientError on failure."""
    from ..common.config_loader import get_settings_yaml

    if not texts:
        return []

    openai_settings = get_settings_yaml().get("openai", {})
    eff_model = model or os.getenv("OPENAI_EMBEDDING_MODEL") or openai_settings.get("embedding_model")

    client = make_openai_client()
    try:
        response = client.embeddings.create(model=eff_model, input=list(texts))
        return [list(item.embedding) for item in response.data]
    except Exception as exc:  # noqa: BLE001
        raise LLMClientError("OpenAI embedding request failed.") from exc
