"""Embedding and completion capabilities, plus LiteLLM-backed implementations.

The retrieval core depends only on the ``EmbeddingProvider`` and
``CompletionProvider`` protocols. The LiteLLM classes are built once at
startup (CLI or host application) and injected; LiteLLM's built-in retry
is used (num_retries=3, exponential backoff).
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

import litellm

# Disable LiteLLM verbose logging unless explicitly enabled
litellm.suppress_debug_info = True
litellm.set_verbose = False  # type: ignore[assignment]


@dataclass(frozen=True)
class EmbeddingResult:
    values: list[float]
    token_count: int
    model: str


@dataclass(frozen=True)
class CompletionResult:
    text: str
    token_count: int
    model: str
    finish_reason: str | None = None


@dataclass(frozen=True)
class CompletionOptions:
    temperature: float = 0.0
    max_tokens: int = 1024


@runtime_checkable
class EmbeddingProvider(Protocol):
    """Turns text into a fixed-dimension vector."""

    def embed(self, text: str) -> EmbeddingResult: ...

    def embed_batch(self, texts: list[str]) -> list[EmbeddingResult]:
        """Embed *texts*, returning results in input order."""
        ...


@runtime_checkable
class CompletionProvider(Protocol):
    """Completes a single-turn prompt."""

    def complete(
        self, prompt: str, options: CompletionOptions | None = None
    ) -> CompletionResult: ...


# ------------------------------------------------------------------
# Provider → env var mapping for API key validation
# ------------------------------------------------------------------

_PROVIDER_ENV: dict[str, str | None] = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "azure": "AZURE_API_KEY",
    "cohere": "COHERE_API_KEY",
    "gemini": "GEMINI_API_KEY",
    "google": "GOOGLE_API_KEY",
    "mistral": "MISTRAL_API_KEY",
    "groq": "GROQ_API_KEY",
    "jina_ai": "JINA_AI_API_KEY",
    "perplexity": "PERPLEXITYAI_API_KEY",
    "together_ai": "TOGETHERAI_API_KEY",
    "ollama": None,  # Local, no key required
    "ollama_chat": None,
}


def provider_of(model: str) -> str:
    """Provider prefix of a LiteLLM model string; bare names are OpenAI."""
    return model.split("/")[0].lower() if "/" in model else "openai"


def api_key_env_var(model: str) -> str | None:
    """Env var holding the API key for *model*, or None when no key is checked."""
    return _PROVIDER_ENV.get(provider_of(model))


def validate_api_key(model: str) -> None:
    """Check that the required API key env var is set for *model*.

    Args:
        model: LiteLLM model string in 'provider/model' format.

    Raises:
        EnvironmentError: If the required key is missing from environment.
    """
    provider = provider_of(model)
    env_var = api_key_env_var(model)

    if env_var is None:
        return  # No key required (e.g. ollama) or unknown provider

    if not os.getenv(env_var):
        raise EnvironmentError(
            f"API key not found for provider '{provider}'. "
            f"Set the {env_var} environment variable."
        )


def _usage(response: Any, attr: str) -> int:
    usage = getattr(response, "usage", None)
    if usage is None:
        return 0
    value = usage.get(attr) if isinstance(usage, dict) else getattr(usage, attr, None)
    return int(value or 0)


class LiteLLMEmbeddingProvider:
    """``EmbeddingProvider`` over ``litellm.embedding()``."""

    def __init__(
        self,
        model: str,
        *,
        num_retries: int = 3,
        timeout: float | None = 60.0,
    ) -> None:
        self.model = model
        self.num_retries = num_retries
        self.timeout = timeout

    def embed(self, text: str) -> EmbeddingResult:
        return self.embed_batch([text])[0]

    def embed_batch(self, texts: list[str]) -> list[EmbeddingResult]:
        """Embed *texts* in one request.

        Usage is reported per request, so each result carries an equal share
        of the request's prompt tokens.
        """
        if not texts:
            return []
        response = litellm.embedding(
            model=self.model,
            input=list(texts),
            num_retries=self.num_retries,
            timeout=self.timeout,
        )
        data = sorted(response.data, key=lambda d: d["index"])
        if len(data) != len(texts):
            raise RuntimeError(
                f"Embedding response has {len(data)} vectors for {len(texts)} inputs"
            )
        share = _usage(response, "prompt_tokens") // len(texts)
        model = getattr(response, "model", None) or self.model
        return [
            EmbeddingResult(values=list(d["embedding"]), token_count=share, model=model)
            for d in data
        ]


class LiteLLMCompletionProvider:
    """``CompletionProvider`` over ``litellm.completion()``."""

    def __init__(
        self,
        model: str,
        *,
        num_retries: int = 3,
        timeout: float | None = 120.0,
    ) -> None:
        self.model = model
        self.num_retries = num_retries
        self.timeout = timeout

    def complete(
        self, prompt: str, options: CompletionOptions | None = None
    ) -> CompletionResult:
        opts = options or CompletionOptions()
        response = litellm.completion(
            model=self.model,
            messages=[{"role": "user", "content": prompt}],
            max_tokens=opts.max_tokens,
            temperature=opts.temperature,
            num_retries=self.num_retries,
            timeout=self.timeout,
        )
        choice = response.choices[0]
        return CompletionResult(
            text=choice.message.content or "",
            token_count=_usage(response, "total_tokens"),
            model=getattr(response, "model", None) or self.model,
            finish_reason=getattr(choice, "finish_reason", None),
        )
