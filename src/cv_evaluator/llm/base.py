"""Provider-neutral contracts for generation and embedding."""

from __future__ import annotations

from typing import Protocol


class ModelProviderError(RuntimeError):
    """Generation request failed at the provider."""


class EmbeddingError(ModelProviderError):
    """Embedding request failed or returned no vector."""


class EvaluationGenerator(Protocol):
    def generate(self, prompt: str, *, json_output: bool = False) -> str | None:
        """Return the model's text output, or ``None`` when it produced nothing."""
        ...


class Embedder(Protocol):
    dimension: int

    def embed_document(self, text: str) -> list[float]: ...

    def embed_query(self, text: str) -> list[float]: ...
