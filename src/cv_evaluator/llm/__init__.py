"""Model provider adapters."""

from cv_evaluator.llm.base import (
    EmbeddingError,
    Embedder,
    EvaluationGenerator,
    ModelProviderError,
)

__all__ = ["EmbeddingError", "Embedder", "EvaluationGenerator", "ModelProviderError"]
