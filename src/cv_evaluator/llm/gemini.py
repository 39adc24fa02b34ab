"""Gemini-backed generation and embedding clients."""

from __future__ import annotations

import logging
import threading
from typing import Any

import google.generativeai as genai

from cv_evaluator.llm.base import EmbeddingError, ModelProviderError

logger = logging.getLogger(__name__)

DEFAULT_GENERATION_MODEL = "gemini-2.5-pro"
DEFAULT_EMBEDDING_MODEL = "text-embedding-004"
DEFAULT_EMBEDDING_DIMENSION = 768


class GeminiGenerator:
    """Evaluation generator over ``GenerativeModel.generate_content``."""

    def __init__(self, *, api_key: str, model_name: str = DEFAULT_GENERATION_MODEL) -> None:
        if not api_key:
            raise ValueError("GEMINI_API_KEY is required to use Gemini.")
        genai.configure(api_key=api_key)
        self.model_name = model_name
        self._model: genai.GenerativeModel | None = None
        self._lock = threading.Lock()

    def generate(self, prompt: str, *, json_output: bool = False) -> str | None:
        generation_config: dict[str, Any] = {}
        if json_output:
            generation_config["response_mime_type"] = "application/json"
        try:
            response = self._model_instance().generate_content(
                prompt,
                generation_config=generation_config or None,
            )
        except Exception as exc:
            raise ModelProviderError(f"Gemini request failed: {exc}") from exc

        text = _extract_text(response)
        if not text:
            logger.warning("Gemini returned no text (model=%s)", self.model_name)
            return None
        return text

    def _model_instance(self) -> genai.GenerativeModel:
        with self._lock:
            if self._model is None:
                self._model = genai.GenerativeModel(self.model_name)
            return self._model


class GeminiEmbedder:
    """Embedder over ``genai.embed_content``."""

    def __init__(
        self,
        *,
        api_key: str,
        model_name: str = DEFAULT_EMBEDDING_MODEL,
        dimension: int = DEFAULT_EMBEDDING_DIMENSION,
    ) -> None:
        if not api_key:
            raise ValueError("GEMINI_API_KEY is required to use Gemini embeddings.")
        genai.configure(api_key=api_key)
        self.model_name = model_name
        self.dimension = dimension

    def embed_document(self, text: str) -> list[float]:
        return self._embed(text, task_type="retrieval_document")

    def embed_query(self, text: str) -> list[float]:
        return self._embed(text, task_type="retrieval_query")

    def _embed(self, text: str, *, task_type: str) -> list[float]:
        model = self.model_name
        if not model.startswith("models/"):
            model = f"models/{model}"
        try:
            response = genai.embed_content(model=model, content=text, task_type=task_type)
        except Exception as exc:
            raise EmbeddingError(f"Gemini embedding request failed: {exc}") from exc

        values = response.get("embedding") if isinstance(response, dict) else None
        if not values:
            raise EmbeddingError("Gemini embedding response contained no vector.")
        if len(values) != self.dimension:
            raise EmbeddingError(
                f"Embedding dimension mismatch: expected {self.dimension}, got {len(values)}.",
            )
        return [float(value) for value in values]


def _extract_text(response: object) -> str:
    try:
        text = (getattr(response, "text", None) or "").strip()
        if text:
            return text
    except ValueError:
        # ``response.text`` raises when the candidate carries no text parts.
        pass

    fragments: list[str] = []
    for candidate in getattr(response, "candidates", None) or []:
        content = getattr(candidate, "content", None)
        parts = getattr(content, "parts", None) or []
        for part in parts:
            value = getattr(part, "text", None)
            if value:
                fragments.append(value)
    return "\n".join(fragments).strip()
