"""Context retrieval over the ground-truth vector collection."""

from __future__ import annotations

import logging

from qdrant_client import QdrantClient
from qdrant_client.http import models as rest

from cv_evaluator.llm.base import Embedder

logger = logging.getLogger(__name__)

CONTEXT_SEPARATOR = "\n\n---\n\n"


class ContextRetriever:
    """Embeds a query and returns the matching reference text, joined."""

    def __init__(
        self,
        *,
        client: QdrantClient,
        collection_name: str,
        embedder: Embedder,
        sources: tuple[str, ...] = (),
    ) -> None:
        self.client = client
        self.collection_name = collection_name
        self.embedder = embedder
        self.sources = sources

    def retrieve(self, query: str, limit: int) -> str:
        """Return up to ``limit`` chunks for ``query``.

        Embedding failures propagate: an empty context would silently degrade
        the evaluation instead of failing the attempt.
        """

        if limit <= 0:
            raise ValueError("limit must be > 0")
        vector = self.embedder.embed_query(query)
        response = self.client.query_points(
            collection_name=self.collection_name,
            query=vector,
            query_filter=self._source_filter(),
            limit=limit,
            with_payload=True,
        )
        texts: list[str] = []
        for point in response.points:
            payload = point.payload or {}
            text = payload.get("text")
            if isinstance(text, str) and text.strip():
                texts.append(text)
        logger.info(
            "Retrieved %d context chunk(s) from %s (limit=%d)",
            len(texts),
            self.collection_name,
            limit,
        )
        return CONTEXT_SEPARATOR.join(texts)

    def _source_filter(self) -> rest.Filter | None:
        if not self.sources:
            return None
        return rest.Filter(
            must=[
                rest.FieldCondition(
                    key="source",
                    match=rest.MatchAny(any=list(self.sources)),
                ),
            ],
        )
