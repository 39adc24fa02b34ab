"""Startup ingestion of ground-truth documents into the vector collection."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from uuid import NAMESPACE_URL, uuid5

from langchain_text_splitters import RecursiveCharacterTextSplitter
from qdrant_client import QdrantClient
from qdrant_client.http import models as rest

from cv_evaluator.llm.base import Embedder
from cv_evaluator.rag.locks import IngestionLockRepository

logger = logging.getLogger(__name__)

REFERENCE_SUFFIXES = (".txt", ".md")


@dataclass(slots=True)
class GroundTruthChunk:
    point_id: str
    source: str
    text: str


@dataclass(slots=True)
class CollectionState:
    exists: bool
    vector_size: int | None
    distance: rest.Distance | None
    points: int


@dataclass(slots=True)
class IngestionReport:
    """Outcome of one ``ensure_collection`` call."""

    action: str
    chunks: int
    sources: tuple[str, ...]


class GroundTruthIngestor:
    """Keeps the ground-truth collection present, correctly sized and populated.

    The check and the rebuild both run under a database lease lock, so two
    processes starting together never drop a collection the other one is
    filling.
    """

    def __init__(
        self,
        *,
        client: QdrantClient,
        collection_name: str,
        embedder: Embedder,
        documents_dir: Path,
        lock_repository: IngestionLockRepository,
        owner_id: str,
        chunk_size: int = 1000,
        chunk_overlap: int = 100,
        batch_size: int = 64,
        lock_ttl_seconds: int = 600,
        lock_timeout_seconds: float = 300.0,
    ) -> None:
        self.client = client
        self.collection_name = collection_name
        self.embedder = embedder
        self.documents_dir = documents_dir
        self.lock_repository = lock_repository
        self.owner_id = owner_id
        self.batch_size = batch_size
        self.lock_ttl_seconds = lock_ttl_seconds
        self.lock_timeout_seconds = lock_timeout_seconds
        self.text_splitter = RecursiveCharacterTextSplitter(
            chunk_size=chunk_size,
            chunk_overlap=chunk_overlap,
        )

    def ground_truth_sources(self) -> tuple[str, ...]:
        """File names of the reference documents, used as the retrieval filter."""

        return tuple(path.name for path in self._reference_paths())

    def ensure_collection(self) -> IngestionReport:
        """Rebuild the collection unless it holds exactly the expected chunks.

        The expected chunk count comes from splitting the reference documents,
        which needs no embedding calls, so a ready collection costs no writes.
        A collection left partial by an interrupted run is rebuilt.
        """

        sources = self.ground_truth_sources()
        with self.lock_repository.hold(
            lock_name=f"vector-collection:{self.collection_name}",
            owner_id=self.owner_id,
            ttl=timedelta(seconds=self.lock_ttl_seconds),
            timeout_seconds=self.lock_timeout_seconds,
        ):
            chunks = self._build_chunks()
            state = self._inspect()
            if self._is_ready(state, expected_points=len(chunks)):
                logger.info(
                    "Collection %s ready (%d points, dim=%s); ingestion skipped.",
                    self.collection_name,
                    state.points,
                    state.vector_size,
                )
                return IngestionReport(action="skipped", chunks=0, sources=sources)

            action = "recreated" if state.exists else "created"
            if state.exists:
                logger.warning(
                    "Recreating collection %s (points=%d dim=%s distance=%s, "
                    "expected points=%d dim=%d).",
                    self.collection_name,
                    state.points,
                    state.vector_size,
                    state.distance,
                    len(chunks),
                    self.embedder.dimension,
                )
                self.client.delete_collection(collection_name=self.collection_name)
            self.client.create_collection(
                collection_name=self.collection_name,
                vectors_config=rest.VectorParams(
                    size=self.embedder.dimension,
                    distance=rest.Distance.COSINE,
                ),
            )

            if not chunks:
                logger.warning(
                    "No reference documents found in %s; collection %s left empty.",
                    self.documents_dir,
                    self.collection_name,
                )
            self._upsert_chunks(chunks)
            logger.info(
                "Ingested %d chunk(s) from %d document(s) into %s.",
                len(chunks),
                len(sources),
                self.collection_name,
            )
            return IngestionReport(action=action, chunks=len(chunks), sources=sources)

    def _inspect(self) -> CollectionState:
        if not self.client.collection_exists(collection_name=self.collection_name):
            return CollectionState(exists=False, vector_size=None, distance=None, points=0)

        info = self.client.get_collection(collection_name=self.collection_name)
        vectors = info.config.params.vectors
        vector_size: int | None = None
        distance: rest.Distance | None = None
        if isinstance(vectors, rest.VectorParams):
            vector_size = vectors.size
            distance = vectors.distance
        points = self.client.count(collection_name=self.collection_name, exact=True).count
        return CollectionState(
            exists=True,
            vector_size=vector_size,
            distance=distance,
            points=points,
        )

    def _is_ready(self, state: CollectionState, *, expected_points: int) -> bool:
        return (
            state.exists
            and state.vector_size == self.embedder.dimension
            and state.distance == rest.Distance.COSINE
            and state.points > 0
            and state.points == expected_points
        )

    def _reference_paths(self) -> list[Path]:
        if not self.documents_dir.is_dir():
            return []
        return sorted(
            path
            for path in self.documents_dir.iterdir()
            if path.is_file() and path.suffix.lower() in REFERENCE_SUFFIXES
        )

    def _build_chunks(self) -> list[GroundTruthChunk]:
        chunks: list[GroundTruthChunk] = []
        for path in self._reference_paths():
            text = path.read_text("utf-8")
            for index, piece in enumerate(self.text_splitter.split_text(text)):
                chunks.append(
                    GroundTruthChunk(
                        point_id=str(uuid5(NAMESPACE_URL, f"{path.name}#{index}")),
                        source=path.name,
                        text=piece,
                    ),
                )
        return chunks

    def _upsert_chunks(self, chunks: list[GroundTruthChunk]) -> None:
        for start in range(0, len(chunks), self.batch_size):
            batch = chunks[start : start + self.batch_size]
            points = [
                rest.PointStruct(
                    id=chunk.point_id,
                    vector=self.embedder.embed_document(chunk.text),
                    payload={"text": chunk.text, "source": chunk.source},
                )
                for chunk in batch
            ]
            self.client.upsert(collection_name=self.collection_name, points=points, wait=True)
