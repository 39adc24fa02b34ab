from __future__ import annotations

from collections.abc import Iterator
from datetime import timedelta
from pathlib import Path
from typing import Any

import allure
import pytest
from conftest import FakeEmbedder
from qdrant_client import QdrantClient
from qdrant_client.http import models as rest

from cv_evaluator.llm.base import EmbeddingError
from cv_evaluator.rag.ingestion import GroundTruthIngestor
from cv_evaluator.rag.locks import IngestionLockRepository, IngestionLockTimeout
from cv_evaluator.rag.retriever import CONTEXT_SEPARATOR, ContextRetriever

pytestmark = [
    allure.epic("Context Retrieval"),
    allure.feature("Ground Truth Ingestion"),
]

COLLECTION = "ground_truth_docs"


class SpyQdrantClient(QdrantClient):
    """In-memory Qdrant that records every write operation."""

    def __init__(self) -> None:
        super().__init__(location=":memory:")
        self.writes: list[str] = []

    def create_collection(self, *args: Any, **kwargs: Any) -> bool:
        self.writes.append("create_collection")
        return super().create_collection(*args, **kwargs)

    def delete_collection(self, *args: Any, **kwargs: Any) -> bool:
        self.writes.append("delete_collection")
        return super().delete_collection(*args, **kwargs)

    def upsert(self, *args: Any, **kwargs: Any) -> rest.UpdateResult:
        self.writes.append("upsert")
        return super().upsert(*args, **kwargs)


class BrokenEmbedder(FakeEmbedder):
    def embed_query(self, text: str) -> list[float]:
        raise EmbeddingError("Embedding request failed: deadline exceeded")


class FlakyEmbedder(FakeEmbedder):
    """Fails every document embedding after the first ``fail_after`` calls."""

    def __init__(self, fail_after: int) -> None:
        super().__init__(dimension=8)
        self.fail_after = fail_after

    def embed_document(self, text: str) -> list[float]:
        if self.document_calls >= self.fail_after:
            raise EmbeddingError("Embedding request failed: service unavailable")
        return super().embed_document(text)


@pytest.fixture()
def documents_dir(tmp_path: Path) -> Path:
    directory = tmp_path / "documents"
    directory.mkdir()
    (directory / "job_description.md").write_text(
        "Backend engineer role. " * 40 + "\n\nCloud, databases and AI integration.",
        "utf-8",
    )
    (directory / "case_study_rubric.txt").write_text(
        "Correctness, resilience, documentation and creativity are scored 1 to 5. " * 10,
        "utf-8",
    )
    (directory / "ignored.pdf").write_bytes(b"%PDF-1.4 not a reference document")
    return directory


@pytest.fixture()
def locks(db_path: Path) -> Iterator[IngestionLockRepository]:
    repository = IngestionLockRepository(db_path)
    repository.init_schema()
    yield repository
    repository.close()


@pytest.fixture()
def client() -> Iterator[SpyQdrantClient]:
    spy = SpyQdrantClient()
    yield spy
    spy.close()


def _ingestor(
    client: QdrantClient,
    locks: IngestionLockRepository,
    documents_dir: Path,
    *,
    embedder: FakeEmbedder | None = None,
    owner_id: str = "worker-a",
    batch_size: int = 64,
) -> GroundTruthIngestor:
    return GroundTruthIngestor(
        client=client,
        collection_name=COLLECTION,
        embedder=embedder or FakeEmbedder(dimension=8),
        documents_dir=documents_dir,
        lock_repository=locks,
        owner_id=owner_id,
        chunk_size=200,
        chunk_overlap=20,
        batch_size=batch_size,
        lock_timeout_seconds=1.0,
    )


def test_first_start_creates_and_populates_collection(
    client: SpyQdrantClient,
    locks: IngestionLockRepository,
    documents_dir: Path,
) -> None:
    ingestor = _ingestor(client, locks, documents_dir)

    report = ingestor.ensure_collection()

    assert report.action == "created"
    assert report.chunks > 2
    assert report.sources == ("case_study_rubric.txt", "job_description.md")
    assert client.count(collection_name=COLLECTION, exact=True).count == report.chunks
    vectors = client.get_collection(collection_name=COLLECTION).config.params.vectors
    assert isinstance(vectors, rest.VectorParams)
    assert vectors.size == 8
    assert vectors.distance == rest.Distance.COSINE


def test_second_start_performs_no_writes(
    client: SpyQdrantClient,
    locks: IngestionLockRepository,
    documents_dir: Path,
) -> None:
    first = _ingestor(client, locks, documents_dir).ensure_collection()
    client.writes.clear()
    embedder = FakeEmbedder(dimension=8)

    second = _ingestor(client, locks, documents_dir, embedder=embedder).ensure_collection()

    assert second.action == "skipped"
    assert client.writes == []
    assert embedder.document_calls == 0
    assert client.count(collection_name=COLLECTION, exact=True).count == first.chunks


def test_interrupted_ingestion_is_rebuilt_on_next_start(
    client: SpyQdrantClient,
    locks: IngestionLockRepository,
    documents_dir: Path,
) -> None:
    with pytest.raises(EmbeddingError):
        _ingestor(
            client,
            locks,
            documents_dir,
            embedder=FlakyEmbedder(fail_after=3),
            batch_size=2,
        ).ensure_collection()
    assert client.count(collection_name=COLLECTION, exact=True).count == 2
    client.writes.clear()

    report = _ingestor(client, locks, documents_dir, batch_size=2).ensure_collection()

    assert report.action == "recreated"
    assert report.chunks > 2
    assert client.writes[:2] == ["delete_collection", "create_collection"]
    assert client.count(collection_name=COLLECTION, exact=True).count == report.chunks


def test_new_reference_document_triggers_rebuild(
    client: SpyQdrantClient,
    locks: IngestionLockRepository,
    documents_dir: Path,
) -> None:
    first = _ingestor(client, locks, documents_dir).ensure_collection()
    (documents_dir / "scoring_notes.md").write_text("Weight correctness highest. " * 20, "utf-8")

    second = _ingestor(client, locks, documents_dir).ensure_collection()

    assert second.action == "recreated"
    assert second.chunks > first.chunks
    assert client.count(collection_name=COLLECTION, exact=True).count == second.chunks


def test_dimension_mismatch_recreates_collection(
    client: SpyQdrantClient,
    locks: IngestionLockRepository,
    documents_dir: Path,
) -> None:
    client.create_collection(
        collection_name=COLLECTION,
        vectors_config=rest.VectorParams(size=4, distance=rest.Distance.COSINE),
    )
    client.upsert(
        collection_name=COLLECTION,
        points=[rest.PointStruct(id=1, vector=[0.1, 0.2, 0.3, 0.4], payload={"text": "stale"})],
    )
    client.writes.clear()

    report = _ingestor(client, locks, documents_dir).ensure_collection()

    assert report.action == "recreated"
    assert client.writes[:2] == ["delete_collection", "create_collection"]
    vectors = client.get_collection(collection_name=COLLECTION).config.params.vectors
    assert isinstance(vectors, rest.VectorParams)
    assert vectors.size == 8


def test_empty_collection_is_refilled(
    client: SpyQdrantClient,
    locks: IngestionLockRepository,
    documents_dir: Path,
) -> None:
    client.create_collection(
        collection_name=COLLECTION,
        vectors_config=rest.VectorParams(size=8, distance=rest.Distance.COSINE),
    )

    report = _ingestor(client, locks, documents_dir).ensure_collection()

    assert report.action == "recreated"
    assert client.count(collection_name=COLLECTION, exact=True).count == report.chunks


def test_ingestion_waits_for_lock_held_elsewhere(
    client: SpyQdrantClient,
    locks: IngestionLockRepository,
    documents_dir: Path,
) -> None:
    assert locks.acquire(
        lock_name=f"vector-collection:{COLLECTION}",
        owner_id="worker-b",
        ttl=timedelta(minutes=10),
    )

    with pytest.raises(IngestionLockTimeout):
        _ingestor(client, locks, documents_dir, owner_id="worker-a").ensure_collection()
    assert client.writes == []


def test_lock_is_exclusive_reentrant_and_expires(locks: IngestionLockRepository) -> None:
    ttl = timedelta(minutes=10)

    assert locks.acquire(lock_name="rebuild", owner_id="a", ttl=ttl)
    assert locks.acquire(lock_name="rebuild", owner_id="a", ttl=ttl)
    assert not locks.acquire(lock_name="rebuild", owner_id="b", ttl=ttl)
    assert not locks.release(lock_name="rebuild", owner_id="b")
    assert locks.release(lock_name="rebuild", owner_id="a")

    assert locks.acquire(lock_name="rebuild", owner_id="a", ttl=timedelta(seconds=-1))
    assert locks.acquire(lock_name="rebuild", owner_id="b", ttl=ttl)


def test_retriever_returns_only_ground_truth_chunks(
    client: SpyQdrantClient,
    locks: IngestionLockRepository,
    documents_dir: Path,
) -> None:
    embedder = FakeEmbedder(dimension=8)
    ingestor = _ingestor(client, locks, documents_dir, embedder=embedder)
    ingestor.ensure_collection()
    foreign_text = "Unrelated upload that must never be used as context."
    client.upsert(
        collection_name=COLLECTION,
        points=[
            rest.PointStruct(
                id="00000000-0000-0000-0000-000000000001",
                vector=embedder.embed_document(foreign_text),
                payload={"text": foreign_text, "source": "candidate_cv.pdf"},
            ),
        ],
    )
    retriever = ContextRetriever(
        client=client,
        collection_name=COLLECTION,
        embedder=embedder,
        sources=ingestor.ground_truth_sources(),
    )

    context = retriever.retrieve(foreign_text, 2)

    assert foreign_text not in context
    assert len(context.split(CONTEXT_SEPARATOR)) == 2


def test_retriever_rejects_bad_limit_and_propagates_embedding_errors(
    client: SpyQdrantClient,
) -> None:
    client.create_collection(
        collection_name=COLLECTION,
        vectors_config=rest.VectorParams(size=8, distance=rest.Distance.COSINE),
    )
    retriever = ContextRetriever(
        client=client,
        collection_name=COLLECTION,
        embedder=FakeEmbedder(dimension=8),
    )

    assert retriever.retrieve("anything", 3) == ""
    with pytest.raises(ValueError, match="limit"):
        retriever.retrieve("anything", 0)

    broken = ContextRetriever(
        client=client,
        collection_name=COLLECTION,
        embedder=BrokenEmbedder(dimension=8),
    )
    with pytest.raises(EmbeddingError):
        broken.retrieve("anything", 3)
