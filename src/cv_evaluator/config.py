"""Runtime configuration for the evaluation worker and its CLI."""

from __future__ import annotations

import os
import socket
from dataclasses import dataclass, field
from pathlib import Path

from cv_evaluator.llm.gemini import (
    DEFAULT_EMBEDDING_DIMENSION,
    DEFAULT_EMBEDDING_MODEL,
    DEFAULT_GENERATION_MODEL,
)
from cv_evaluator.queue.models import EVALUATION_QUEUE, BackoffPolicy, BackoffType, QueueOptions


@dataclass(slots=True)
class QueueSettings:
    """Work queue and worker pool settings."""

    name: str = EVALUATION_QUEUE
    attempts: int = 3
    backoff_type: str = BackoffType.EXPONENTIAL.value
    backoff_delay_ms: int = 5000
    remove_on_complete: bool = True
    remove_on_fail: bool = False
    concurrency: int = 1
    poll_interval_seconds: float = 2.0
    stalled_after_seconds: int = 600
    heartbeat_interval_seconds: float = 30.0
    worker_id: str = field(default_factory=lambda: f"{socket.gethostname()}:{os.getpid()}")

    def options(self) -> QueueOptions:
        return QueueOptions(
            attempts=self.attempts,
            backoff=BackoffPolicy(
                type=BackoffType(self.backoff_type),
                delay_ms=self.backoff_delay_ms,
            ),
            remove_on_complete=self.remove_on_complete,
            remove_on_fail=self.remove_on_fail,
        )


@dataclass(slots=True)
class ModelSettings:
    """Model provider settings."""

    api_key: str = ""
    generation_model: str = DEFAULT_GENERATION_MODEL
    embedding_model: str = DEFAULT_EMBEDDING_MODEL
    embedding_dimension: int = DEFAULT_EMBEDDING_DIMENSION


@dataclass(slots=True)
class VectorSettings:
    """Vector store and ground-truth ingestion settings."""

    url: str = "http://localhost:6333"
    api_key: str | None = None
    collection_name: str = "ground_truth_docs"
    top_k: int = 4
    chunk_size: int = 1000
    chunk_overlap: int = 100
    lock_ttl_seconds: int = 600
    lock_timeout_seconds: float = 300.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".cv_evaluator.db")
    sqlite_busy_timeout_ms: int = 5000
    upload_dir: Path = Path("uploads")
    documents_dir: Path = Path("documents")
    queue: QueueSettings = field(default_factory=QueueSettings)
    model: ModelSettings = field(default_factory=ModelSettings)
    vector: VectorSettings = field(default_factory=VectorSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        queue_defaults = QueueSettings()
        return cls(
            db_path=db_path or Path(os.getenv("CV_EVALUATOR_DB_PATH", ".cv_evaluator.db")),
            sqlite_busy_timeout_ms=int(os.getenv("CV_EVALUATOR_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            upload_dir=Path(os.getenv("CV_EVALUATOR_UPLOAD_DIR", "uploads")),
            documents_dir=Path(os.getenv("CV_EVALUATOR_DOCUMENTS_DIR", "documents")),
            queue=QueueSettings(
                name=os.getenv("CV_EVALUATOR_QUEUE_NAME", EVALUATION_QUEUE),
                attempts=int(os.getenv("CV_EVALUATOR_QUEUE_ATTEMPTS", "3")),
                backoff_type=os.getenv(
                    "CV_EVALUATOR_QUEUE_BACKOFF_TYPE",
                    BackoffType.EXPONENTIAL.value,
                )
                .strip()
                .lower(),
                backoff_delay_ms=int(os.getenv("CV_EVALUATOR_QUEUE_BACKOFF_DELAY_MS", "5000")),
                remove_on_complete=_env_bool(
                    "CV_EVALUATOR_QUEUE_REMOVE_ON_COMPLETE",
                    default=True,
                ),
                remove_on_fail=_env_bool("CV_EVALUATOR_QUEUE_REMOVE_ON_FAIL", default=False),
                concurrency=int(os.getenv("CV_EVALUATOR_WORKER_CONCURRENCY", "1")),
                poll_interval_seconds=float(
                    os.getenv("CV_EVALUATOR_WORKER_POLL_INTERVAL_SECONDS", "2.0"),
                ),
                stalled_after_seconds=int(
                    os.getenv("CV_EVALUATOR_WORKER_STALLED_AFTER_SECONDS", "600"),
                ),
                heartbeat_interval_seconds=float(
                    os.getenv("CV_EVALUATOR_WORKER_HEARTBEAT_SECONDS", "30.0"),
                ),
                worker_id=os.getenv("CV_EVALUATOR_WORKER_ID", queue_defaults.worker_id),
            ),
            model=ModelSettings(
                api_key=os.getenv("GEMINI_API_KEY", ""),
                generation_model=os.getenv(
                    "CV_EVALUATOR_GENERATION_MODEL",
                    DEFAULT_GENERATION_MODEL,
                ),
                embedding_model=os.getenv("CV_EVALUATOR_EMBEDDING_MODEL", DEFAULT_EMBEDDING_MODEL),
                embedding_dimension=int(
                    os.getenv(
                        "CV_EVALUATOR_EMBEDDING_DIMENSION",
                        str(DEFAULT_EMBEDDING_DIMENSION),
                    ),
                ),
            ),
            vector=VectorSettings(
                url=os.getenv("CV_EVALUATOR_QDRANT_URL", "http://localhost:6333"),
                api_key=os.getenv("CV_EVALUATOR_QDRANT_API_KEY") or None,
                collection_name=os.getenv("CV_EVALUATOR_COLLECTION_NAME", "ground_truth_docs"),
                top_k=int(os.getenv("CV_EVALUATOR_RETRIEVAL_TOP_K", "4")),
                chunk_size=int(os.getenv("CV_EVALUATOR_CHUNK_SIZE", "1000")),
                chunk_overlap=int(os.getenv("CV_EVALUATOR_CHUNK_OVERLAP", "100")),
                lock_ttl_seconds=int(os.getenv("CV_EVALUATOR_INGESTION_LOCK_TTL_SECONDS", "600")),
                lock_timeout_seconds=float(
                    os.getenv("CV_EVALUATOR_INGESTION_LOCK_TIMEOUT_SECONDS", "300.0"),
                ),
            ),
        )

    def validate_for_worker(self) -> None:
        """Raise configuration error if the worker cannot run with these settings."""

        if not self.model.api_key.strip():
            raise ValueError("GEMINI_API_KEY is required to run the evaluation worker.")
        if self.queue.attempts <= 0:
            raise ValueError("CV_EVALUATOR_QUEUE_ATTEMPTS must be a positive integer.")
        if self.queue.backoff_type not in {item.value for item in BackoffType}:
            raise ValueError(
                "CV_EVALUATOR_QUEUE_BACKOFF_TYPE must be one of "
                f"{sorted(item.value for item in BackoffType)}, got {self.queue.backoff_type!r}.",
            )
        if self.queue.backoff_delay_ms < 0:
            raise ValueError("CV_EVALUATOR_QUEUE_BACKOFF_DELAY_MS must be >= 0.")
        if self.queue.concurrency <= 0:
            raise ValueError("CV_EVALUATOR_WORKER_CONCURRENCY must be a positive integer.")
        if self.queue.poll_interval_seconds <= 0:
            raise ValueError("CV_EVALUATOR_WORKER_POLL_INTERVAL_SECONDS must be > 0.")
        if self.vector.top_k <= 0:
            raise ValueError("CV_EVALUATOR_RETRIEVAL_TOP_K must be a positive integer.")
        self.validate_for_ingestion()

    def validate_for_ingestion(self) -> None:
        """Raise configuration error if ground-truth ingestion cannot run."""

        if not self.model.api_key.strip():
            raise ValueError("GEMINI_API_KEY is required to embed ground-truth documents.")
        if self.model.embedding_dimension <= 0:
            raise ValueError("CV_EVALUATOR_EMBEDDING_DIMENSION must be a positive integer.")
        if self.vector.chunk_size <= 0:
            raise ValueError("CV_EVALUATOR_CHUNK_SIZE must be a positive integer.")
        if self.vector.chunk_overlap < 0 or self.vector.chunk_overlap >= self.vector.chunk_size:
            raise ValueError(
                "CV_EVALUATOR_CHUNK_OVERLAP must be >= 0 and smaller than CV_EVALUATOR_CHUNK_SIZE.",
            )
        if self.vector.lock_ttl_seconds <= 0:
            raise ValueError("CV_EVALUATOR_INGESTION_LOCK_TTL_SECONDS must be > 0.")
        if not self.vector.collection_name.strip():
            raise ValueError("CV_EVALUATOR_COLLECTION_NAME must not be empty.")


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
