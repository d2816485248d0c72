import hashlib
import io
import re
import threading
import time
import uuid
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

import numpy as np
import pytest
from PIL import Image

from app.concurrency import RetryPolicy
from app.exceptions import (
    BlobStoreError,
    DatabaseError,
    InitializationError,
    ProviderError,
    StoreUnavailableError,
    UpstreamUnavailableError,
)
from app.ingestion import IngestionOrchestrator
from app.matching import MatchingOrchestrator
from app.models import FilePayload, ImageRecord, SearchResultItem, SearchResults
from core.describer import DescriptionService
from core.embedder import EmbeddingService
from data_access.blob_store import BlobStore
from data_access.vector_db_interface import VectorDBInterface

FAKE_DIMENSION = 256


def make_image_bytes(color=(200, 120, 40), size=(8, 8), fmt="PNG") -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", size, color).save(buffer, format=fmt)
    return buffer.getvalue()


def bag_of_words_vector(text: str, dimension: int = FAKE_DIMENSION) -> List[float]:
    """Deterministic, L2-normalised hashed bag of words. Shared words => higher cosine similarity."""
    vector = np.zeros(dimension, dtype=float)
    vector[0] = 0.1  # never the zero vector
    for word in re.findall(r"[a-z0-9]+", text.lower()):
        bucket = int(hashlib.md5(word.encode("utf-8")).hexdigest(), 16) % (dimension - 1) + 1
        vector[bucket] += 1.0
    return (vector / np.linalg.norm(vector)).tolist()


class FakeBlobStore(BlobStore):
    def __init__(self, ready: bool = True, fail_names: Iterable[str] = ()):
        self.ready = ready
        self.fail_names = set(fail_names)
        self.writes: List[Dict] = []
        self._lock = threading.Lock()

    @property
    def is_ready(self) -> bool:
        return self.ready

    def ensure_ready(self):
        if not self.ready:
            raise StoreUnavailableError("BLOB_READ_WRITE_TOKEN is not set")

    def write(self, name, data, content_type=None):
        if name in self.fail_names:
            raise BlobStoreError(f"refused {name}")
        url = f"https://blob.test/{uuid.uuid4().hex[:8]}/{name}"
        with self._lock:
            self.writes.append({"name": name, "data": data, "content_type": content_type, "url": url})
        return url


class FakeDescriber(DescriptionService):
    """Describes by filename: the first key of `descriptions` found in the URL wins."""

    def __init__(
        self,
        descriptions: Optional[Dict[str, str]] = None,
        fail_for: Iterable[str] = (),
        transient_failures: int = 0,
        ready: bool = True,
        delay: float = 0.0,
    ):
        self.descriptions = descriptions or {}
        self.delay = delay
        self.fail_for = set(fail_for)
        self.transient_failures = transient_failures
        self.ready = ready
        self.calls: List[str] = []
        self._lock = threading.Lock()

    @property
    def is_ready(self) -> bool:
        return self.ready

    def ensure_ready(self):
        if not self.ready:
            raise UpstreamUnavailableError("OPENAI_API_KEY is not set")

    def describe(self, image_url):
        with self._lock:
            self.calls.append(image_url)
            if self.transient_failures > 0:
                self.transient_failures -= 1
                raise ProviderError("temporarily unavailable")
        if self.delay:
            time.sleep(self.delay)
        if any(marker in image_url for marker in self.fail_for):
            raise ProviderError("Vision model did not return a description")
        for marker, description in self.descriptions.items():
            if marker in image_url:
                return description
        return f"An image stored at {image_url.rsplit('/', 1)[-1]}"


class FakeEmbedder(EmbeddingService):
    def __init__(self, fail_for: Iterable[str] = (), ready: bool = True, empty_for: Iterable[str] = ()):
        self.fail_for = set(fail_for)
        self.empty_for = set(empty_for)
        self.ready = ready
        self.calls: List[str] = []
        self._lock = threading.Lock()

    @property
    def dimension(self):
        return FAKE_DIMENSION

    @property
    def is_ready(self) -> bool:
        return self.ready

    def ensure_ready(self):
        if not self.ready:
            raise UpstreamUnavailableError("OPENAI_API_KEY is not set")

    def embed(self, text):
        with self._lock:
            self.calls.append(text)
        if any(marker in text for marker in self.fail_for):
            raise ProviderError("Embedding model returned an empty embedding")
        if any(marker in text for marker in self.empty_for):
            return []
        return bag_of_words_vector(text)


class FakeVectorDB(VectorDBInterface):
    """In-memory store with cosine distance; results keep insertion order on ties."""

    def __init__(self, ready: bool = True, fail_insert: bool = False, fail_query: bool = False):
        self.ready = ready
        self.fail_insert = fail_insert
        self.fail_query = fail_query
        self.records: List[ImageRecord] = []
        self.insert_calls = 0
        self._lock = threading.Lock()

    @property
    def is_initialized(self) -> bool:
        return self.ready

    def ensure_ready(self):
        if not self.ready:
            raise InitializationError("store not initialized")

    def get_dimension(self):
        return self.records[0].dimension if self.records else None

    def insert(self, url, description, embedding):
        with self._lock:
            self.insert_calls += 1
            if self.fail_insert:
                raise DatabaseError("Insert failed: constraint violation")
            record = ImageRecord(
                id=uuid.uuid4().hex,
                url=url,
                description=description,
                embedding=list(embedding),
                created_at=datetime.now(timezone.utc),
            )
            self.records.append(record)
            return record

    def query_similar(self, query_embedding, n_results=1):
        if self.fail_query:
            raise DatabaseError("Query failed: connection reset")
        with self._lock:
            records = list(self.records)
        query = np.asarray(query_embedding, dtype=float)
        scored = []
        for record in records:
            stored = np.asarray(record.embedding, dtype=float)
            cosine = float(np.dot(query, stored) / (np.linalg.norm(query) * np.linalg.norm(stored)))
            scored.append(SearchResultItem(record=record, distance=1.0 - cosine))
        scored.sort(key=lambda item: item.distance)
        return SearchResults(items=scored[:n_results], query_vector=list(query_embedding))

    def count(self):
        with self._lock:
            return len(self.records)


@pytest.fixture
def image_bytes() -> bytes:
    return make_image_bytes()


@pytest.fixture
def blob_store() -> FakeBlobStore:
    return FakeBlobStore()


@pytest.fixture
def describer() -> FakeDescriber:
    return FakeDescriber()


@pytest.fixture
def embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def vector_db() -> FakeVectorDB:
    return FakeVectorDB()


@pytest.fixture
def no_retry() -> RetryPolicy:
    return RetryPolicy(max_attempts=1, base_delay=0.0, max_delay=0.0)


@pytest.fixture
def ingestion(blob_store, describer, embedder, vector_db, no_retry) -> IngestionOrchestrator:
    return IngestionOrchestrator(
        blob_store=blob_store,
        describer=describer,
        embedder=embedder,
        db=vector_db,
        max_workers=4,
        retry_policy=no_retry,
    )


@pytest.fixture
def matching(embedder, vector_db, no_retry) -> MatchingOrchestrator:
    return MatchingOrchestrator(
        embedder=embedder,
        db=vector_db,
        max_workers=4,
        retry_policy=no_retry,
    )


def payload(name: str, data: bytes) -> FilePayload:
    return FilePayload(name=name, data=data)
