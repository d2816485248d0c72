# app/models.py
import os
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union


class FailureReason(str, Enum):
    """Reason attached to a per-item failure in a batch."""

    INVALID_IMAGE = "InvalidImage"
    BLOB_WRITE_FAILED = "BlobWriteFailed"
    DESCRIPTION_UNAVAILABLE = "DescriptionUnavailable"
    EMBEDDING_UNAVAILABLE = "EmbeddingUnavailable"
    PERSIST_FAILED = "PersistFailed"
    QUERY_FAILED = "QueryFailed"
    CANCELLED = "Cancelled"


@dataclass(frozen=True)
class FilePayload:
    """
    A raw uploaded file: original name, bytes and (optional) declared content type.
    """
    name: str
    data: bytes
    content_type: Optional[str] = None

    @classmethod
    def from_path(cls, path: str) -> "FilePayload":
        """Reads a file from disk into a payload named after its basename."""
        with open(path, "rb") as fh:
            data = fh.read()
        return cls(name=os.path.basename(path), data=data)

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass(frozen=True)  # Use frozen=True for immutable result objects
class ImageRecord:
    """
    A persisted image: blob URL, derived description and the embedding of that description.

    Only ever built fully formed by the vector store on insert (or when reading
    back a stored row); never mutated afterwards.
    """
    id: str
    url: str
    description: str
    embedding: List[float] = field(default_factory=list, repr=False)
    created_at: Optional[datetime] = None

    @property
    def dimension(self) -> int:
        return len(self.embedding)

    def to_dict(self, include_embedding: bool = False) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "image_url": self.url,
            "description": self.description,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
        if include_embedding:
            data["embedding"] = list(self.embedding)
        return data


@dataclass(frozen=True)
class SearchResultItem:
    """
    Represents a single record found during a similarity search.
    """
    record: ImageRecord
    distance: Optional[float] = None  # Cosine distance from the query (lower is more similar)

    @property
    def id(self) -> str:
        return self.record.id

    @property
    def similarity(self) -> Optional[float]:
        """
        Calculates similarity (assuming distance is cosine distance).
        Similarity = 1 - distance, clamped to [0, 1]. Returns None if distance is None.
        """
        if self.distance is None:
            return None
        return min(1.0, max(0.0, 1.0 - self.distance))


@dataclass(frozen=True)
class SearchResults:
    """
    Represents the complete results of a similarity search query.
    """
    items: List[SearchResultItem] = field(default_factory=list)
    query_vector: Optional[List[float]] = None  # Optional: include the vector used for the query

    @property
    def count(self) -> int:
        """Returns the number of result items."""
        return len(self.items)

    @property
    def is_empty(self) -> bool:
        """Checks if the result set contains no items."""
        return not self.items

    @property
    def best(self) -> Optional[SearchResultItem]:
        """First item in store order, or None. The store's order is authoritative."""
        return self.items[0] if self.items else None


@dataclass(frozen=True)
class IngestSuccess:
    index: int
    url: str
    description: str
    record_id: Optional[str] = None

    @property
    def ok(self) -> bool:
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "status": "success",
            "image_url": self.url,
            "description": self.description,
            "id": self.record_id,
        }


@dataclass(frozen=True)
class IngestFailure:
    index: int
    reason: FailureReason
    detail: str = ""

    @property
    def ok(self) -> bool:
        return False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "status": "failure",
            "reason": self.reason.value,
            "detail": self.detail,
        }


IngestOutcome = Union[IngestSuccess, IngestFailure]


@dataclass(frozen=True)
class MatchResult:
    """
    Best match for one (trimmed) title. Ephemeral: never persisted.

    `score` is None exactly when `best_match` is None. `error` is set when
    the title could not be resolved (embedding or query failure, cancellation).
    """
    title: str
    best_match: Optional[ImageRecord] = None
    score: Optional[float] = None
    error: Optional[FailureReason] = None
    detail: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "title": self.title,
            "image": self.best_match.to_dict() if self.best_match else None,
            "score": self.score,
        }
        if self.error is not None:
            data["error"] = self.error.value
            data["detail"] = self.detail
        return data
