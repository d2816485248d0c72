# data_access/vector_db_interface.py
from abc import ABC, abstractmethod
from typing import List, Optional

from app.models import ImageRecord, SearchResults


class VectorDBInterface(ABC):
    """
    Abstract Base Class defining the interface for the image record store.

    Allows swapping different vector database implementations (e.g., ChromaDB, pgvector)
    without changing the orchestration logic that depends on this interface.
    Implementations own their concurrency control: callers may insert and
    query from several threads at once without external locking.
    """

    @abstractmethod
    def insert(
        self,
        url: str,
        description: str,
        embedding: List[float],
    ) -> ImageRecord:
        """
        Persists a fully formed record; the store assigns its id and creation time.

        Args:
            url: Blob URL of the image.
            description: Natural-language description of the image.
            embedding: Embedding of `description`.

        Returns:
            The stored ImageRecord, including its assigned id.

        Raises:
            DatabaseError: If the write is rejected.
            ValueError: If the embedding is empty.
        """

    @abstractmethod
    def query_similar(
        self, query_embedding: List[float], n_results: int
    ) -> SearchResults:
        """
        Returns up to `n_results` records most similar to the query embedding.

        Args:
            query_embedding: The embedding vector to search for.
            n_results: The maximum number of similar results to return (k).

        Returns:
            A SearchResults object ordered by decreasing similarity. Returns an
            empty SearchResults if the store holds no records.

        Raises:
            DatabaseError: If an error occurs during the query.
            ValueError: If the query embedding is invalid.
        """

    @abstractmethod
    def count(self) -> int:
        """
        Returns the total number of records currently in the store.

        Returns:
            The number of items, or -1 if an error occurs during counting.
        """

    @property
    @abstractmethod
    def is_initialized(self) -> bool:
        """
        Checks if the database connection and collection are properly initialized.
        """

    @abstractmethod
    def ensure_ready(self):
        """
        Raises UpstreamUnavailableError if the store is not usable (misconfiguration,
        failed initialization).
        """

    @abstractmethod
    def get_dimension(self) -> Optional[int]:
        """
        Returns the embedding dimension of the stored records, or None if the store is empty.
        """
