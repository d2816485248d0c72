# data_access/chroma_db.py
import logging
import os
import threading
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import chromadb
import numpy as np
from chromadb.api.models.Collection import Collection

from .vector_db_interface import VectorDBInterface

from app.exceptions import DatabaseError, InitializationError
from app.models import ImageRecord, SearchResultItem, SearchResults

logger = logging.getLogger(__name__)

# Métrica de la colección: la similitud expuesta es 1 - distancia coseno
COLLECTION_METADATA = {"hnsw:space": "cosine"}
URL_METADATA_KEY = "image_url"
CREATED_AT_METADATA_KEY = "created_at"


def _parse_created_at(value: Any) -> Optional[datetime]:
    if not isinstance(value, str) or not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        logger.warning(f"Unparseable created_at value in store: '{value}'")
        return None


def _to_float_list(embedding: Any) -> List[float]:
    if embedding is None:
        return []
    # ChromaDB devuelve ndarrays en las consultas
    return np.asarray(embedding, dtype=float).ravel().tolist()


class ChromaVectorDB(VectorDBInterface):
    """
    Implementación concreta de VectorDBInterface usando ChromaDB.

    Cada registro se guarda con el id como clave, la descripción como documento,
    el embedding de la descripción y la URL/fecha de creación como metadatos.
    El acceso a la colección se serializa con un lock interno, de modo que el
    almacén admite inserciones y consultas concurrentes sin locking externo.
    """

    def __init__(
        self,
        path: Optional[str] = None,
        collection_name: str = "images",
        client: Optional[Any] = None,
    ):
        """
        Inicializa el cliente ChromaDB y obtiene/crea la colección.

        Args:
            path: Ruta del directorio para almacenamiento persistente (ignorado si se pasa `client`).
            collection_name: Nombre de la colección.
            client: Cliente ChromaDB ya construido (ej: chromadb.EphemeralClient() en tests).
        """
        self.path = path
        self.collection_name = collection_name
        self.client: Optional[Any] = None
        self.collection: Optional[Collection] = None
        self._lock = threading.RLock()
        self._dimension: Optional[int] = None
        self._last_init_error: Optional[str] = None

        try:
            if client is not None:
                self.client = client
                logger.info(f"Initializing ChromaVectorDB for collection: '{self.collection_name}' with injected client")
            else:
                if not self.path:
                    raise ValueError("A persistence path or a client is required.")
                logger.info(f"Initializing ChromaVectorDB for collection: '{self.collection_name}' at path: '{os.path.abspath(self.path)}'")
                os.makedirs(self.path, exist_ok=True)
                self.client = chromadb.PersistentClient(path=self.path)
            self.collection = self.client.get_or_create_collection(
                name=self.collection_name,
                metadata=dict(COLLECTION_METADATA),
            )
            logger.info(f"Collection '{self.collection_name}' obtained/created successfully.")
        except Exception as e:
            msg = f"Failed to initialize ChromaDB client or collection '{self.collection_name}': {e}"
            logger.error(msg, exc_info=True)
            self._last_init_error = msg
            self.client = None
            self.collection = None
            # No relanzar aquí, is_initialized devolverá False

    @property
    def is_initialized(self) -> bool:
        return self.collection is not None

    def ensure_ready(self):
        if not self.is_initialized:
            raise InitializationError(
                self._last_init_error or f"Collection '{self.collection_name}' is not available."
            )

    def _require_collection(self) -> Collection:
        if self.collection is None:
            raise DatabaseError("Collection not available.")
        return self.collection

    def get_dimension(self) -> Optional[int]:
        """Dimensión de los embeddings almacenados (del primer registro), o None si está vacía."""
        if self._dimension is not None:
            return self._dimension
        collection = self._require_collection()
        try:
            with self._lock:
                peeked = collection.peek(limit=1)
        except Exception as e:
            raise DatabaseError(f"Failed to inspect collection '{self.collection_name}': {e}") from e

        embeddings = peeked.get("embeddings") if peeked else None
        if embeddings is not None and len(embeddings) > 0 and embeddings[0] is not None:
            self._dimension = len(embeddings[0])
        return self._dimension

    def _check_dimension(self, embedding: List[float], operation: str):
        if not embedding:
            raise ValueError(f"{operation}: embedding cannot be empty.")
        expected = self.get_dimension()
        if expected is not None and len(embedding) != expected:
            raise DatabaseError(
                f"Dimension mismatch! {operation} dim: {len(embedding)}, Collection '{self.collection_name}' expects: {expected}."
            )

    def insert(
        self,
        url: str,
        description: str,
        embedding: List[float],
    ) -> ImageRecord:
        collection = self._require_collection()
        if not url or not description:
            raise ValueError("Records require both a URL and a description.")
        embedding = _to_float_list(embedding)
        self._check_dimension(embedding, "Insert")

        record_id = uuid.uuid4().hex
        created_at = datetime.now(timezone.utc)
        metadata = {
            URL_METADATA_KEY: url,
            CREATED_AT_METADATA_KEY: created_at.isoformat(),
        }
        try:
            with self._lock:
                collection.add(
                    ids=[record_id],
                    embeddings=[embedding],
                    documents=[description],
                    metadatas=[metadata],
                )
                if self._dimension is None:
                    self._dimension = len(embedding)
        except Exception as e:
            logger.error(f"Error inserting record into '{self.collection_name}': {e}")
            raise DatabaseError(f"Insert failed: {e}") from e

        logger.debug(f"Inserted record {record_id} into '{self.collection_name}' (dim: {len(embedding)}).")
        return ImageRecord(
            id=record_id,
            url=url,
            description=description,
            embedding=embedding,
            created_at=created_at,
        )

    def query_similar(
        self, query_embedding: List[float], n_results: int = 1
    ) -> SearchResults:
        """Consulta los registros más similares."""
        collection = self._require_collection()
        query_embedding = _to_float_list(query_embedding)
        if not query_embedding:
            raise ValueError("Query embedding cannot be empty.")
        if n_results <= 0:
            return SearchResults(items=[], query_vector=query_embedding)

        try:
            with self._lock:
                collection_count = collection.count()
        except Exception as e:
            logger.error(f"Error getting count for '{self.collection_name}' before query: {e}")
            raise DatabaseError(f"Query failed: {e}") from e
        if collection_count == 0:
            logger.info(f"Querying empty collection '{self.collection_name}'.")
            return SearchResults(items=[], query_vector=query_embedding)

        self._check_dimension(query_embedding, "Query")
        effective_n_results = min(n_results, collection_count)

        try:
            start_time = time.time()
            with self._lock:
                results_dict = collection.query(
                    query_embeddings=[query_embedding],
                    n_results=effective_n_results,
                    include=["documents", "metadatas", "distances", "embeddings"],
                )
            logger.debug(f"ChromaDB query took {time.time() - start_time:.3f}s.")
        except Exception as e:
            logger.error(f"Error during query on '{self.collection_name}': {e}", exc_info=True)
            raise DatabaseError(f"Query failed: {e}") from e

        items = self._build_items(results_dict)
        logger.debug(f"Query on '{self.collection_name}' found {len(items)} results.")
        return SearchResults(items=items, query_vector=query_embedding)

    @staticmethod
    def _first_row(results_dict: Dict[str, Any], key: str) -> List[Any]:
        rows = results_dict.get(key) if results_dict else None
        if rows is None or len(rows) == 0 or rows[0] is None:
            return []
        return list(rows[0])

    def _build_items(self, results_dict: Dict[str, Any]) -> List[SearchResultItem]:
        ids_list = self._first_row(results_dict, "ids")
        if not ids_list:
            return []
        distances_list = self._first_row(results_dict, "distances")
        documents_list = self._first_row(results_dict, "documents")
        metadatas_list = self._first_row(results_dict, "metadatas")
        embeddings_list = self._first_row(results_dict, "embeddings")

        if not (len(ids_list) == len(distances_list) == len(documents_list) == len(metadatas_list)):
            logger.warning("Query result lists length mismatch, returning potentially partial results.")

        items: List[SearchResultItem] = []
        # El orden de ChromaDB (distancia ascendente) se conserva tal cual
        for i, record_id in enumerate(ids_list):
            if i >= len(distances_list) or i >= len(documents_list) or i >= len(metadatas_list):
                break
            metadata = metadatas_list[i] or {}
            record = ImageRecord(
                id=record_id,
                url=metadata.get(URL_METADATA_KEY, ""),
                description=documents_list[i] or "",
                embedding=_to_float_list(embeddings_list[i]) if i < len(embeddings_list) else [],
                created_at=_parse_created_at(metadata.get(CREATED_AT_METADATA_KEY)),
            )
            distance = distances_list[i]
            items.append(SearchResultItem(record=record, distance=float(distance) if distance is not None else None))
        return items

    def count(self) -> int:
        """Devuelve el número de registros."""
        if self.collection is None:
            logger.warning(f"Count requested but collection '{self.collection_name}' is not available.")
            return -1
        try:
            with self._lock:
                return self.collection.count()
        except Exception as e:
            logger.error(f"Error getting count for '{self.collection_name}': {e}")
            return -1
