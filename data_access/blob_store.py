# data_access/blob_store.py
import logging
import os
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional
from urllib.parse import quote

import requests

import config
from app.exceptions import BlobStoreError, StoreUnavailableError
from core.image_processor import sanitize_filename, unique_blob_name

logger = logging.getLogger(__name__)


class BlobStore(ABC):
    """
    Interfaz del almacén de objetos binarios.

    `write` guarda los bytes y devuelve una URL estable desde la que se pueden recuperar.
    """

    @abstractmethod
    def write(self, name: str, data: bytes, content_type: Optional[str] = None) -> str:
        """
        Escribe un objeto y devuelve su URL.

        Raises:
            StoreUnavailableError: Si falta la credencial o configuración.
            BlobStoreError: Si la escritura falla.
        """

    @property
    @abstractmethod
    def is_ready(self) -> bool:
        """True si el almacén tiene la configuración necesaria."""

    @abstractmethod
    def ensure_ready(self):
        """Lanza StoreUnavailableError si falta configuración."""


class VercelBlobStore(BlobStore):
    """
    Almacén de blobs público de Vercel, vía su API HTTP.

    Cada escritura es un PUT a `{api_url}/{pathname}` autenticado con el token
    de lectura/escritura; la respuesta JSON contiene la URL pública del objeto.
    """

    API_VERSION = "7"

    def __init__(
        self,
        token: Optional[str] = None,
        api_url: str = config.VERCEL_BLOB_API_URL,
        add_random_suffix: bool = True,
        timeout: float = config.REQUEST_TIMEOUT_S,
    ):
        self._token = token if token is not None else config.BLOB_READ_WRITE_TOKEN
        self.api_url = api_url.rstrip("/")
        self.add_random_suffix = add_random_suffix
        self.timeout = timeout
        self._local = threading.local()

    @property
    def is_ready(self) -> bool:
        return bool(self._token)

    def ensure_ready(self):
        if not self.is_ready:
            raise StoreUnavailableError("BLOB_READ_WRITE_TOKEN is not set")

    def _session(self) -> requests.Session:
        session = getattr(self._local, "session", None)
        if session is None:
            session = requests.Session()
            session.headers.update({
                "authorization": f"Bearer {self._token}",
                "x-api-version": self.API_VERSION,
            })
            self._local.session = session
        return session

    def write(self, name: str, data: bytes, content_type: Optional[str] = None) -> str:
        self.ensure_ready()
        pathname = sanitize_filename(name)
        headers = {"x-add-random-suffix": "1" if self.add_random_suffix else "0"}
        if content_type:
            headers["x-content-type"] = content_type

        url = f"{self.api_url}/{quote(pathname)}"
        logger.debug(f"Uploading {len(data)} bytes to Vercel Blob as '{pathname}'...")
        try:
            response = self._session().put(url, data=data, headers=headers, timeout=self.timeout)
            response.raise_for_status()
            body = response.json()
        except requests.exceptions.HTTPError as e:
            status = e.response.status_code if e.response is not None else "N/A"
            raise BlobStoreError(f"Blob upload of '{pathname}' returned HTTP {status}: {e}") from e
        except requests.exceptions.RequestException as e:
            raise BlobStoreError(f"Blob upload of '{pathname}' failed: {e}") from e
        except ValueError as e:
            raise BlobStoreError(f"Blob upload of '{pathname}' returned a non-JSON body: {e}") from e

        blob_url = body.get("url") if isinstance(body, dict) else None
        if not blob_url:
            raise BlobStoreError(f"Blob upload of '{pathname}' returned no URL.")
        logger.info(f"Stored blob '{pathname}' at {blob_url}")
        return blob_url


class LocalBlobStore(BlobStore):
    """
    Almacén de blobs en el sistema de ficheros local.

    Útil en desarrollo: si se configura `public_base_url` (ej: un servidor
    estático que sirve `root_dir`), las URLs devueltas son accesibles para el
    modelo de visión; si no, se devuelven URIs file://.
    """

    def __init__(
        self,
        root_dir: str = config.LOCAL_BLOB_DIR,
        public_base_url: Optional[str] = config.LOCAL_BLOB_BASE_URL,
    ):
        self.root_dir = Path(root_dir)
        self.public_base_url = public_base_url.rstrip("/") if public_base_url else None

    @property
    def is_ready(self) -> bool:
        return bool(str(self.root_dir))

    def ensure_ready(self):
        try:
            os.makedirs(self.root_dir, exist_ok=True)
        except OSError as e:
            raise StoreUnavailableError(f"Local blob directory '{self.root_dir}' is not writable: {e}") from e

    def write(self, name: str, data: bytes, content_type: Optional[str] = None) -> str:
        self.ensure_ready()
        blob_name = unique_blob_name(name)
        target = self.root_dir / blob_name
        try:
            # 'xb' falla si el nombre ya existe en lugar de sobrescribir
            with open(target, "xb") as fh:
                fh.write(data)
        except OSError as e:
            raise BlobStoreError(f"Failed to write local blob '{blob_name}': {e}") from e

        if self.public_base_url:
            blob_url = f"{self.public_base_url}/{quote(blob_name)}"
        else:
            blob_url = target.resolve().as_uri()
        logger.info(f"Stored blob '{blob_name}' at {blob_url}")
        return blob_url
