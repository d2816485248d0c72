# core/openai_client.py
import logging
import threading
import time
from typing import Any, Dict, Optional

import requests

import config
from app.exceptions import ProviderError, UpstreamUnavailableError

logger = logging.getLogger(__name__)


class OpenAIClient:
    """
    Cliente mínimo para una API REST compatible con OpenAI (chat/completions, embeddings).

    Las credenciales se validan de forma temprana con `ensure_ready()`; los
    errores de transporte o respuestas no-JSON se convierten en ProviderError.
    Cada hilo usa su propia requests.Session.

    Attributes:
        base_url: URL base de la API (ej: "https://api.openai.com/v1").
        timeout: Timeout por petición en segundos.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: float = config.REQUEST_TIMEOUT_S,
    ):
        self._api_key = api_key if api_key is not None else config.OPENAI_API_KEY
        self.base_url = (base_url or config.OPENAI_BASE_URL).rstrip("/")
        self.timeout = timeout
        self._local = threading.local()

    @property
    def is_ready(self) -> bool:
        return bool(self._api_key)

    def ensure_ready(self):
        if not self.is_ready:
            raise UpstreamUnavailableError("OPENAI_API_KEY is not set")

    def _session(self) -> requests.Session:
        session = getattr(self._local, "session", None)
        if session is None:
            session = requests.Session()
            session.headers.update({
                "Authorization": f"Bearer {self._api_key}",
                "Content-Type": "application/json",
            })
            self._local.session = session
        return session

    def post_json(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        Envía un POST JSON a `base_url/path` y devuelve el cuerpo decodificado.

        Raises:
            UpstreamUnavailableError: Si falta la API key.
            ProviderError: Error de transporte, estado HTTP no-2xx o cuerpo no-JSON.
        """
        self.ensure_ready()
        url = f"{self.base_url}/{path.lstrip('/')}"
        start_time = time.time()
        try:
            response = self._session().post(url, json=payload, timeout=self.timeout)
            response.raise_for_status()
            body = response.json()
        except requests.exceptions.HTTPError as e:
            status = e.response.status_code if e.response is not None else "N/A"
            raise ProviderError(f"{path} returned HTTP {status}: {e}") from e
        except requests.exceptions.RequestException as e:
            raise ProviderError(f"{path} request failed: {e}") from e
        except ValueError as e:
            raise ProviderError(f"{path} returned a non-JSON body: {e}") from e

        logger.debug(f"POST {path} took {time.time() - start_time:.3f}s.")
        if not isinstance(body, dict):
            raise ProviderError(f"{path} returned an unexpected payload type: {type(body).__name__}")
        return body
