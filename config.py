# config.py
import os
from typing import List, Optional, Tuple

from dotenv import load_dotenv

# Carga variables de entorno desde .env
load_dotenv()


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name, str(default)).strip()
    try:
        return int(raw)
    except ValueError:
        print(f"Warning: Invalid integer '{raw}' for {name}. Using default {default}.")
        return default


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name, str(default)).strip()
    try:
        return float(raw)
    except ValueError:
        print(f"Warning: Invalid number '{raw}' for {name}. Using default {default}.")
        return default


# --- Provider Credentials ---
# Nombres estándar de las credenciales de OpenAI y Vercel Blob (sin prefijo APP_)
OPENAI_API_KEY: Optional[str] = os.getenv("OPENAI_API_KEY") or None
OPENAI_BASE_URL: str = os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1").rstrip("/")
BLOB_READ_WRITE_TOKEN: Optional[str] = os.getenv("BLOB_READ_WRITE_TOKEN") or None

# --- Model Configuration ---
VISION_MODEL_NAME: str = os.getenv("APP_VISION_MODEL", "gpt-4o-mini")

AVAILABLE_EMBEDDING_PROVIDERS: List[str] = ["openai", "local"]
EMBEDDING_PROVIDER: str = os.getenv("APP_EMBEDDING_PROVIDER", "openai").lower()
EMBEDDING_MODEL_NAME: str = os.getenv("APP_EMBEDDING_MODEL", "text-embedding-3-small")

# Modelo local (Hugging Face) usado cuando EMBEDDING_PROVIDER == "local"
LOCAL_EMBEDDING_MODEL_NAME: str = os.getenv(
    "APP_LOCAL_EMBEDDING_MODEL", "openai/clip-vit-base-patch32"
)
# Dispositivo para inferencia ('cuda' si hay GPU disponible y deseado, sino 'cpu')
DEVICE: str = os.getenv("APP_DEVICE", "cpu")
TRUST_REMOTE_CODE: bool = (
    os.getenv("APP_TRUST_REMOTE_CODE", "False").lower() == "true"
)
# Dimensión objetivo para los vectores locales (None o 0 para usar la nativa del modelo)
VECTOR_DIMENSION_STR: str = os.getenv("APP_VECTOR_DIMENSION", "0")
VECTOR_DIMENSION: Optional[int] = (
    int(VECTOR_DIMENSION_STR) if VECTOR_DIMENSION_STR.isdigit() and int(VECTOR_DIMENSION_STR) > 0 else None
)

# --- Image Processing Configuration ---
# Extensiones de imagen aceptadas al expandir directorios en el CLI
IMAGE_EXTENSIONS: Tuple[str, ...] = (".jpg", ".jpeg", ".png", ".webp", ".bmp", ".gif")
# Tamaño máximo de un fichero subido (bytes)
MAX_UPLOAD_BYTES: int = _int_env("APP_MAX_UPLOAD_BYTES", 20 * 1024 * 1024)

# --- Blob Storage Configuration ---
AVAILABLE_BLOB_BACKENDS: List[str] = ["vercel", "local"]
BLOB_BACKEND: str = os.getenv("APP_BLOB_BACKEND", "vercel").lower()
VERCEL_BLOB_API_URL: str = os.getenv(
    "APP_VERCEL_BLOB_API_URL", "https://blob.vercel-storage.com"
).rstrip("/")
LOCAL_BLOB_DIR: str = os.getenv("APP_LOCAL_BLOB_DIR", "blob_store/")
# URL pública bajo la que se sirve LOCAL_BLOB_DIR (vacío => URIs file://)
LOCAL_BLOB_BASE_URL: Optional[str] = os.getenv("APP_LOCAL_BLOB_BASE_URL") or None

# --- Database Configuration ---
CHROMA_DB_PATH: str = os.getenv("APP_CHROMA_DB_PATH", "vector_db_store/")
CHROMA_COLLECTION_NAME: str = os.getenv("APP_CHROMA_COLLECTION_NAME", "images")

# --- Pipeline Configuration ---
# Tamaño del pool de workers por lote
MAX_WORKERS: int = _int_env("APP_MAX_WORKERS", 4)
# Tiempo máximo por lote en segundos (0 => sin límite)
BATCH_TIMEOUT_S: float = _float_env("APP_BATCH_TIMEOUT_S", 0.0)
# Timeout de cada petición HTTP a los proveedores
REQUEST_TIMEOUT_S: float = _float_env("APP_REQUEST_TIMEOUT_S", 60.0)

# Límite de peticiones por segundo por servicio externo (0 => sin límite)
BLOB_RATE_LIMIT: float = _float_env("APP_BLOB_RATE_LIMIT", 0.0)
VISION_RATE_LIMIT: float = _float_env("APP_VISION_RATE_LIMIT", 2.0)
EMBEDDING_RATE_LIMIT: float = _float_env("APP_EMBEDDING_RATE_LIMIT", 10.0)

# Reintentos con backoff exponencial (1 => sin reintentos)
RETRY_MAX_ATTEMPTS: int = _int_env("APP_RETRY_MAX_ATTEMPTS", 1)
RETRY_BASE_DELAY_S: float = _float_env("APP_RETRY_BASE_DELAY_S", 0.5)
RETRY_MAX_DELAY_S: float = _float_env("APP_RETRY_MAX_DELAY_S", 8.0)

# --- Logging Configuration ---
# Nivel de logging (DEBUG, INFO, WARNING, ERROR, CRITICAL)
LOG_LEVEL: str = os.getenv("APP_LOG_LEVEL", "INFO").upper()

# --- Validation ---
if EMBEDDING_PROVIDER not in AVAILABLE_EMBEDDING_PROVIDERS:
    print(f"Warning: Invalid EMBEDDING_PROVIDER '{EMBEDDING_PROVIDER}'. Available: {AVAILABLE_EMBEDDING_PROVIDERS}. Defaulting to 'openai'.")
    EMBEDDING_PROVIDER = "openai"
if BLOB_BACKEND not in AVAILABLE_BLOB_BACKENDS:
    print(f"Warning: Invalid BLOB_BACKEND '{BLOB_BACKEND}'. Available: {AVAILABLE_BLOB_BACKENDS}. Defaulting to 'vercel'.")
    BLOB_BACKEND = "vercel"
if LOG_LEVEL not in ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]:
    print(f"Warning: Invalid LOG_LEVEL '{LOG_LEVEL}' in config/env. Defaulting to INFO.")
    LOG_LEVEL = "INFO"
if DEVICE not in ["cpu", "cuda"]:
    print(f"Warning: Invalid DEVICE '{DEVICE}' in config/env. Defaulting to 'cpu'.")
    DEVICE = "cpu"
if MAX_WORKERS < 1:
    print(f"Warning: Invalid MAX_WORKERS '{MAX_WORKERS}'. Defaulting to 1.")
    MAX_WORKERS = 1
if RETRY_MAX_ATTEMPTS < 1:
    print(f"Warning: Invalid RETRY_MAX_ATTEMPTS '{RETRY_MAX_ATTEMPTS}'. Defaulting to 1.")
    RETRY_MAX_ATTEMPTS = 1
