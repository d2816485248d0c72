# core/image_processor.py
import io
import os
import unicodedata
import uuid
from dataclasses import dataclass
from PIL import Image, UnidentifiedImageError
from typing import List, Optional
import logging

# Importar configuración
from config import IMAGE_EXTENSIONS, MAX_UPLOAD_BYTES
from app.exceptions import ImageProcessingError

logger = logging.getLogger(__name__)

DEFAULT_UPLOAD_NAME = "upload.jpg"
MAX_NAME_LENGTH = 200

# Pillow format name -> MIME type for formats we expect to receive
_FORMAT_CONTENT_TYPES = {
    "JPEG": "image/jpeg",
    "PNG": "image/png",
    "GIF": "image/gif",
    "WEBP": "image/webp",
    "BMP": "image/bmp",
    "TIFF": "image/tiff",
}


@dataclass(frozen=True)
class ImageInfo:
    """Basic facts about an uploaded image payload."""
    format: str
    content_type: str
    width: int
    height: int


def inspect_image_bytes(data: bytes, max_bytes: int = MAX_UPLOAD_BYTES) -> ImageInfo:
    """
    Verifies that `data` is a decodable image and returns its format and size.

    The image is only identified and verified, never fully decoded, so this is
    cheap enough to run on every upload before any network call.

    Args:
        data: Raw file bytes.
        max_bytes: Maximum accepted payload size.

    Returns:
        An ImageInfo with the Pillow format, MIME type and pixel dimensions.

    Raises:
        ImageProcessingError: If the payload is empty, too large, or not an image.
    """
    if not data:
        raise ImageProcessingError("Empty file payload.")
    if max_bytes and len(data) > max_bytes:
        raise ImageProcessingError(f"File too large ({len(data)} bytes, limit {max_bytes}).")

    try:
        with Image.open(io.BytesIO(data)) as img:
            img_format = (img.format or "").upper()
            width, height = img.size
            img.verify()
    except UnidentifiedImageError as e:
        raise ImageProcessingError("Cannot identify image data (possibly corrupt or unsupported format).") from e
    except (IOError, OSError, SyntaxError, ValueError) as e:
        raise ImageProcessingError(f"Invalid image data: {e}") from e

    content_type = _FORMAT_CONTENT_TYPES.get(img_format, "application/octet-stream")
    return ImageInfo(format=img_format, content_type=content_type, width=width, height=height)


def sanitize_filename(name: Optional[str]) -> str:
    """
    Reduces an uploaded filename to a safe blob name.

    Keeps only the basename (no path traversal), normalizes to NFC, drops
    non-printable characters and falls back to 'upload.jpg' when nothing usable remains.
    """
    if not name:
        return DEFAULT_UPLOAD_NAME
    name = os.path.basename(name.replace("\\", "/"))
    name = unicodedata.normalize("NFC", name)
    name = "".join(ch for ch in name if ch.isprintable() and ch not in "\r\n\t")
    name = name.strip()
    if not name or name in (".", "..") or len(name) > MAX_NAME_LENGTH:
        return DEFAULT_UPLOAD_NAME
    return name


def unique_blob_name(name: str) -> str:
    """Appends a random suffix before the extension: 'dog.png' -> 'dog-3f2a9c1e.png'."""
    stem, ext = os.path.splitext(sanitize_filename(name))
    return f"{stem}-{uuid.uuid4().hex[:8]}{ext}"


def find_image_files(directory_path: str) -> List[str]:
    """Sorted paths of the files under `directory_path` with an image extension ([] if not a directory)."""
    if not directory_path or not os.path.isdir(directory_path):
        logger.error(f"Not a directory, nothing to ingest: {directory_path!r}")
        return []

    try:
        found = [
            os.path.join(root, name)
            for root, _, names in os.walk(directory_path)
            for name in names
            if name.lower().endswith(IMAGE_EXTENSIONS)
        ]
    except OSError as e:
        logger.error(f"Could not scan {directory_path}: {e}", exc_info=True)
        return []

    found = sorted(path for path in found if os.path.isfile(path))
    logger.info(f"{directory_path}: {len(found)} image files to ingest.")
    return found
