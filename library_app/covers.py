"""Cover images stored as plain files under ``settings.covers_dir``.

The frontend matches covers by title, so files are named after a slug of
the book title.
"""

import base64
import binascii
import io
import logging
import os
import re
import secrets
import unicodedata
from typing import List, Optional

from PIL import Image, UnidentifiedImageError

from library_app.config import settings
from library_app.errors import PayloadTooLargeError

logger = logging.getLogger(__name__)

DATA_URL_RE = re.compile(r"^data:(image/[a-zA-Z0-9+.-]+);base64,(.+)$", re.DOTALL)

EXTENSION_BY_MIME = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/webp": "webp",
    "image/gif": "gif",
}


def slugify(title: str) -> str:
    """'El Niño: Vol. 2' -> 'el-nino-vol-2'."""
    text = unicodedata.normalize("NFD", (title or "").lower())
    text = "".join(ch for ch in text if not unicodedata.combining(ch))
    text = re.sub(r"[^a-z0-9\s]", " ", text)
    return re.sub(r"\s+", " ", text).strip().replace(" ", "-")


def _covers_dir(directory: Optional[str]) -> str:
    return directory or settings.covers_dir


def list_covers(directory: Optional[str] = None) -> List[str]:
    path = _covers_dir(directory)
    try:
        names = os.listdir(path)
    except FileNotFoundError:
        return []
    allowed = set(settings.allowed_image_extensions)
    return sorted(n for n in names if os.path.splitext(n)[1].lower() in allowed)


def _decode(data_url: str) -> tuple:
    match = DATA_URL_RE.match(data_url)
    if not match:
        raise ValueError("invalid dataUrl")
    mime = match.group(1).lower()
    ext = EXTENSION_BY_MIME.get(mime)
    if ext is None:
        raise ValueError("Unsupported image type")
    try:
        payload = base64.b64decode(re.sub(r"\s+", "", match.group(2)), validate=True)
    except (binascii.Error, ValueError):
        raise ValueError("invalid base64") from None
    if not payload:
        raise ValueError("Empty image")
    if len(payload) > settings.max_cover_bytes:
        raise PayloadTooLargeError("Image too large")
    return ext, payload


def _verify_image(payload: bytes) -> None:
    try:
        with Image.open(io.BytesIO(payload)) as image:
            image.verify()
    except (UnidentifiedImageError, OSError, SyntaxError):
        raise ValueError("The file is not a valid image") from None


def save_cover(title: Optional[str], data_url: Optional[str], directory: Optional[str] = None) -> str:
    """Store an uploaded cover and return its file name."""
    raw_title = (title or "").strip()
    raw_data_url = (data_url or "").strip()
    if not raw_title:
        raise ValueError("title is required")
    if not raw_data_url:
        raise ValueError("dataUrl is required")

    ext, payload = _decode(raw_data_url)
    _verify_image(payload)

    base = slugify(raw_title) or secrets.token_hex(8)
    file_name = f"{base}.{ext}"
    path = _covers_dir(directory)
    os.makedirs(path, exist_ok=True)

    # Only one cover per title: drop the same slug saved with another extension.
    for existing in list_covers(path):
        stem, existing_ext = os.path.splitext(existing)
        if stem == base and existing != file_name:
            try:
                os.remove(os.path.join(path, existing))
            except OSError as e:
                logger.warning("Could not remove old cover %s: %s", existing, e)

    with open(os.path.join(path, file_name), "wb") as f:
        f.write(payload)
    logger.info("Saved cover %s (%d bytes)", file_name, len(payload))
    return file_name
