from __future__ import annotations

import base64
import binascii
import re
from io import BytesIO

from PIL import Image, UnidentifiedImageError

DEFAULT_MIME_TYPE = "image/png"

_DATA_URL_RE = re.compile(r"^data:(?P<mime>[^;,]*)(?:;[^,]*)?;base64,(?P<data>.*)$", re.DOTALL)

_FORMAT_EXTENSIONS = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/webp": "webp",
    "image/gif": "gif",
    "image/bmp": "bmp",
}


def detect_mime_type(image_bytes: bytes, default: str = DEFAULT_MIME_TYPE) -> str:
    try:
        with Image.open(BytesIO(image_bytes)) as image:
            mime = Image.MIME.get(image.format or "")
    except (UnidentifiedImageError, OSError):
        return default
    return mime or default


def extension_for_mime(mime_type: str) -> str:
    return _FORMAT_EXTENSIONS.get(mime_type.lower(), "png")


def to_data_url(image_bytes: bytes, mime_type: str = DEFAULT_MIME_TYPE) -> str:
    encoded = base64.b64encode(image_bytes).decode("ascii")
    return f"data:{mime_type or DEFAULT_MIME_TYPE};base64,{encoded}"


def parse_data_url(data_url: str) -> tuple[str, bytes]:
    """Split a base64 data URL into ``(mime_type, raw_bytes)``."""
    match = _DATA_URL_RE.match(data_url.strip())
    if not match:
        raise ValueError("Not a base64 data URL")
    mime = match.group("mime") or "image/jpeg"
    try:
        payload = base64.b64decode(match.group("data"), validate=False)
    except (binascii.Error, ValueError) as exc:
        raise ValueError("Malformed base64 payload in data URL") from exc
    return mime, payload
