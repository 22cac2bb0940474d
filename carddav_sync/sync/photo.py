"""
Contact photo decoding and encoding.

Provides utilities for:
- Decoding PHOTO values (base64 or data URIs) into image bytes
- Image format detection and dimension probing
- Content hashing for change detection
- Encoding stored photos back into vCard PHOTO values
"""

import base64
import binascii
import hashlib
import io
import logging
import re
from dataclasses import dataclass
from typing import Optional

from PIL import Image, UnidentifiedImageError

DEFAULT_MIME = "image/jpeg"

# PIL format name -> MIME type
FORMAT_MIME_TYPES = {
    "JPEG": "image/jpeg",
    "PNG": "image/png",
    "GIF": "image/gif",
    "WEBP": "image/webp",
    "BMP": "image/bmp",
    "TIFF": "image/tiff",
}

# vCard TYPE parameter -> MIME type
VCARD_TYPE_MIME = {
    "JPEG": "image/jpeg",
    "JPG": "image/jpeg",
    "PNG": "image/png",
    "GIF": "image/gif",
    "WEBP": "image/webp",
    "BMP": "image/bmp",
    "TIFF": "image/tiff",
}

DATA_URI_PATTERN = re.compile(r"^data:([^;,]+)?(?:;[^,]*)?;base64,(.*)$", re.DOTALL)

logger = logging.getLogger(__name__)


class PhotoError(Exception):
    """Raised when a photo value cannot be decoded."""

    pass


@dataclass
class PhotoInfo:
    """
    Decoded photo ready to be stored on a contact.

    Attributes:
        blob: Raw image bytes
        mime: MIME type, detected from the image when possible
        width: Pixel width, or None if the image could not be read
        height: Pixel height, or None if the image could not be read
        hash: SHA-256 hex digest of the raw bytes
    """

    blob: bytes
    mime: str
    width: Optional[int]
    height: Optional[int]
    hash: str


def photo_hash(blob: bytes) -> str:
    """Return the SHA-256 hex digest of image bytes."""
    return hashlib.sha256(blob).hexdigest()


def decode_photo(data: str, vcard_type: Optional[str] = None) -> PhotoInfo:
    """
    Decode a vCard PHOTO value.

    Accepts plain base64 (vCard 3.0 ENCODING=b) or a base64 data URI
    (vCard 4.0). Undecodable images keep their bytes and hash but get no
    dimensions.

    Args:
        data: PHOTO property value
        vcard_type: TYPE parameter of the PHOTO property, if any

    Returns:
        PhotoInfo for the decoded image

    Raises:
        PhotoError: If the value is empty or not valid base64
    """
    if not data:
        raise PhotoError("Photo data cannot be empty")

    mime = None
    payload = data.strip()
    match = DATA_URI_PATTERN.match(payload)
    if match:
        mime = match.group(1)
        payload = match.group(2)

    if mime is None and vcard_type:
        first_type = vcard_type.split(",")[0].strip().upper()
        mime = VCARD_TYPE_MIME.get(first_type)

    try:
        blob = base64.b64decode("".join(payload.split()), validate=True)
    except (binascii.Error, ValueError) as e:
        raise PhotoError(f"Invalid base64 photo data: {e}") from e

    if not blob:
        raise PhotoError("Photo data decoded to zero bytes")

    width: Optional[int] = None
    height: Optional[int] = None
    try:
        with Image.open(io.BytesIO(blob)) as image:
            width, height = image.size
            detected = FORMAT_MIME_TYPES.get(image.format or "")
            if detected:
                mime = detected
    except (UnidentifiedImageError, OSError) as e:
        logger.debug(f"Could not read photo dimensions: {e}")

    return PhotoInfo(
        blob=blob,
        mime=mime or DEFAULT_MIME,
        width=width,
        height=height,
        hash=photo_hash(blob),
    )


def encode_photo(blob: bytes, mime: Optional[str] = None) -> tuple[str, str]:
    """
    Encode stored photo bytes for a vCard PHOTO property.

    Args:
        blob: Raw image bytes
        mime: Stored MIME type (defaults to JPEG)

    Returns:
        Tuple of (base64 text, vCard TYPE value)
    """
    mime = (mime or DEFAULT_MIME).lower()
    vcard_type = "PNG" if "png" in mime else "JPEG"
    for type_name, type_mime in VCARD_TYPE_MIME.items():
        if type_mime == mime and type_name != "JPG":
            vcard_type = type_name
            break
    return base64.b64encode(blob).decode("ascii"), vcard_type
