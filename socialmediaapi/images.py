"""
Helpers for decoding and inspecting images attached to posts.

The browser client turns the chosen file into a base64 data URL before
sending the post, so uploads arrive as text inside the JSON body. This module
decodes that payload, confirms with Pillow that it really is an image and
pulls out a small set of descriptive attributes worth keeping with the post.
"""

from __future__ import annotations

import base64
import binascii
import io
import logging
import re
from typing import Any, Dict, Optional, Tuple

from PIL import ExifTags, Image, UnidentifiedImageError

logger = logging.getLogger(__name__)

_DATA_URL_PATTERN = re.compile(r"^data:(?P<mime>[\w.+-]+/[\w.+-]+)?(?P<params>(;[^,;]+)*)?,(?P<data>.*)$", re.DOTALL)

# Orientation values defined by the EXIF standard mapped to degrees.
ORIENTATION_TO_DEGREES = {
  1: 0,
  3: 180,
  6: 90,
  8: 270,
}

FORMAT_EXTENSIONS = {
  "JPEG": ".jpg",
  "PNG": ".png",
  "GIF": ".gif",
  "WEBP": ".webp",
  "BMP": ".bmp",
}


class InvalidImageError(ValueError):
  """Raised when an uploaded file cannot be decoded as a supported image."""


def is_data_url(value: Any) -> bool:
  return isinstance(value, str) and value.startswith("data:")


def decode_data_url(value: str) -> Tuple[bytes, Optional[str]]:
  """
  Split a ``data:`` URL into raw bytes and the declared MIME type.

  Only base64 payloads are accepted since that is what the client's file
  encoder produces.
  """
  match = _DATA_URL_PATTERN.match(value.strip())
  if not match or ";base64" not in (match.group("params") or ""):
    raise InvalidImageError("selectedFile must be a base64 data URL.")

  try:
    payload = base64.b64decode(match.group("data"), validate=True)
  except (binascii.Error, ValueError) as exc:
    raise InvalidImageError("selectedFile is not valid base64.") from exc

  if not payload:
    raise InvalidImageError("selectedFile is empty.")
  return payload, match.group("mime")


def inspect_image(image_bytes: bytes) -> Dict[str, Any]:
  """
  Return format, MIME type, dimensions and a few EXIF attributes.

  Raises :class:`InvalidImageError` when Pillow does not recognise the bytes
  or the format is not one we store.
  """
  try:
    with Image.open(io.BytesIO(image_bytes)) as image:
      image_format = image.format
      width, height = image.size
      exif_data = image.getexif()
  except Image.DecompressionBombError as exc:
    raise InvalidImageError("selectedFile has too many pixels.") from exc
  except (UnidentifiedImageError, OSError) as exc:
    raise InvalidImageError("selectedFile is not a readable image.") from exc

  if image_format not in FORMAT_EXTENSIONS:
    raise InvalidImageError(f"Unsupported image format: {image_format}.")

  result: Dict[str, Any] = {
    "format": image_format.lower(),
    "mimeType": Image.MIME.get(image_format, "application/octet-stream"),
    "width": width,
    "height": height,
    "sizeBytes": len(image_bytes),
  }

  tags = {ExifTags.TAGS.get(tag_id, str(tag_id)): value for tag_id, value in (exif_data or {}).items()}

  orientation = tags.get("Orientation")
  if isinstance(orientation, int):
    result["rotationDegrees"] = ORIENTATION_TO_DEGREES.get(orientation, 0)

  capture_time = tags.get("DateTimeOriginal") or tags.get("DateTime")
  if capture_time:
    result["capturedAt"] = str(capture_time)

  for key in ("Make", "Model"):
    if key in tags:
      result["camera" + key] = str(tags[key]).strip("\x00 ")

  logger.debug("Inspected %s image %sx%s", image_format, width, height)
  return result


def extension_for(image_meta: Dict[str, Any]) -> str:
  return FORMAT_EXTENSIONS.get(str(image_meta.get("format", "")).upper(), ".bin")


__all__ = [
  "InvalidImageError",
  "decode_data_url",
  "extension_for",
  "inspect_image",
  "is_data_url",
]
