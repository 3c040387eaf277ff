"""
Image Upload Handling

Validates uploads before they reach any pipeline (non-images are
rejected with no state change) and converts between raw bytes and
displayable data URLs.
"""

import io
import base64
import binascii
from dataclasses import dataclass
from typing import Optional

from PIL import Image, UnidentifiedImageError

from atelier.core.config import settings
from atelier.core.exceptions import ValidationError


@dataclass(frozen=True)
class ImagePayload:
    """An opaque encoded image and its MIME type."""

    data: bytes
    mime_type: str = "image/png"

    def __repr__(self) -> str:
        return f"ImagePayload(mime_type={self.mime_type!r}, size={len(self.data)})"

    def to_base64(self) -> str:
        return base64.b64encode(self.data).decode("ascii")

    def to_data_url(self) -> str:
        return f"data:{self.mime_type};base64,{self.to_base64()}"

    @classmethod
    def from_base64(cls, data: str, mime_type: str = "image/png") -> "ImagePayload":
        try:
            return cls(data=base64.b64decode(data, validate=True), mime_type=mime_type)
        except (binascii.Error, ValueError) as e:
            raise ValidationError(f"Invalid base64 image data: {e}")

    @classmethod
    def from_data_url(cls, data_url: str) -> "ImagePayload":
        header, sep, data = data_url.partition(",")
        if not sep:
            raise ValidationError("Invalid data URL")
        if not header.startswith("data:") or ";base64" not in header:
            raise ValidationError("Could not parse MIME type from data URL")
        mime_type = header[len("data:"):].split(";", 1)[0]
        if not mime_type:
            raise ValidationError("Could not parse MIME type from data URL")
        return cls.from_base64(data, mime_type=mime_type)


def load_upload(
    data: bytes,
    content_type: Optional[str] = None,
    label: str = "image"
) -> ImagePayload:
    """
    Validate an uploaded photograph and return it as an ImagePayload.

    Rejects empty or oversized uploads, declared non-image content types,
    anything Pillow cannot identify and formats outside ALLOWED_IMAGE_FORMATS.

    Raises:
        ValidationError: the upload is not a usable image
    """
    if not data:
        raise ValidationError(f"Please select a valid image file for the {label}.")

    if len(data) > settings.MAX_IMAGE_SIZE_BYTES:
        size_mb = len(data) / (1024 * 1024)
        max_mb = settings.MAX_IMAGE_SIZE_BYTES / (1024 * 1024)
        raise ValidationError(
            f"Image size ({size_mb:.2f}MB) exceeds maximum allowed size ({max_mb:.0f}MB).",
            details={"size_bytes": len(data)}
        )

    if content_type and not content_type.startswith("image/"):
        raise ValidationError(
            f"Please select a valid image file for the {label}.",
            details={"content_type": content_type}
        )

    try:
        with Image.open(io.BytesIO(data)) as img:
            image_format = (img.format or "").upper()
            img.verify()
    except (UnidentifiedImageError, OSError, SyntaxError) as e:
        raise ValidationError(
            f"Please select a valid image file for the {label}.",
            details={"reason": str(e)}
        )

    if image_format not in settings.allowed_image_formats:
        raise ValidationError(
            f"Unsupported file format '{image_format}'. Please upload an image format like PNG, JPEG, or WEBP.",
            details={"format": image_format}
        )

    mime_type = Image.MIME.get(image_format) or content_type or "application/octet-stream"
    return ImagePayload(data=data, mime_type=mime_type)
