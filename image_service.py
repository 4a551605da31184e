"""
image_service.py — shrink uploaded photos before they go to the vision model.

Telegram photos can be several MB; the model doesn't need more than
~800px on the longest side. Output is always JPEG.
"""
from __future__ import annotations

import base64
import io
from dataclasses import dataclass

from PIL import Image, UnidentifiedImageError

import config


class ImageTooLargeError(ValueError):
    pass


class InvalidImageError(ValueError):
    pass


@dataclass(frozen=True)
class PreparedImage:
    data: bytes
    mime_type: str
    width: int
    height: int

    @property
    def data_url(self) -> str:
        return f"data:{self.mime_type};base64,{base64.b64encode(self.data).decode('ascii')}"


def detect_mime(data: bytes) -> str:
    """Sniff the image type from magic bytes; defaults to JPEG."""
    if data[:8] == b"\x89PNG\r\n\x1a\n":
        return "image/png"
    if data[:4] == b"GIF8":
        return "image/gif"
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    return "image/jpeg"


def fit_dimensions(width: int, height: int, max_dim: int) -> tuple[int, int]:
    """Scale (width, height) so the longer side is at most max_dim."""
    if width > height:
        if width > max_dim:
            height = round(height * (max_dim / width))
            width = max_dim
    elif height > max_dim:
        width = round(width * (max_dim / height))
        height = max_dim
    return max(1, width), max(1, height)


def prepare_image(
    data: bytes,
    max_dim: int = config.MAX_IMAGE_DIMENSION,
    quality: int = config.JPEG_QUALITY,
    max_bytes: int = config.MAX_UPLOAD_BYTES,
) -> PreparedImage:
    """
    Downscale and re-encode raw upload bytes as JPEG.

    Raises:
        ImageTooLargeError: upload is bigger than max_bytes.
        InvalidImageError:  bytes are not a readable image.
    """
    if len(data) > max_bytes:
        raise ImageTooLargeError(
            f"Image is too large ({len(data) / 1024 / 1024:.1f} MB). "
            f"Please send an image under {max_bytes // (1024 * 1024)} MB."
        )

    try:
        with Image.open(io.BytesIO(data)) as img:
            img.load()
            width, height = fit_dimensions(img.width, img.height, max_dim)
            if img.mode != "RGB":
                # JPEG has no alpha / palette
                img = img.convert("RGB")
            if (width, height) != img.size:
                img = img.resize((width, height), Image.LANCZOS)
            out = io.BytesIO()
            img.save(out, format="JPEG", quality=quality)
    except (UnidentifiedImageError, OSError) as exc:
        raise InvalidImageError("Could not read the image. Please send a JPEG, PNG or WEBP photo.") from exc

    return PreparedImage(data=out.getvalue(), mime_type="image/jpeg", width=width, height=height)
