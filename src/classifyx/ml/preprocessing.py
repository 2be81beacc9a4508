"""Image preprocessing pipeline.

Reads an image source (bytes, data URI, URL or filesystem path), decodes it
with Pillow, applies EXIF orientation, converts to RGB and turns it into the
flat, channel-major float32 tensor the classifier expects.

Resizing uses bilinear resampling to exactly 224x224 without preserving the
aspect ratio. The resampling filter affects the output values, so changing it
changes predictions.
"""

from __future__ import annotations

import base64
import binascii
import io
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Protocol
from urllib.parse import unquote_to_bytes

import httpx
import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from classifyx.ml.errors import DecodeError, ImageFetchError, UnsupportedFormatError
from classifyx.ml.types import IMAGENET_NORMALIZATION, INPUT_HEIGHT, INPUT_WIDTH, NormalizationParams

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from classifyx.config import Settings

logger = logging.getLogger(__name__)

ImageSource = bytes | bytearray | memoryview | str | Path

RESAMPLING_FILTER = Image.Resampling.BILINEAR


class ImagePreprocessor(Protocol):
    """Protocol for image preprocessing."""

    def preprocess(self, source: ImageSource) -> NDArray[np.float32]:
        """Turn an image source into a flat normalized tensor.

        Args:
            source: Raw bytes, a data URI, an http(s) URL or a file path.

        Returns:
            float32 array of length 3*224*224 in channel-major order.

        Raises:
            DecodeError: If the source cannot be read or parsed as an image.
            UnsupportedFormatError: If the image is empty or exceeds size limits.
        """
        ...


# ---------------------------------------------------------------------------
# Source reading
# ---------------------------------------------------------------------------


def _is_url(source: str) -> bool:
    return source.startswith(("http://", "https://"))


def _decode_data_uri(uri: str) -> bytes:
    header, sep, payload = uri.partition(",")
    if not sep:
        raise DecodeError("Malformed data URI: missing ',' separator")
    if header.endswith(";base64"):
        # Base64 payloads may be line-wrapped.
        payload = "".join(payload.split())
        try:
            return base64.b64decode(payload, validate=True)
        except binascii.Error as exc:
            raise DecodeError(f"Malformed base64 payload in data URI: {exc}") from exc
    return unquote_to_bytes(payload)


def _fetch_url(url: str, timeout: float, max_bytes: int | None = None) -> bytes:
    """Stream a remote image, giving up as soon as it exceeds ``max_bytes``."""
    chunks: list[bytes] = []
    received = 0
    try:
        with httpx.stream("GET", url, timeout=timeout, follow_redirects=True) as response:
            response.raise_for_status()
            declared = response.headers.get("Content-Length")
            if max_bytes is not None and declared is not None and declared.isdigit() and int(declared) > max_bytes:
                raise UnsupportedFormatError(f"Image at {url} is {declared} bytes, limit is {max_bytes}")
            for chunk in response.iter_bytes():
                received += len(chunk)
                if max_bytes is not None and received > max_bytes:
                    raise UnsupportedFormatError(f"Image at {url} exceeds {max_bytes} bytes")
                chunks.append(chunk)
    except httpx.HTTPError as exc:
        raise ImageFetchError(f"Failed to fetch image from {url}: {exc}") from exc
    return b"".join(chunks)


def read_image_source(source: ImageSource, *, timeout: float = 10.0, max_bytes: int | None = None) -> bytes:
    """Resolve any accepted image source into raw encoded bytes."""
    if isinstance(source, bytes | bytearray | memoryview):
        data = bytes(source)
    elif isinstance(source, str) and source.startswith("data:"):
        data = _decode_data_uri(source)
    elif isinstance(source, str) and _is_url(source):
        data = _fetch_url(source, timeout, max_bytes)
    elif isinstance(source, str | Path):
        try:
            data = Path(source).read_bytes()
        except OSError as exc:
            raise ImageFetchError(f"Failed to read image file {source}: {exc}") from exc
    else:
        raise DecodeError(f"Unsupported image source type: {type(source).__name__}")

    if max_bytes is not None and len(data) > max_bytes:
        raise UnsupportedFormatError(f"Image is {len(data)} bytes, limit is {max_bytes}")
    return data


# ---------------------------------------------------------------------------
# Decoding and tensor conversion
# ---------------------------------------------------------------------------


def _to_eight_bit(image: Image.Image) -> Image.Image:
    """Scale 16/32-bit integer greyscale down to 8 bits; other modes pass through."""
    if not image.mode.startswith("I"):
        return image
    pixels = np.clip(np.asarray(image).astype(np.int64), 0, 65535)
    return Image.fromarray((pixels >> 8).astype(np.uint8))


def decode_image(data: bytes, *, max_pixels: int | None = None) -> Image.Image:
    """Decode encoded image bytes into an RGB Pillow image."""
    if not data:
        raise DecodeError("Image data is empty")

    try:
        with Image.open(io.BytesIO(data)) as image:
            width, height = image.size
            if width == 0 or height == 0:
                raise UnsupportedFormatError(f"Decoded image has zero dimension ({width}x{height})")
            if max_pixels is not None and width * height > max_pixels:
                raise UnsupportedFormatError(f"Image has {width * height} pixels, limit is {max_pixels}")
            image.load()
            oriented = ImageOps.exif_transpose(image)
            return _to_eight_bit(oriented).convert("RGB")
    except Image.DecompressionBombError as exc:
        raise UnsupportedFormatError(str(exc)) from exc
    except (UnidentifiedImageError, OSError, SyntaxError, ValueError) as exc:
        raise DecodeError(f"Cannot decode image: {exc}") from exc


def image_to_tensor(
    image: Image.Image,
    params: NormalizationParams = IMAGENET_NORMALIZATION,
) -> NDArray[np.float32]:
    """Resize, normalize and flatten an RGB image into channel-major order."""
    resized = image.resize((INPUT_WIDTH, INPUT_HEIGHT), RESAMPLING_FILTER)
    pixels = np.asarray(resized, dtype=np.float64) / 255.0

    mean = np.asarray(params.mean, dtype=np.float64)
    std = np.asarray(params.std, dtype=np.float64)
    normalized = (pixels - mean) / std

    # HWC -> CHW, then flatten: index = c*H*W + h*W + w
    return np.ascontiguousarray(normalized.transpose(2, 0, 1), dtype=np.float32).ravel()


# ---------------------------------------------------------------------------
# Concrete implementation
# ---------------------------------------------------------------------------


class PillowPreprocessor:
    """Decodes images with Pillow and normalizes them with ImageNet statistics."""

    def __init__(
        self,
        *,
        max_image_pixels: int | None = None,
        max_file_size: int | None = None,
        fetch_timeout: float = 10.0,
        normalization: NormalizationParams = IMAGENET_NORMALIZATION,
    ) -> None:
        self._max_image_pixels = max_image_pixels
        self._max_file_size = max_file_size
        self._fetch_timeout = fetch_timeout
        self._normalization = normalization

    @classmethod
    def from_settings(cls, settings: Settings) -> PillowPreprocessor:
        return cls(
            max_image_pixels=settings.max_image_pixels,
            max_file_size=settings.max_file_size,
            fetch_timeout=settings.image_fetch_timeout,
        )

    def preprocess(self, source: ImageSource) -> NDArray[np.float32]:
        """Read, decode and normalize an image source."""
        data = read_image_source(source, timeout=self._fetch_timeout, max_bytes=self._max_file_size)
        image = decode_image(data, max_pixels=self._max_image_pixels)
        logger.debug("Decoded %dx%d image (%d bytes)", image.width, image.height, len(data))
        return image_to_tensor(image, self._normalization)
