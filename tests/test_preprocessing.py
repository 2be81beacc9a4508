"""Tests for image source reading, decoding and tensor conversion."""

from __future__ import annotations

import base64
import io
from pathlib import Path
from typing import TYPE_CHECKING
from unittest.mock import MagicMock, patch
from urllib.parse import quote_from_bytes

import httpx
import numpy as np
import pytest
from PIL import Image

from classifyx.ml.errors import DecodeError, ImageFetchError, UnsupportedFormatError
from classifyx.ml.preprocessing import PillowPreprocessor, decode_image, image_to_tensor, read_image_source
from classifyx.ml.types import TENSOR_LENGTH

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator

PLANE = 224 * 224

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _encode(image: Image.Image, fmt: str = "PNG") -> bytes:
    buffer = io.BytesIO()
    image.save(buffer, format=fmt)
    return buffer.getvalue()


def _solid_png(color: tuple[int, ...] = (255, 0, 0), size: tuple[int, int] = (224, 224), mode: str = "RGB") -> bytes:
    return _encode(Image.new(mode, size, color))


def _stream_response(chunks: Iterable[bytes], headers: dict[str, str] | None = None) -> MagicMock:
    response = MagicMock()
    response.headers = headers or {}
    response.iter_bytes.return_value = iter(chunks)
    return response


# ---------------------------------------------------------------------------
# Source reading
# ---------------------------------------------------------------------------


class TestReadImageSource:
    def test_bytes_pass_through(self) -> None:
        data = _solid_png()
        assert read_image_source(data) == data

    def test_bytearray_and_memoryview(self) -> None:
        data = _solid_png()
        assert read_image_source(bytearray(data)) == data
        assert read_image_source(memoryview(data)) == data

    def test_base64_data_uri(self) -> None:
        data = _solid_png()
        uri = "data:image/png;base64," + base64.b64encode(data).decode()
        assert read_image_source(uri) == data

    def test_percent_encoded_data_uri(self) -> None:
        data = _solid_png()
        uri = "data:image/png," + quote_from_bytes(data)
        assert read_image_source(uri) == data

    def test_malformed_base64_raises_decode_error(self) -> None:
        with pytest.raises(DecodeError):
            read_image_source("data:image/png;base64,!!!not-base64!!!")

    def test_data_uri_without_separator_raises_decode_error(self) -> None:
        with pytest.raises(DecodeError, match="separator"):
            read_image_source("data:image/png;base64")

    def test_file_path(self, tmp_path: Path) -> None:
        data = _solid_png()
        image_file = tmp_path / "red.png"
        image_file.write_bytes(data)
        assert read_image_source(image_file) == data
        assert read_image_source(str(image_file)) == data

    def test_missing_file_raises_fetch_error(self, tmp_path: Path) -> None:
        with pytest.raises(ImageFetchError):
            read_image_source(tmp_path / "missing.png")

    def test_fetch_error_is_a_decode_error(self, tmp_path: Path) -> None:
        with pytest.raises(DecodeError):
            read_image_source(str(tmp_path / "missing.png"))

    def test_line_wrapped_base64_data_uri(self) -> None:
        data = _solid_png()
        encoded = base64.b64encode(data).decode()
        wrapped = "\n".join(encoded[i : i + 76] for i in range(0, len(encoded), 76))
        assert read_image_source("data:image/png;base64, " + wrapped + "\r\n") == data

    @patch("classifyx.ml.preprocessing.httpx.stream")
    def test_url_is_fetched(self, mock_stream: MagicMock) -> None:
        data = _solid_png()
        mock_stream.return_value.__enter__.return_value = _stream_response([data[:10], data[10:]])

        result = read_image_source("https://example.com/cat.png", timeout=3.0)

        assert result == data
        mock_stream.assert_called_once_with("GET", "https://example.com/cat.png", timeout=3.0, follow_redirects=True)

    @patch("classifyx.ml.preprocessing.httpx.stream")
    def test_url_failure_raises_fetch_error(self, mock_stream: MagicMock) -> None:
        mock_stream.side_effect = httpx.ConnectError("connection refused")
        with pytest.raises(ImageFetchError, match="example.com"):
            read_image_source("http://example.com/cat.png")

    @patch("classifyx.ml.preprocessing.httpx.stream")
    def test_url_rejected_by_declared_length(self, mock_stream: MagicMock) -> None:
        response = _stream_response([b"x" * 10], headers={"Content-Length": "5000000000"})
        mock_stream.return_value.__enter__.return_value = response

        with pytest.raises(UnsupportedFormatError, match="5000000000"):
            read_image_source("https://example.com/huge.png", max_bytes=1024)
        response.iter_bytes.assert_not_called()

    @patch("classifyx.ml.preprocessing.httpx.stream")
    def test_url_download_stops_at_limit(self, mock_stream: MagicMock) -> None:
        consumed: list[int] = []

        def endless_body() -> Iterator[bytes]:
            for index in range(1000):
                consumed.append(index)
                yield b"x" * 1024

        mock_stream.return_value.__enter__.return_value = _stream_response(endless_body())

        with pytest.raises(UnsupportedFormatError, match="exceeds 4096"):
            read_image_source("https://example.com/huge.png", max_bytes=4096)
        assert len(consumed) == 5

    def test_size_limit(self) -> None:
        with pytest.raises(UnsupportedFormatError, match="limit"):
            read_image_source(b"x" * 100, max_bytes=10)

    def test_unsupported_source_type(self) -> None:
        with pytest.raises(DecodeError, match="int"):
            read_image_source(42)  # type: ignore[arg-type]


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------


class TestDecodeImage:
    def test_empty_bytes_raise_decode_error(self) -> None:
        with pytest.raises(DecodeError, match="empty"):
            decode_image(b"")

    def test_garbage_raises_decode_error(self) -> None:
        with pytest.raises(DecodeError):
            decode_image(b"fake image data")

    def test_truncated_png_raises_decode_error(self) -> None:
        with pytest.raises(DecodeError):
            decode_image(_solid_png()[:40])

    def test_rgba_is_converted_to_rgb(self) -> None:
        image = decode_image(_solid_png((10, 20, 30, 0), mode="RGBA"))
        assert image.mode == "RGB"
        assert image.getpixel((0, 0)) == (10, 20, 30)

    def test_greyscale_is_expanded(self) -> None:
        image = decode_image(_solid_png(128, mode="L"))
        assert image.mode == "RGB"
        assert image.getpixel((0, 0)) == (128, 128, 128)

    def test_sixteen_bit_greyscale_is_scaled(self) -> None:
        data = _encode(Image.fromarray(np.full((224, 224), 32768, dtype=np.uint16)))
        image = decode_image(data)
        assert image.mode == "RGB"
        assert image.getpixel((0, 0)) == (128, 128, 128)

    def test_sixteen_bit_greyscale_keeps_contrast(self) -> None:
        ramp = np.tile(np.linspace(0, 65535, 224, dtype=np.uint16), (224, 1))
        tensor = PillowPreprocessor().preprocess(_encode(Image.fromarray(ramp)))
        red = tensor[:PLANE].reshape(224, 224)
        assert red[0, 0] == pytest.approx((0.0 - 0.485) / 0.229, abs=1e-5)
        assert red[0, -1] == pytest.approx((1.0 - 0.485) / 0.229, abs=1e-5)

    def test_pixel_limit(self) -> None:
        with pytest.raises(UnsupportedFormatError, match="pixels"):
            decode_image(_solid_png(size=(100, 100)), max_pixels=9_999)

    def test_jpeg_decodes(self) -> None:
        image = decode_image(_encode(Image.new("RGB", (64, 48), (0, 0, 255)), fmt="JPEG"))
        assert image.size == (64, 48)


# ---------------------------------------------------------------------------
# Tensor conversion
# ---------------------------------------------------------------------------


class TestPreprocess:
    def test_output_length_and_dtype(self) -> None:
        tensor = PillowPreprocessor().preprocess(_solid_png())
        assert tensor.shape == (TENSOR_LENGTH,)
        assert tensor.shape == (150528,)
        assert tensor.dtype == np.float32

    def test_non_square_input_is_resized(self) -> None:
        tensor = PillowPreprocessor().preprocess(_solid_png(size=(640, 120)))
        assert tensor.shape == (150528,)

    def test_deterministic(self) -> None:
        image = Image.effect_noise((300, 200), 64).convert("RGB")
        data = _encode(image)
        preprocessor = PillowPreprocessor()
        first = preprocessor.preprocess(data)
        second = preprocessor.preprocess(data)
        assert np.array_equal(first, second)

    def test_solid_red_channel_values(self) -> None:
        tensor = PillowPreprocessor().preprocess(_solid_png((255, 0, 0)))

        red, green, blue = tensor[:PLANE], tensor[PLANE : 2 * PLANE], tensor[2 * PLANE :]
        np.testing.assert_allclose(red, (1.0 - 0.485) / 0.229, atol=1e-3)
        np.testing.assert_allclose(green, (0.0 - 0.456) / 0.224, atol=1e-3)
        np.testing.assert_allclose(blue, (0.0 - 0.406) / 0.225, atol=1e-3)
        assert red[0] == pytest.approx(2.249, abs=1e-3)
        assert green[0] == pytest.approx(-2.036, abs=1e-3)
        assert blue[0] == pytest.approx(-1.804, abs=1e-3)

    def test_channel_major_layout(self) -> None:
        image = Image.new("RGB", (224, 224), (0, 0, 0))
        image.putpixel((5, 3), (10, 20, 30))
        tensor = image_to_tensor(image)

        offset = 3 * 224 + 5
        mean = (0.485, 0.456, 0.406)
        std = (0.229, 0.224, 0.225)
        for channel, value in enumerate((10, 20, 30)):
            expected = (value / 255.0 - mean[channel]) / std[channel]
            assert tensor[channel * PLANE + offset] == pytest.approx(expected, abs=1e-5)

    def test_values_are_not_clipped(self) -> None:
        tensor = PillowPreprocessor().preprocess(_solid_png((255, 255, 255)))
        assert tensor.max() > 1.0

    def test_corrupted_input_never_returns_tensor(self) -> None:
        preprocessor = PillowPreprocessor()
        for bad in (b"", b"\x00" * 64, b"GIF89a broken"):
            with pytest.raises((DecodeError, UnsupportedFormatError)):
                preprocessor.preprocess(bad)

    def test_from_settings_applies_limits(self) -> None:
        from classifyx.config import Settings

        preprocessor = PillowPreprocessor.from_settings(Settings(max_file_size=16))
        with pytest.raises(UnsupportedFormatError):
            preprocessor.preprocess(_solid_png())
