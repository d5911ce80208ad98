"""Tests for decoding, validation and real WebP/AVIF encoding."""

from concurrent.futures import ThreadPoolExecutor
from io import BytesIO

import pytest
from PIL import Image

from pixelpress.compression.encoders import (
    AVIF_AVAILABLE,
    SSIM_AVAILABLE,
    ImageEncoder,
    WebpEncoder,
    calculate_ssim_inmemory,
    get_available_formats,
    get_encoder,
    get_encoder_capabilities,
    normalize_mode,
    parse_format,
    scaled_dimensions,
)
from pixelpress.compression.result import OutputFormat
from pixelpress.errors import EncoderError, ValidationError

MAX_SIZE = 1024 * 1024


@pytest.fixture
def encoder():
    return ImageEncoder(effort=4)


def jpeg_with_orientation(orientation, size=(128, 96)):
    exif = Image.Exif()
    exif[0x0112] = orientation
    buffer = BytesIO()
    Image.new("RGB", size, (10, 200, 30)).save(buffer, format="JPEG", exif=exif)
    return buffer.getvalue()


class TestValidate:
    def test_accepts_jpeg_and_png(self, encoder, jpeg_bytes, png_rgba_bytes):
        encoder.validate(jpeg_bytes, MAX_SIZE)
        encoder.validate(png_rgba_bytes, MAX_SIZE)

    def test_rejects_empty(self, encoder):
        with pytest.raises(ValidationError, match="Empty"):
            encoder.validate(b"", MAX_SIZE)

    def test_rejects_oversized(self, encoder, jpeg_bytes):
        with pytest.raises(ValidationError, match="too large"):
            encoder.validate(jpeg_bytes, len(jpeg_bytes) - 1)

    def test_accepts_exactly_max_size(self, encoder, jpeg_bytes):
        encoder.validate(jpeg_bytes, len(jpeg_bytes))

    @pytest.mark.parametrize("data", [b"GIF89a\x00\x00", b"RIFF\x00\x00\x00\x00WEBP", b"\xff\xd8"])
    def test_rejects_other_headers(self, encoder, data):
        with pytest.raises(ValidationError, match="JPEG or PNG"):
            encoder.validate(data, MAX_SIZE)


class TestMetadata:
    def test_jpeg(self, encoder, jpeg_bytes):
        meta = encoder.extract_metadata(jpeg_bytes)
        assert (meta.width, meta.height) == (128, 96)
        assert meta.channel_count == 3
        assert not meta.has_alpha
        assert meta.source_format == "jpeg"
        assert meta.byte_size == len(jpeg_bytes)

    def test_png_with_alpha(self, encoder, png_rgba_bytes):
        meta = encoder.extract_metadata(png_rgba_bytes)
        assert (meta.width, meta.height) == (64, 48)
        assert meta.channel_count == 4
        assert meta.has_alpha
        assert meta.source_format == "png"

    def test_rotated_orientation_swaps_dimensions(self, encoder):
        meta = encoder.extract_metadata(jpeg_with_orientation(6))
        assert (meta.width, meta.height) == (96, 128)

    def test_mirrored_orientation_keeps_dimensions(self, encoder):
        meta = encoder.extract_metadata(jpeg_with_orientation(2))
        assert (meta.width, meta.height) == (128, 96)

    def test_unreadable_header(self, encoder):
        with pytest.raises(ValidationError):
            encoder.extract_metadata(b"\x89PNG\r\n\x1a\nnot really a png")


class TestDecode:
    def test_applies_orientation(self, encoder):
        image = encoder.decode(jpeg_with_orientation(6))
        assert image.size == (96, 128)
        assert image.mode == "RGB"
        assert "exif" not in image.info

    def test_keeps_alpha(self, encoder, png_rgba_bytes):
        image = encoder.decode(png_rgba_bytes)
        assert image.mode == "RGBA"
        assert image.size == (64, 48)

    def test_truncated_input(self, encoder, jpeg_bytes):
        with pytest.raises(ValidationError, match="Cannot decode"):
            encoder.decode(jpeg_bytes[: len(jpeg_bytes) // 2])

    def test_garbage_after_magic(self, encoder):
        with pytest.raises(ValidationError):
            encoder.decode(b"\xff\xd8\xff" + b"\x00" * 64)


class TestNormalizeMode:
    def test_passthrough(self):
        image = Image.new("RGBA", (4, 4))
        assert normalize_mode(image) is image

    def test_palette_with_transparency(self):
        image = Image.new("P", (4, 4))
        image.info["transparency"] = 0
        assert normalize_mode(image).mode == "RGBA"

    @pytest.mark.parametrize("mode, expected", [("L", "RGB"), ("LA", "RGBA"), ("CMYK", "RGB"), ("P", "RGB")])
    def test_conversions(self, mode, expected):
        assert normalize_mode(Image.new(mode, (4, 4))).mode == expected


class TestEncode:
    def test_webp_output(self, encoder, jpeg_bytes):
        image = encoder.decode(jpeg_bytes)
        data = encoder.encode(image, 75, OutputFormat.WEBP)

        assert data[:4] == b"RIFF" and data[8:12] == b"WEBP"
        with Image.open(BytesIO(data)) as out:
            assert out.size == (128, 96)
            assert "exif" not in out.info
            assert "icc_profile" not in out.info

    def test_deterministic(self, encoder, jpeg_bytes):
        image = encoder.decode(jpeg_bytes)
        assert encoder.encode(image, 60, "webp") == encoder.encode(image, 60, "webp")

    def test_higher_quality_is_larger(self, encoder, jpeg_bytes):
        image = encoder.decode(jpeg_bytes)
        assert len(encoder.encode(image, 95, "webp")) > len(encoder.encode(image, 10, "webp"))

    def test_scaling(self, encoder, jpeg_bytes):
        image = encoder.decode(jpeg_bytes)
        data = encoder.encode(image, 80, "webp", scale_factor=0.5)

        with Image.open(BytesIO(data)) as out:
            assert out.size == (64, 48)
        assert image.size == (128, 96)

    def test_quality_is_clamped(self, encoder, jpeg_bytes):
        image = encoder.decode(jpeg_bytes)
        assert encoder.encode(image, 150, "webp") == encoder.encode(image, 100, "webp")
        assert encoder.encode(image, 0, "webp") == encoder.encode(image, 1, "webp")

    def test_concurrent_encodes_of_one_image(self, encoder, image_bytes_factory):
        image = encoder.decode(image_bytes_factory("PNG", (200, 200)))
        qualities = [20, 40, 60, 80] * 5
        serial = {q: encoder.encode(image, q, "webp") for q in set(qualities)}

        with ThreadPoolExecutor(max_workers=4) as pool:
            outputs = list(pool.map(lambda q: encoder.encode(image, q, "webp"), qualities))

        assert [len(data) for data in outputs] == [len(serial[q]) for q in qualities]
        assert all(data == serial[q] for q, data in zip(qualities, outputs))

    def test_webp_keeps_alpha(self, encoder, png_rgba_bytes):
        data = encoder.encode(encoder.decode(png_rgba_bytes), 80, "webp")
        with Image.open(BytesIO(data)) as out:
            assert out.mode == "RGBA"

    def test_invalid_scale_factor(self, encoder, source_image):
        with pytest.raises(EncoderError):
            encoder.encode(source_image, 80, "webp", scale_factor=0)

    @pytest.mark.skipif(not AVIF_AVAILABLE, reason="Pillow built without AVIF support")
    def test_avif_output(self, encoder, jpeg_bytes):
        data = encoder.encode(encoder.decode(jpeg_bytes), 60, OutputFormat.AVIF)
        assert data[4:12] == b"ftypavif"

    @pytest.mark.skipif(AVIF_AVAILABLE, reason="AVIF support is installed")
    def test_avif_unavailable(self, encoder, source_image):
        with pytest.raises(EncoderError):
            encoder.encode(source_image, 60, OutputFormat.AVIF)


class TestHelpers:
    @pytest.mark.parametrize(
        "size, scale, expected",
        [((100, 80), 0.5, (50, 40)), ((100, 80), 1.0, (100, 80)), ((3, 3), 0.1, (1, 1)), ((101, 51), 0.3, (30, 15))],
    )
    def test_scaled_dimensions(self, size, scale, expected):
        assert scaled_dimensions(size[0], size[1], scale) == expected

    def test_parse_format(self):
        assert parse_format(" WebP ") is OutputFormat.WEBP
        assert parse_format(OutputFormat.AVIF) is OutputFormat.AVIF
        with pytest.raises(ValidationError, match="Unsupported output format"):
            parse_format("jpeg")

    def test_registry(self):
        assert isinstance(get_encoder("webp"), WebpEncoder)
        assert get_encoder("gif") is None
        assert OutputFormat.WEBP in get_available_formats()
        assert (OutputFormat.AVIF in get_available_formats()) == AVIF_AVAILABLE

    def test_capabilities(self):
        caps = get_encoder_capabilities()
        assert caps["avif_encoding"] == AVIF_AVAILABLE
        assert caps["ssim_validation"] == SSIM_AVAILABLE
        assert "webp" in caps["formats"]


@pytest.mark.skipif(not SSIM_AVAILABLE, reason="scikit-image not installed")
class TestSsim:
    def test_identical_images(self, source_image):
        assert calculate_ssim_inmemory(source_image, source_image.copy()) == pytest.approx(1.0)

    def test_compressed_image_scores_below_one(self, encoder):
        image = Image.linear_gradient("L").resize((128, 96)).convert("RGB")
        with Image.open(BytesIO(encoder.encode(image, 10, "webp"))) as compressed:
            score = calculate_ssim_inmemory(image, compressed)
        assert 0.0 < score < 1.0

    def test_too_small(self):
        tiny = Image.new("RGB", (5, 5))
        assert calculate_ssim_inmemory(tiny, tiny) is None
