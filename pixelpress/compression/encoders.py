"""Format-specific image encoders with optional dependency support.

Provides WebP and AVIF encoders behind a common interface, plus the
``ImageEncoder`` facade the engine talks to: decoding, re-encoding at a
quality/scale, metadata extraction and input validation.
"""

from abc import ABC, abstractmethod
from io import BytesIO
from typing import Dict, List, Optional, Tuple, Union
import logging

from PIL import Image, ImageOps, UnidentifiedImageError, features

from ..errors import EncoderError, ValidationError
from .result import EncoderOptions, ImageMetadata, OutputFormat

logger = logging.getLogger(__name__)


# Optional dependency checks
SSIM_AVAILABLE = False
try:
    import numpy as np
    from skimage.metrics import structural_similarity
    SSIM_AVAILABLE = True
except ImportError:
    pass

# Pillow ships AVIF natively since 11.3; older installs can use the plugin.
AVIF_AVAILABLE = features.check("avif")
if not AVIF_AVAILABLE:
    try:
        import pillow_avif  # noqa: F401
        AVIF_AVAILABLE = True
    except ImportError:
        pass


# Header magic bytes of the accepted input formats
JPEG_MAGIC = b"\xff\xd8\xff"
PNG_MAGIC = b"\x89PNG"

# EXIF orientations that swap width and height
_TRANSPOSED_ORIENTATIONS = {5, 6, 7, 8}
_EXIF_ORIENTATION_TAG = 0x0112


class BaseEncoder(ABC):
    """Abstract base class for format-specific encoders."""

    format_name: OutputFormat

    @abstractmethod
    def encode(
        self,
        image: Image.Image,
        options: EncoderOptions
    ) -> bytes:
        """Encode image to bytes.

        Args:
            image: PIL Image to encode
            options: Encoding options

        Returns:
            Encoded image bytes
        """
        pass

    def prepare_image(self, image: Image.Image) -> Image.Image:
        """Prepare image for encoding (mode conversion).

        Args:
            image: Source image

        Returns:
            Image ready for encoding
        """
        return normalize_mode(image)


class WebpEncoder(BaseEncoder):
    """Lossy WebP encoder."""

    format_name = OutputFormat.WEBP

    def encode(self, image: Image.Image, options: EncoderOptions) -> bytes:
        """Encode image as WebP."""
        image = self.prepare_image(image)

        buffer = BytesIO()
        image.save(
            buffer,
            format='WEBP',
            quality=options.quality,
            method=min(options.effort, 6),  # WebP method 0-6
            lossless=False,
            icc_profile=None,
        )
        return buffer.getvalue()


class AvifEncoder(BaseEncoder):
    """Lossy AVIF encoder (4:2:0 chroma)."""

    format_name = OutputFormat.AVIF

    def encode(self, image: Image.Image, options: EncoderOptions) -> bytes:
        """Encode image as AVIF."""
        if not AVIF_AVAILABLE:
            raise EncoderError("AVIF encoding requires Pillow built with libavif")

        image = self.prepare_image(image)

        buffer = BytesIO()
        image.save(
            buffer,
            format='AVIF',
            quality=options.quality,
            speed=10 - options.effort,  # Convert effort to speed (0=slowest/best)
            subsampling='4:2:0',
            icc_profile=None,
        )
        return buffer.getvalue()


# Encoder registry
_ENCODERS: Dict[OutputFormat, BaseEncoder] = {
    OutputFormat.WEBP: WebpEncoder(),
}

# Register AVIF if available
if AVIF_AVAILABLE:
    _ENCODERS[OutputFormat.AVIF] = AvifEncoder()


def parse_format(format_name: Union[str, OutputFormat]) -> OutputFormat:
    """Parse an output format name.

    Raises:
        ValidationError: If the name is not a supported output format
    """
    if isinstance(format_name, OutputFormat):
        return format_name
    try:
        return OutputFormat(str(format_name).strip().lower())
    except ValueError:
        supported = ", ".join(f.value for f in OutputFormat)
        raise ValidationError(
            f"Unsupported output format: {format_name!r} (supported: {supported})"
        ) from None


def get_encoder(format_name: Union[str, OutputFormat]) -> Optional[BaseEncoder]:
    """Get encoder for format.

    Args:
        format_name: Format name (webp, avif)

    Returns:
        Encoder instance or None if format not available
    """
    try:
        return _ENCODERS.get(parse_format(format_name))
    except ValidationError:
        return None


def get_available_formats() -> List[OutputFormat]:
    """Get list of output formats that can be encoded in this process."""
    return list(_ENCODERS.keys())


def normalize_mode(image: Image.Image) -> Image.Image:
    """Convert an image to RGB or RGBA, keeping transparency."""
    if image.mode in ('RGB', 'RGBA'):
        return image
    if image.mode == 'P':
        # Check if palette has transparency
        if 'transparency' in image.info:
            return image.convert('RGBA')
        return image.convert('RGB')
    if image.mode in ('LA', 'PA'):
        return image.convert('RGBA')
    return image.convert('RGB')


def scaled_dimensions(width: int, height: int, scale_factor: float) -> Tuple[int, int]:
    """Dimensions after a uniform downscale, never below 1x1."""
    if scale_factor >= 1.0:
        return (width, height)
    return (max(1, round(width * scale_factor)), max(1, round(height * scale_factor)))


class ImageEncoder:
    """Encoder facade used by the compression engine.

    Decodes inputs once per job and re-encodes the decoded image at any
    quality, scale and output format. Output is deterministic for fixed
    inputs: no metadata is embedded and resampling is always Lanczos.
    """

    def __init__(self, effort: int = 4):
        """Initialize facade.

        Args:
            effort: Encoder effort level passed to every encode
        """
        self.effort = effort

    def validate(self, data: bytes, max_size: int) -> None:
        """Validate raw input bytes before any decoding.

        Args:
            data: Raw input bytes
            max_size: Largest accepted input in bytes

        Raises:
            ValidationError: If empty, too large, or not JPEG/PNG
        """
        if not data:
            raise ValidationError("Empty image file")

        if len(data) > max_size:
            raise ValidationError(
                f"Image too large: {len(data)} bytes (max: {max_size} bytes)"
            )

        if not (data.startswith(JPEG_MAGIC) or data.startswith(PNG_MAGIC)):
            raise ValidationError("Invalid image format: expected JPEG or PNG")

    def decode(self, data: bytes) -> Image.Image:
        """Decode input bytes into an oriented, fully loaded RGB/RGBA image.

        Raises:
            ValidationError: If the bytes cannot be decoded
        """
        try:
            with Image.open(BytesIO(data)) as img:
                # exif_transpose always returns a loaded copy
                image = normalize_mode(ImageOps.exif_transpose(img))
        except (UnidentifiedImageError, OSError, SyntaxError) as e:
            raise ValidationError(f"Cannot decode image: {e}") from e

        # Nothing from the source container may leak into encoded output
        image.info = {}
        return image

    def extract_metadata(self, data: bytes) -> ImageMetadata:
        """Read structural metadata without decoding pixel data.

        Raises:
            ValidationError: If the header cannot be parsed
        """
        try:
            with Image.open(BytesIO(data)) as img:
                width, height = img.size
                bands = img.getbands()
                has_alpha = 'A' in bands or 'transparency' in img.info
                orientation = img.getexif().get(_EXIF_ORIENTATION_TAG)
                source_format = (img.format or 'unknown').lower()
        except (UnidentifiedImageError, OSError, SyntaxError) as e:
            raise ValidationError(f"Cannot read image metadata: {e}") from e

        if orientation in _TRANSPOSED_ORIENTATIONS:
            width, height = height, width

        try:
            return ImageMetadata(
                width=width,
                height=height,
                byte_size=len(data),
                channel_count=len(bands),
                has_alpha=has_alpha,
                source_format=source_format,
            )
        except ValueError as e:
            raise ValidationError(f"Invalid image dimensions: {e}") from e

    def encode(
        self,
        image: Image.Image,
        quality: int,
        output_format: Union[str, OutputFormat],
        scale_factor: float = 1.0,
    ) -> bytes:
        """Encode image at quality, optionally downscaled.

        Args:
            image: Decoded source image
            quality: Quality (rounded and clamped to 1-100)
            output_format: Output codec
            scale_factor: Uniform scale in (0, 1]

        Returns:
            Encoded bytes

        Raises:
            EncoderError: If the codec is unavailable or encoding fails
        """
        output_format = parse_format(output_format)
        encoder = _ENCODERS.get(output_format)
        if encoder is None:
            raise EncoderError(f"No encoder available for {output_format.value}")

        if not 0 < scale_factor <= 1:
            raise EncoderError(f"scale_factor must be in (0, 1], got {scale_factor}")

        quality = int(round(max(1, min(100, quality))))
        options = EncoderOptions(quality=quality, effort=self.effort)

        # Image.save keeps per-call options on the image object, so concurrent
        # encodes of one source each need their own image
        if scale_factor < 1.0:
            size = scaled_dimensions(image.width, image.height, scale_factor)
            image = image.resize(size, Image.Resampling.LANCZOS)
        else:
            image = image.copy()

        try:
            return encoder.encode(image, options)
        except EncoderError:
            raise
        except (OSError, ValueError, KeyError) as e:
            raise EncoderError(
                f"{output_format.value} encode failed at quality {quality}: {e}"
            ) from e


def calculate_ssim_inmemory(
    original: Image.Image,
    compressed: Image.Image
) -> Optional[float]:
    """Calculate SSIM between two images in memory.

    No disk I/O - works directly with PIL Images.

    Args:
        original: Original PIL Image
        compressed: Compressed PIL Image

    Returns:
        SSIM score (0.0 to 1.0) or None if scikit-image unavailable
    """
    if not SSIM_AVAILABLE:
        return None

    # Ensure same size
    if original.size != compressed.size:
        compressed = compressed.resize(original.size, Image.Resampling.LANCZOS)

    # Compare in RGB; alpha is not part of the score
    original = original.convert('RGB')
    compressed = compressed.convert('RGB')

    orig_array = np.array(original)
    comp_array = np.array(compressed)

    # SSIM needs at least a 7x7 window
    if min(orig_array.shape[:2]) < 7:
        return None

    return float(structural_similarity(
        orig_array,
        comp_array,
        data_range=255,
        channel_axis=-1
    ))


def get_encoder_capabilities() -> dict:
    """Get available encoder features.

    Returns:
        Dict with boolean flags for each feature
    """
    return {
        'ssim_validation': SSIM_AVAILABLE,
        'avif_encoding': AVIF_AVAILABLE,
        'formats': [f.value for f in get_available_formats()],
    }
