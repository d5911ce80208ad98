"""Data model shared by the encoder, heuristics, engine and service."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Tuple


class OutputFormat(str, Enum):
    """Supported lossy output codecs."""
    WEBP = "webp"
    AVIF = "avif"


class CompressionMode(str, Enum):
    """Size-targeting policy."""
    EXACT = "exact"
    BALANCED = "balanced"


class TimeoutStrategy(str, Enum):
    """How the engine splits its wall-clock budget between phases."""
    AGGRESSIVE = "aggressive"
    CONSERVATIVE = "conservative"


class Phase(str, Enum):
    """Search phases, in execution order."""
    PROBE = "probe"
    BINARY_SEARCH = "binary_search"
    SCALING = "scaling"
    DONE = "done"


@dataclass(frozen=True)
class ImageMetadata:
    """Structural metadata of an input image.

    Attributes:
        width: Width in pixels
        height: Height in pixels
        byte_size: Size of the raw input in bytes
        channel_count: Number of bands (3 for RGB, 4 for RGBA, ...)
        has_alpha: True if the image carries transparency
        source_format: Detected input format (jpeg, png)
    """
    width: int
    height: int
    byte_size: int
    channel_count: int
    has_alpha: bool
    source_format: str

    def __post_init__(self):
        """Validate metadata."""
        if self.width <= 0 or self.height <= 0:
            raise ValueError(f"invalid dimensions {self.width}x{self.height}")
        if self.byte_size <= 0:
            raise ValueError(f"byte_size must be > 0, got {self.byte_size}")

    @property
    def pixel_count(self) -> int:
        """Get width * height."""
        return self.width * self.height


@dataclass(frozen=True)
class AdaptiveHeuristics:
    """Search parameters derived from image metadata.

    Attributes:
        complexity: Normalized compression difficulty (0-1)
        estimated_quality: Quality the probe phase is centered on
        max_iterations: Binary-search round budget
        timeout_strategy: Wall-clock budgeting strategy
        parallel_test_count: Concurrent encodes per probe batch
    """
    complexity: float
    estimated_quality: int
    max_iterations: int
    timeout_strategy: TimeoutStrategy
    parallel_test_count: int


@dataclass(frozen=True)
class QualityTrial:
    """One encode attempt and its exact output."""
    quality: int
    scale_factor: float
    byte_size: int
    buffer: bytes = field(repr=False)

    def __post_init__(self):
        if self.byte_size != len(self.buffer):
            raise ValueError(
                f"byte_size {self.byte_size} does not match buffer length {len(self.buffer)}"
            )

    @classmethod
    def from_buffer(cls, quality: int, scale_factor: float, buffer: bytes) -> "QualityTrial":
        """Build a trial whose size is the buffer length."""
        return cls(
            quality=quality,
            scale_factor=scale_factor,
            byte_size=len(buffer),
            buffer=buffer,
        )

    def distance(self, target_bytes: int) -> int:
        """Absolute distance from the target size."""
        return abs(self.byte_size - target_bytes)


@dataclass
class CompressionResult:
    """Result of a compression job with diagnostics.

    Attributes:
        buffer: The compressed image data
        quality: Quality the output was encoded at
        byte_size: Exact length of buffer
        dimensions: Output dimensions (width, height)
        exact_match: True iff byte_size equals target_bytes
        iterations_used: Number of successful encodes the search ran
        mode: Compression mode of the job
        processing_time_ms: Wall-clock time of the job
        scale_factor: Uniform downscale applied, None when unscaled
        cache_hit: True if served from the result cache

        target_bytes: Size the job aimed for
        output_format: Codec of buffer
        phase: Phase the job terminated in
        message: Human-readable status message
        ssim_score: Structural similarity to the source (0-1) if calculated
    """
    buffer: bytes = field(repr=False)
    quality: int
    byte_size: int
    dimensions: Tuple[int, int]
    exact_match: bool
    iterations_used: int
    mode: CompressionMode
    processing_time_ms: int
    scale_factor: Optional[float] = None
    cache_hit: bool = False

    target_bytes: int = 0
    output_format: Optional[OutputFormat] = None
    phase: Phase = Phase.DONE
    message: str = ""
    ssim_score: Optional[float] = None

    def __post_init__(self):
        """Validate size invariants."""
        if self.byte_size != len(self.buffer):
            raise ValueError(
                f"byte_size {self.byte_size} does not match buffer length {len(self.buffer)}"
            )
        if self.exact_match and self.byte_size != self.target_bytes:
            raise ValueError("exact_match requires byte_size == target_bytes")

    @property
    def width(self) -> int:
        return self.dimensions[0]

    @property
    def height(self) -> int:
        return self.dimensions[1]

    @property
    def size_kb(self) -> float:
        """Get output size in kilobytes."""
        return self.byte_size / 1024

    def distance(self) -> int:
        """Absolute distance from the target size."""
        return abs(self.byte_size - self.target_bytes)

    def within_tolerance(self, tolerance: int) -> bool:
        """Check whether the output is within tolerance bytes of the target."""
        return self.distance() <= tolerance


@dataclass
class EncoderOptions:
    """Options for format-specific encoding.

    Attributes:
        quality: Compression quality (1-100)
        effort: Encoder effort level (0-10, higher = slower/better)
    """
    quality: int = 80
    effort: int = 4

    def __post_init__(self):
        """Validate options."""
        if not 1 <= self.quality <= 100:
            raise ValueError(f"quality must be 1-100, got {self.quality}")
        if not 0 <= self.effort <= 10:
            raise ValueError(f"effort must be 0-10, got {self.effort}")
