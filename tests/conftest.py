"""Shared fixtures for the PixelPress test suite.

Engine and service tests run against ``FakeEncoder``, whose output size is a
plain function of quality and scale, so search behaviour is deterministic.
Encoder tests use real Pillow codecs on small generated images.
"""

import threading
from io import BytesIO
from typing import Callable, Iterable, List, Optional, Tuple

import numpy as np
import pytest
from PIL import Image

from pixelpress.compression.encoders import ImageEncoder
from pixelpress.compression.result import AdaptiveHeuristics, TimeoutStrategy
from pixelpress.errors import EncoderError

SizeFn = Callable[[int, float], int]


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self._lock = threading.Lock()

    def __call__(self) -> float:
        with self._lock:
            return self.now

    def advance(self, seconds: float) -> None:
        with self._lock:
            self.now += seconds


class FakeEncoder(ImageEncoder):
    """Pillow-backed decoding with synthetic, size-controlled encoding.

    Args:
        size_fn: Maps (quality, scale_factor) to an output length
        fail_qualities: Qualities whose encode raises EncoderError
        fail_all: Every encode raises EncoderError
        clock: Clock advanced by tick seconds on each encode
        tick: Seconds each encode takes on clock
    """

    def __init__(
        self,
        size_fn: SizeFn,
        fail_qualities: Iterable[int] = (),
        fail_all: bool = False,
        clock: Optional[FakeClock] = None,
        tick: float = 0.0,
    ):
        super().__init__()
        self.size_fn = size_fn
        self.fail_qualities = set(fail_qualities)
        self.fail_all = fail_all
        self.clock = clock
        self.tick = tick
        self.calls: List[Tuple[int, float]] = []
        self._lock = threading.Lock()

    def encode(self, image, quality, output_format, scale_factor=1.0) -> bytes:
        with self._lock:
            self.calls.append((quality, scale_factor))
        if self.clock is not None:
            self.clock.advance(self.tick)
        if self.fail_all or quality in self.fail_qualities:
            raise EncoderError(f"synthetic failure at quality {quality}")
        return b"\x00" * self.size_fn(quality, scale_factor)

    @property
    def qualities(self) -> List[int]:
        return [q for q, _ in self.calls]


def linear_size(bytes_per_quality: int) -> SizeFn:
    """Size proportional to quality and to the scaled pixel area."""
    return lambda q, s: int(round(bytes_per_quality * q * s * s))


def image_bytes(
    fmt: str = "JPEG",
    size: Tuple[int, int] = (128, 96),
    mode: str = "RGB",
    seed: int = 0,
) -> bytes:
    """Encode a random-noise image, which compresses poorly and predictably."""
    rng = np.random.default_rng(seed)
    shape = (size[1], size[0], len(mode)) if len(mode) > 1 else (size[1], size[0])
    pixels = rng.integers(0, 256, size=shape, dtype=np.uint8)
    img = Image.fromarray(pixels)
    buffer = BytesIO()
    img.save(buffer, format=fmt)
    return buffer.getvalue()


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_encoder_factory():
    return FakeEncoder


@pytest.fixture
def linear_size_fn():
    return linear_size


@pytest.fixture
def jpeg_bytes() -> bytes:
    return image_bytes("JPEG", (128, 96), "RGB")


@pytest.fixture
def png_rgba_bytes() -> bytes:
    return image_bytes("PNG", (64, 48), "RGBA", seed=1)


@pytest.fixture
def image_bytes_factory():
    return image_bytes


@pytest.fixture
def source_image() -> Image.Image:
    return Image.new("RGB", (100, 80), (120, 60, 200))


@pytest.fixture
def heuristics() -> AdaptiveHeuristics:
    return AdaptiveHeuristics(
        complexity=0.5,
        estimated_quality=75,
        max_iterations=8,
        timeout_strategy=TimeoutStrategy.AGGRESSIVE,
        parallel_test_count=4,
    )
