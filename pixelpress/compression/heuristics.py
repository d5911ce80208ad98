"""Adaptive heuristics for choosing where the quality search starts.

All functions are pure: they read ImageMetadata and AdaptiveSettings and
return numbers. Bigger, denser and alpha-bearing images score as more
complex, which lowers the starting quality and raises the iteration budget.
"""

import math
import logging
from typing import Optional

from ..config import AdaptiveSettings
from .result import AdaptiveHeuristics, ImageMetadata, TimeoutStrategy

logger = logging.getLogger(__name__)


# Constants
BASE_QUALITY = 85
COMPLEXITY_QUALITY_PENALTY = 20  # Quality lost at complexity 1.0
MAX_DENSITY_PENALTY = 10  # Cap on the bytes-per-pixel penalty
DENSITY_PENALTY_SCALE = 1000
BYTES_PER_PARALLEL_TEST = 1024 * 1024


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


class AdaptiveHeuristicsEngine:
    """Derives search parameters from image metadata."""

    def __init__(self, settings: Optional[AdaptiveSettings] = None):
        self.settings = settings or AdaptiveSettings()

    def calculate_complexity(self, metadata: ImageMetadata) -> float:
        """Calculate a 0-1 complexity score from dimensions, channels and size.

        Weighted sum of three terms, clamped as a whole:
        - dimensions: log10(pixels) / 7 (weight 0.4)
        - channels: (channel_count + has_alpha) / 4 (weight 0.3)
        - size: log10(byte_size) / 8 (weight 0.3)
        """
        dimension_term = math.log10(metadata.pixel_count) / 7
        channel_term = (metadata.channel_count + (1 if metadata.has_alpha else 0)) / 4
        size_term = math.log10(metadata.byte_size) / 8

        complexity = _clamp(
            0.4 * dimension_term + 0.3 * channel_term + 0.3 * size_term, 0.0, 1.0
        )

        logger.debug(
            f"Complexity: dimensions={dimension_term:.3f}, channels={channel_term:.3f}, "
            f"size={size_term:.3f}, total={complexity:.3f}"
        )
        return complexity

    def estimate_starting_quality(
        self, metadata: ImageMetadata, complexity: Optional[float] = None
    ) -> int:
        """Estimate the quality the probe phase is centered on.

        Complex images need lower quality for the same byte budget, and
        images with unusually many bytes per pixel (noise, fine detail)
        get an extra penalty of up to 10.
        """
        if complexity is None:
            complexity = self.calculate_complexity(metadata)

        bytes_per_pixel = metadata.byte_size / metadata.pixel_count
        complexity_penalty = COMPLEXITY_QUALITY_PENALTY * complexity
        density_penalty = min(MAX_DENSITY_PENALTY, DENSITY_PENALTY_SCALE * bytes_per_pixel)

        estimated = _clamp(
            BASE_QUALITY - complexity_penalty - density_penalty,
            self.settings.quality_min,
            self.settings.quality_max,
        )

        logger.debug(
            f"Quality estimate: base={BASE_QUALITY}, complexity_penalty={complexity_penalty:.1f}, "
            f"density_penalty={density_penalty:.1f}, estimated={estimated:.1f}"
        )
        return int(round(estimated))

    def calculate_max_iterations(
        self, metadata: ImageMetadata, complexity: Optional[float] = None
    ) -> int:
        """Binary-search round budget: size-tiered base scaled by 0.8-1.2."""
        if complexity is None:
            complexity = self.calculate_complexity(metadata)

        settings = self.settings
        if metadata.byte_size < settings.small_image_threshold:
            base = settings.max_iterations_small
        elif metadata.byte_size < settings.medium_image_threshold:
            base = settings.max_iterations_medium
        else:
            base = settings.max_iterations_large

        multiplier = 0.8 + 0.4 * complexity
        return max(1, int(round(base * multiplier)))

    def choose_timeout_strategy(self, metadata: ImageMetadata) -> TimeoutStrategy:
        """Conservative budgeting for inputs above the medium threshold."""
        if metadata.byte_size > self.settings.medium_image_threshold:
            return TimeoutStrategy.CONSERVATIVE
        return TimeoutStrategy.AGGRESSIVE

    def calculate_parallel_tests(self, metadata: ImageMetadata) -> int:
        """One concurrent probe per MiB of input, between 2 and the ceiling."""
        by_size = metadata.byte_size // BYTES_PER_PARALLEL_TEST
        return int(_clamp(by_size, 2, self.settings.parallel_tests))

    def generate_heuristics(self, metadata: ImageMetadata) -> AdaptiveHeuristics:
        """Generate all search parameters for one job."""
        complexity = self.calculate_complexity(metadata)

        heuristics = AdaptiveHeuristics(
            complexity=complexity,
            estimated_quality=self.estimate_starting_quality(metadata, complexity),
            max_iterations=self.calculate_max_iterations(metadata, complexity),
            timeout_strategy=self.choose_timeout_strategy(metadata),
            parallel_test_count=self.calculate_parallel_tests(metadata),
        )

        logger.info(
            f"Heuristics: complexity={heuristics.complexity:.3f}, "
            f"quality={heuristics.estimated_quality}, iterations={heuristics.max_iterations}, "
            f"strategy={heuristics.timeout_strategy.value}, "
            f"parallel_tests={heuristics.parallel_test_count}"
        )
        return heuristics
