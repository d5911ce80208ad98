"""Size-targeting compression: encoders, heuristics, cache, admission and search."""

from .result import (
    AdaptiveHeuristics,
    CompressionMode,
    CompressionResult,
    ImageMetadata,
    OutputFormat,
    Phase,
    QualityTrial,
    TimeoutStrategy,
)
from .encoders import (
    AVIF_AVAILABLE,
    SSIM_AVAILABLE,
    ImageEncoder,
    get_encoder,
    get_available_formats,
    calculate_ssim_inmemory,
)
from .heuristics import AdaptiveHeuristicsEngine
from .cache import CacheEntry, CompressionCache
from .resources import ResourceManager
from .engine import CompressionEngine, PhaseOutcome, select_best
from .service import CompressionService, JobMetrics, build_output_filename

__all__ = [
    'AdaptiveHeuristics',
    'CompressionMode',
    'CompressionResult',
    'ImageMetadata',
    'OutputFormat',
    'Phase',
    'QualityTrial',
    'TimeoutStrategy',
    'AVIF_AVAILABLE',
    'SSIM_AVAILABLE',
    'ImageEncoder',
    'get_encoder',
    'get_available_formats',
    'calculate_ssim_inmemory',
    'AdaptiveHeuristicsEngine',
    'CacheEntry',
    'CompressionCache',
    'ResourceManager',
    'CompressionEngine',
    'PhaseOutcome',
    'select_best',
    'CompressionService',
    'JobMetrics',
    'build_output_filename',
]
