"""Job pipeline: validation, admission, cache, heuristics and search.

``CompressionService`` is the single entry point for callers. It owns the
process-wide cache and admission counter and hands them to each job
explicitly; nothing here is module-level state.
"""

import logging
import re
import threading
import time
import uuid
from dataclasses import dataclass
from typing import Callable, Optional, Union

from ..config import PixelPressConfig
from ..errors import ValidationError
from .cache import CompressionCache
from .encoders import ImageEncoder, parse_format
from .engine import CompressionEngine
from .heuristics import AdaptiveHeuristicsEngine
from .resources import ResourceManager
from .result import CompressionMode, CompressionResult, OutputFormat, Phase

logger = logging.getLogger(__name__)

OUTPUT_FILENAME_PREFIX = "pixelpress"


@dataclass
class JobMetrics:
    """Per-job figures logged after every compression.

    Attributes:
        processing_time_ms: Wall-clock time of the job
        iterations_used: Successful encodes
        final_size: Output size in bytes
        quality_achieved: Quality of the output
        exact_match: Output size equals target
        compression_ratio: Input size / output size
        active_jobs: Jobs running when the metrics were taken
        cache_hit_rate: Process-wide cache hit rate
    """
    processing_time_ms: int
    iterations_used: int
    final_size: int
    quality_achieved: int
    exact_match: bool
    compression_ratio: float
    active_jobs: int
    cache_hit_rate: float


def parse_mode(mode: Union[str, CompressionMode]) -> CompressionMode:
    """Parse a compression mode name.

    Raises:
        ValidationError: If the name is not exact or balanced
    """
    if isinstance(mode, CompressionMode):
        return mode
    try:
        return CompressionMode(str(mode).strip().lower())
    except ValueError:
        raise ValidationError(
            f"Unsupported mode: {mode!r} (supported: exact, balanced)"
        ) from None


def build_output_filename(source_name: str, result: CompressionResult) -> str:
    """Build a descriptive file name for a compression result.

    Example: ``pixelpress--holiday-photo--webp--80000B--w1024h768--q72--mBALANCED.webp``
    """
    stem = source_name.rsplit(".", 1)[0] if "." in source_name else source_name
    sanitized = re.sub(r"[^a-z0-9-]", "-", stem.lower())
    sanitized = re.sub(r"-+", "-", sanitized).strip("-") or "image"

    fmt = result.output_format.value if result.output_format else "bin"
    width, height = result.dimensions
    return (
        f"{OUTPUT_FILENAME_PREFIX}--{sanitized}--{fmt}--{result.byte_size}B"
        f"--w{width}h{height}--q{result.quality}--m{result.mode.value.upper()}.{fmt}"
    )


class CompressionService:
    """Compresses raw image bytes to a target size.

    Typical use::

        service = CompressionService()
        result = service.compress(data, "webp", "balanced")
    """

    def __init__(
        self,
        config: Optional[PixelPressConfig] = None,
        encoder=None,
        cache: Optional[CompressionCache] = None,
        resources: Optional[ResourceManager] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize service.

        Args:
            config: Configuration (None = defaults)
            encoder: Encoder facade (None = Pillow-backed ImageEncoder)
            cache: Result cache (None = new cache using config TTL)
            resources: Admission counter (None = new manager using config ceiling)
            clock: Monotonic time source for search deadlines
        """
        self.config = config or PixelPressConfig()
        if encoder is None:
            encoder = ImageEncoder(effort=self.config.encoder.effort)
        if cache is None:
            # An empty cache is falsy, so no `or` here
            cache = CompressionCache(ttl_seconds=self.config.cache.ttl_seconds)
        if resources is None:
            resources = ResourceManager(self.config.compression.max_concurrent_jobs)
        self.encoder = encoder
        self.cache = cache
        self.resources = resources
        self.heuristics = AdaptiveHeuristicsEngine(self.config.adaptive)
        self.engine = CompressionEngine(
            self.encoder,
            self.config.compression,
            self.config.encoder,
            clock=clock,
        )
        self._clock = clock
        self._jobs_started = 0
        self._jobs_lock = threading.Lock()

    def compress(
        self,
        data: bytes,
        output_format: Union[str, OutputFormat],
        mode: Union[str, CompressionMode] = CompressionMode.BALANCED,
        target_bytes: Optional[int] = None,
    ) -> CompressionResult:
        """Compress one image.

        Args:
            data: Raw JPEG or PNG bytes
            output_format: webp or avif
            mode: exact or balanced
            target_bytes: Target size override (None = configured target)

        Returns:
            CompressionResult (cache_hit=True when served from cache)

        Raises:
            ValidationError: Bad input, format or mode; raised before admission
            ServerBusyError: Concurrency ceiling reached
            ResourceLimitError: Job exceeded its memory ceiling
            CompressionFailedError: No encode succeeded
        """
        output_format = parse_format(output_format)
        mode = parse_mode(mode)
        if target_bytes is not None and target_bytes < 1:
            raise ValidationError(f"target_bytes must be >= 1, got {target_bytes}")
        self.encoder.validate(data, self.config.compression.max_file_size)

        with self.resources.slot():
            job_id = uuid.uuid4().hex[:8]
            self._maybe_cleanup_cache()
            try:
                result = self._run_job(job_id, data, output_format, mode, target_bytes)
            except Exception as e:
                logger.error(f"[{job_id}] Compression failed: {e}")
                raise

            metrics = self.collect_metrics(result, len(data))
            logger.info(f"[{job_id}] Metrics: {metrics}")
            return result

    def _run_job(
        self,
        job_id: str,
        data: bytes,
        output_format: OutputFormat,
        mode: CompressionMode,
        target_bytes: Optional[int],
    ) -> CompressionResult:
        started_at = self._clock()
        effective_target = self.config.compression.target_bytes
        key_target = None
        if target_bytes is not None and target_bytes != effective_target:
            effective_target = key_target = target_bytes
        cache_key = self.cache.generate_key(data, output_format, mode, key_target)

        entry = self.cache.lookup(cache_key)
        if entry is not None:
            logger.info(f"[{job_id}] Cache hit: {len(entry.buffer)} bytes")
            return CompressionResult(
                buffer=entry.buffer,
                quality=entry.quality,
                byte_size=len(entry.buffer),
                dimensions=entry.dimensions,
                exact_match=len(entry.buffer) == effective_target,
                iterations_used=0,
                mode=mode,
                processing_time_ms=int((self._clock() - started_at) * 1000),
                scale_factor=entry.scale_factor,
                cache_hit=True,
                target_bytes=effective_target,
                output_format=output_format,
                phase=Phase.DONE,
                message="Served from cache",
            )

        metadata = self.encoder.extract_metadata(data)
        logger.info(
            f"[{job_id}] Input: {metadata.byte_size} bytes, {metadata.width}x{metadata.height} "
            f"{metadata.source_format}"
        )
        heuristics = self.heuristics.generate_heuristics(metadata)
        image = self.encoder.decode(data)

        result = self.engine.compress(
            image,
            heuristics,
            output_format,
            mode,
            target_bytes=effective_target,
            job_id=job_id,
        )

        self.cache.set(
            cache_key,
            result.buffer,
            quality=result.quality,
            scale_factor=result.scale_factor,
            dimensions=result.dimensions,
        )
        return result

    def _maybe_cleanup_cache(self) -> None:
        """Sweep expired cache entries every cleanup_interval jobs."""
        with self._jobs_lock:
            self._jobs_started += 1
            due = self._jobs_started % self.config.cache.cleanup_interval == 0
        if due:
            removed = self.cache.cleanup()
            logger.debug(f"Periodic cache cleanup removed {removed} entries")

    def collect_metrics(self, result: CompressionResult, input_size: int) -> JobMetrics:
        """Summarize a finished job."""
        return JobMetrics(
            processing_time_ms=result.processing_time_ms,
            iterations_used=result.iterations_used,
            final_size=result.byte_size,
            quality_achieved=result.quality,
            exact_match=result.exact_match,
            compression_ratio=round(input_size / result.byte_size, 2) if result.byte_size else 0.0,
            active_jobs=self.resources.active_jobs,
            cache_hit_rate=self.cache.get_stats()['hit_rate'],
        )

    def get_stats(self) -> dict:
        """Get admission and cache statistics."""
        return {
            'resources': self.resources.get_stats(),
            'cache': self.cache.get_stats(),
        }
