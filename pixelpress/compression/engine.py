"""Compression engine: phased parallel search for a byte-size target.

A job runs an ordered pipeline of phases against the encoder:

1. PROBE: a handful of qualities around the heuristic estimate
2. BINARY_SEARCH: narrowing search that probes three qualities per round
3. SCALING: uniform downscales at a fixed quality set

Each phase either satisfies the tolerance predicate, which ends the job, or
hands over to the next one. When no phase succeeds the closest trial seen
so far is returned. Every probe batch fans out over a per-job thread pool
and fans back in only once all of its encodes have finished.
"""

import logging
import time
import uuid
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from io import BytesIO
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from PIL import Image

from ..config import CompressionSettings, EncoderSettings
from ..errors import CompressionFailedError, ResourceLimitError
from .encoders import calculate_ssim_inmemory, scaled_dimensions
from .result import (
    AdaptiveHeuristics,
    CompressionMode,
    CompressionResult,
    OutputFormat,
    Phase,
    QualityTrial,
    TimeoutStrategy,
)

logger = logging.getLogger(__name__)


# Constants
QUALITY_MIN = 1
QUALITY_MAX = 100
PROBE_OFFSETS = (-10, -5, 0, 5)  # Around the estimated quality
SEARCH_WIDEN = 20  # Initial binary-search span beyond the probe best
SCALING_QUALITIES = (70, 80, 90)
SCALE_FACTORS = {
    CompressionMode.BALANCED: (0.9, 0.8, 0.7, 0.6, 0.5),
    CompressionMode.EXACT: (0.9, 0.8, 0.7, 0.6, 0.5, 0.4, 0.3),
}

Candidate = Tuple[int, float]  # (quality, scale_factor)


def normalize_quality(quality: float) -> int:
    """Round and clamp a quality value to 1-100."""
    return int(max(QUALITY_MIN, min(QUALITY_MAX, round(quality))))


def is_better(candidate: QualityTrial, current: Optional[QualityTrial], target_bytes: int) -> bool:
    """Check whether candidate beats current as the trial closest to target.

    Equal distances prefer the higher quality, then the larger scale factor.
    """
    if current is None:
        return True
    candidate_distance = candidate.distance(target_bytes)
    current_distance = current.distance(target_bytes)
    if candidate_distance != current_distance:
        return candidate_distance < current_distance
    return (candidate.quality, candidate.scale_factor) > (current.quality, current.scale_factor)


def select_best(
    trials: Iterable[QualityTrial],
    target_bytes: int,
    current: Optional[QualityTrial] = None,
) -> Optional[QualityTrial]:
    """Fold trials into the one closest to target."""
    best = current
    for trial in trials:
        if is_better(trial, best, target_bytes):
            best = trial
    return best


def dedupe_candidates(candidates: Iterable[Tuple[float, float]]) -> List[Candidate]:
    """Normalize qualities and drop duplicates, keeping first-seen order."""
    seen = set()
    unique = []
    for quality, scale_factor in candidates:
        candidate = (normalize_quality(quality), float(scale_factor))
        if candidate not in seen:
            seen.add(candidate)
            unique.append(candidate)
    return unique


@dataclass
class PhaseOutcome:
    """What one phase produced.

    Attributes:
        phase: Phase that ran
        best: Closest trial of the phase, None if every encode failed
        satisfied: True if best is within tolerance
        rounds: Probe batches the phase dispatched
    """
    phase: Phase
    best: Optional[QualityTrial] = None
    satisfied: bool = False
    rounds: int = 0


@dataclass
class SearchJob:
    """Explicit state of one compression job."""
    job_id: str
    image: Image.Image = field(repr=False)
    output_format: OutputFormat
    mode: CompressionMode
    target_bytes: int
    tolerance: int
    heuristics: AdaptiveHeuristics
    started_at: float
    deadline: float
    search_deadline: float
    memory_limit: int
    pool: Optional[ThreadPoolExecutor] = field(default=None, repr=False)

    memory_used: int = 0
    trials_used: int = 0
    best: Optional[QualityTrial] = None
    floor_best: Optional[QualityTrial] = None
    encoded: Dict[Candidate, QualityTrial] = field(default_factory=dict, repr=False)

    def within_tolerance(self, trial: QualityTrial) -> bool:
        return trial.distance(self.target_bytes) <= self.tolerance

    @property
    def closest(self) -> Optional[QualityTrial]:
        """Trial the job returns.

        Feasibility encodes only stand in when no search trial landed
        within tolerance and they are closer to the target.
        """
        if self.floor_best is None or (
            self.best is not None and self.within_tolerance(self.best)
        ):
            return self.best
        return select_best([self.floor_best], self.target_bytes, self.best)

    def record(self, trial: QualityTrial, contender: bool = True) -> None:
        """Account for a fresh trial and fold it into the running best.

        Args:
            trial: Successful encode
            contender: False for feasibility encodes, which are kept apart

        Raises:
            ResourceLimitError: If the job's encoded bytes exceed its ceiling
        """
        self.memory_used += trial.byte_size
        if self.memory_used > self.memory_limit:
            raise ResourceLimitError(
                f"Memory limit exceeded: {self.memory_used} bytes encoded "
                f"(limit {self.memory_limit})"
            )
        self.trials_used += 1
        self.encoded[(trial.quality, trial.scale_factor)] = trial
        if contender:
            self.best = select_best([trial], self.target_bytes, self.best)
        else:
            self.floor_best = select_best([trial], self.target_bytes, self.floor_best)


class CompressionEngine:
    """Runs the phased size-targeting search for one job at a time.

    The engine itself is stateless between jobs; all per-job state lives in
    a SearchJob, so one engine can serve concurrent jobs.
    """

    def __init__(
        self,
        encoder,
        settings: Optional[CompressionSettings] = None,
        encoder_settings: Optional[EncoderSettings] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize engine.

        Args:
            encoder: Object providing encode(image, quality, format, scale_factor)
            settings: Targets, tolerances and limits
            encoder_settings: Search behaviour switches
            clock: Monotonic time source in seconds
        """
        self.encoder = encoder
        self.settings = settings or CompressionSettings()
        self.encoder_settings = encoder_settings or EncoderSettings()
        self._clock = clock

    def compress(
        self,
        image: Image.Image,
        heuristics: AdaptiveHeuristics,
        output_format: OutputFormat,
        mode: CompressionMode,
        target_bytes: Optional[int] = None,
        job_id: Optional[str] = None,
    ) -> CompressionResult:
        """Search for the encoding closest to the target size.

        Args:
            image: Decoded source image
            heuristics: Search parameters for this image
            output_format: Output codec
            mode: Exact or balanced tolerance policy
            target_bytes: Target size (None = configured default)
            job_id: Identifier used in log lines

        Returns:
            CompressionResult; exact_match is False when the target was missed

        Raises:
            ResourceLimitError: If the job exceeds its memory ceiling
            CompressionFailedError: If no encode succeeded at all
        """
        job = self._start_job(image, heuristics, output_format, mode, target_bytes, job_id)

        logger.info(
            f"[{job.job_id}] Starting {mode.value} search for {output_format.value}: "
            f"{image.width}x{image.height}, target={job.target_bytes} bytes, "
            f"tolerance={job.tolerance}"
        )

        try:
            with ThreadPoolExecutor(
                max_workers=heuristics.parallel_test_count,
                thread_name_prefix=f"pixelpress-{job.job_id}",
            ) as pool:
                job.pool = pool
                terminal_phase, message = self._run_pipeline(job)
        finally:
            job.pool = None

        if job.closest is None:
            logger.error(f"[{job.job_id}] No successful encode in any phase")
            raise CompressionFailedError(
                f"Compression failed: no {output_format.value} encode succeeded"
            )

        result = self._create_result(job, terminal_phase, message)
        logger.info(
            f"[{job.job_id}] Finished in phase {terminal_phase.value}: "
            f"{result.byte_size} bytes at quality {result.quality}"
            f"{f', scale {result.scale_factor}' if result.scale_factor else ''} "
            f"({result.iterations_used} encodes, {result.processing_time_ms} ms)"
        )
        return result

    def _start_job(
        self,
        image: Image.Image,
        heuristics: AdaptiveHeuristics,
        output_format: OutputFormat,
        mode: CompressionMode,
        target_bytes: Optional[int],
        job_id: Optional[str],
    ) -> SearchJob:
        started_at = self._clock()
        budget = self.settings.wall_time_for(mode)
        search_budget = budget
        if heuristics.timeout_strategy is TimeoutStrategy.CONSERVATIVE:
            search_budget = budget * self.encoder_settings.conservative_search_fraction

        return SearchJob(
            job_id=job_id or uuid.uuid4().hex[:8],
            image=image,
            output_format=output_format,
            mode=mode,
            target_bytes=target_bytes if target_bytes is not None else self.settings.target_bytes,
            tolerance=self.settings.tolerance_for(mode),
            heuristics=heuristics,
            started_at=started_at,
            deadline=started_at + budget,
            search_deadline=started_at + search_budget,
            memory_limit=self.settings.memory_limit_per_job,
        )

    def _deadline_reached(self, job: SearchJob, deadline: Optional[float] = None) -> bool:
        return self._clock() >= (job.deadline if deadline is None else deadline)

    def _run_pipeline(self, job: SearchJob) -> Tuple[Phase, str]:
        """Run the phases in order until one satisfies the tolerance.

        Returns:
            Tuple of (terminal phase, status message)
        """
        if self.encoder_settings.feasibility_check:
            floor = self._check_feasibility(job)
            if floor is not None:
                return floor

        phases = (
            (Phase.PROBE, self._probe_phase),
            (Phase.BINARY_SEARCH, self._binary_search_phase),
            (Phase.SCALING, self._scaling_phase),
        )

        previous: Optional[PhaseOutcome] = None
        for phase, run in phases:
            if phase is not Phase.PROBE and self._deadline_reached(job):
                logger.warning(
                    f"[{job.job_id}] Time budget exhausted before {phase.value}, "
                    f"returning best result"
                )
                return Phase.DONE, self._build_message(job, reached=False, timed_out=True)

            outcome = run(job, previous)
            if outcome.satisfied:
                return phase, self._build_message(job, reached=True)
            previous = outcome

        closest = job.closest
        reached = closest is not None and job.within_tolerance(closest)
        return Phase.DONE, self._build_message(job, reached=reached)

    def _run_batch(
        self,
        job: SearchJob,
        candidates: Iterable[Tuple[float, float]],
        contender: bool = True,
    ) -> List[QualityTrial]:
        """Encode candidates concurrently and collect every success.

        Failed encodes are logged and dropped. Candidates encoded earlier in
        the job are reused instead of re-encoded.
        """
        batch = dedupe_candidates(candidates)
        reused = [job.encoded[c] for c in batch if c in job.encoded]
        pending = [c for c in batch if c not in job.encoded]
        if contender:
            job.best = select_best(reused, job.target_bytes, job.best)

        logger.debug(
            f"[{job.job_id}] Batch: {', '.join(f'q{q}@{s:g}' for q, s in batch)}"
            f"{f' ({len(reused)} reused)' if reused else ''}"
        )

        futures = [
            (quality, scale_factor, job.pool.submit(
                self.encoder.encode, job.image, quality, job.output_format, scale_factor
            ))
            for quality, scale_factor in pending
        ]
        wait([future for _, _, future in futures])

        trials = list(reused)
        for quality, scale_factor, future in futures:
            try:
                buffer = future.result()
            except Exception as e:
                logger.warning(
                    f"[{job.job_id}] Encode failed at quality {quality}, scale {scale_factor:g}: {e}"
                )
                continue

            if not buffer:
                logger.warning(
                    f"[{job.job_id}] Encoder returned no data at quality {quality}, "
                    f"scale {scale_factor:g}"
                )
                continue

            trial = QualityTrial.from_buffer(quality, scale_factor, bytes(buffer))
            job.record(trial, contender)
            trials.append(trial)

        return trials

    def _check_feasibility(self, job: SearchJob) -> Optional[Tuple[Phase, str]]:
        """Encode the smallest outputs the search can reach.

        Returns:
            A terminal (phase, message) if the target is unreachable,
            None to continue with the regular phases
        """
        smallest_scale = min(SCALE_FACTORS[job.mode])
        floor_trials = self._run_batch(job, [
            (QUALITY_MIN, 1.0),
            (min(SCALING_QUALITIES), smallest_scale),
        ], contender=False)
        if not floor_trials:
            logger.warning(f"[{job.job_id}] Feasibility probe failed, searching anyway")
            return None

        floor = min(trial.byte_size for trial in floor_trials)
        if floor > job.target_bytes + job.tolerance:
            logger.warning(
                f"[{job.job_id}] Target {job.target_bytes} unreachable: "
                f"smallest output is {floor} bytes"
            )
            return Phase.DONE, (
                f"Target {job.target_bytes} bytes is unreachable; "
                f"smallest achievable output is {floor} bytes"
            )
        return None

    def _probe_phase(self, job: SearchJob, previous: Optional[PhaseOutcome]) -> PhaseOutcome:
        """Phase 1: probe qualities around the heuristic estimate."""
        estimated = job.heuristics.estimated_quality
        trials = self._run_batch(job, [(estimated + offset, 1.0) for offset in PROBE_OFFSETS])

        if not trials:
            logger.warning(f"[{job.job_id}] Probe phase produced no results")
            return PhaseOutcome(Phase.PROBE, rounds=1)

        best = select_best(trials, job.target_bytes)
        logger.debug(
            f"[{job.job_id}] Best probe: quality={best.quality}, size={best.byte_size}"
        )
        return PhaseOutcome(Phase.PROBE, best, job.within_tolerance(best), rounds=1)

    def _binary_search_phase(self, job: SearchJob, previous: Optional[PhaseOutcome]) -> PhaseOutcome:
        """Phase 2: binary search probing mid-1, mid, mid+1 per round."""
        seed = previous.best if previous is not None else None
        low, high = self._seed_bounds(job, seed)
        max_rounds = job.heuristics.max_iterations

        rounds = 0
        phase_best: Optional[QualityTrial] = None

        while low <= high:
            if rounds >= max_rounds:
                logger.debug(f"[{job.job_id}] Binary search hit {max_rounds} rounds")
                break
            if self._deadline_reached(job, job.search_deadline):
                logger.warning(f"[{job.job_id}] Binary search stopped by time budget")
                break

            mid = (low + high) // 2
            trials = self._run_batch(job, [(mid - 1, 1.0), (mid, 1.0), (mid + 1, 1.0)])
            rounds += 1

            if not trials:
                logger.warning(f"[{job.job_id}] Binary search batch failed, abandoning phase")
                break

            batch_best = select_best(trials, job.target_bytes)
            phase_best = select_best([batch_best], job.target_bytes, phase_best)

            if job.within_tolerance(batch_best):
                logger.debug(
                    f"[{job.job_id}] Binary search hit tolerance: "
                    f"{batch_best.byte_size} bytes at quality {batch_best.quality}"
                )
                return PhaseOutcome(Phase.BINARY_SEARCH, batch_best, True, rounds)

            qualities = [trial.quality for trial in trials]
            if batch_best.byte_size > job.target_bytes:
                high = min(qualities) - 1
            else:
                low = max(qualities) + 1

        if phase_best is not None:
            logger.debug(
                f"[{job.job_id}] Binary search best: {phase_best.byte_size} bytes "
                f"at quality {phase_best.quality} after {rounds} rounds"
            )
        return PhaseOutcome(Phase.BINARY_SEARCH, phase_best, False, rounds)

    def _seed_bounds(self, job: SearchJob, seed: Optional[QualityTrial]) -> Tuple[int, int]:
        """Initial (low, high) quality bounds for the binary search."""
        if seed is None:
            center = job.heuristics.estimated_quality
            return (
                normalize_quality(center - SEARCH_WIDEN),
                normalize_quality(center + SEARCH_WIDEN),
            )
        if seed.byte_size > job.target_bytes:
            # Too large - search lower qualities
            return normalize_quality(seed.quality - SEARCH_WIDEN), seed.quality
        return seed.quality, normalize_quality(seed.quality + SEARCH_WIDEN)

    def _scaling_phase(self, job: SearchJob, previous: Optional[PhaseOutcome]) -> PhaseOutcome:
        """Phase 3: try every scale factor at a small fixed quality set."""
        scale_factors: Sequence[float] = SCALE_FACTORS[job.mode]
        trials = self._run_batch(job, [
            (quality, scale_factor)
            for scale_factor in scale_factors
            for quality in SCALING_QUALITIES
        ])

        if not trials:
            logger.warning(f"[{job.job_id}] Progressive scaling produced no results")
            return PhaseOutcome(Phase.SCALING, rounds=1)

        scale_bests = []
        for scale_factor in scale_factors:
            scale_best = select_best(
                (t for t in trials if t.scale_factor == scale_factor), job.target_bytes
            )
            if scale_best is not None:
                logger.debug(
                    f"[{job.job_id}] Scale {scale_factor:g}: {scale_best.byte_size} bytes "
                    f"at quality {scale_best.quality}"
                )
                scale_bests.append(scale_best)

        best = select_best(scale_bests, job.target_bytes)
        satisfied = job.within_tolerance(best)
        if satisfied:
            logger.debug(
                f"[{job.job_id}] Progressive scaling hit tolerance at scale "
                f"{best.scale_factor:g}: {best.byte_size} bytes"
            )
        return PhaseOutcome(Phase.SCALING, best, satisfied, rounds=1)

    def _create_result(self, job: SearchJob, phase: Phase, message: str) -> CompressionResult:
        best = job.closest
        scale_factor = best.scale_factor if best.scale_factor < 1.0 else None

        ssim = None
        if self.encoder_settings.calculate_ssim:
            ssim = self._score_ssim(job, best)

        return CompressionResult(
            buffer=best.buffer,
            quality=best.quality,
            byte_size=best.byte_size,
            dimensions=scaled_dimensions(job.image.width, job.image.height, best.scale_factor),
            exact_match=best.byte_size == job.target_bytes,
            iterations_used=job.trials_used,
            mode=job.mode,
            processing_time_ms=int((self._clock() - job.started_at) * 1000),
            scale_factor=scale_factor,
            target_bytes=job.target_bytes,
            output_format=job.output_format,
            phase=phase,
            message=message,
            ssim_score=ssim,
        )

    def _score_ssim(self, job: SearchJob, trial: QualityTrial) -> Optional[float]:
        """SSIM of the chosen output against the source, None if it cannot be decoded."""
        try:
            with Image.open(BytesIO(trial.buffer)) as compressed:
                compressed.load()
                return calculate_ssim_inmemory(job.image, compressed)
        except OSError as e:
            logger.warning(f"[{job.job_id}] Cannot score SSIM: {e}")
            return None

    def _build_message(self, job: SearchJob, reached: bool, timed_out: bool = False) -> str:
        """Build human-readable result message."""
        best = job.closest
        if best is None:
            return "No output produced"

        size_kb = best.byte_size / 1024
        target_kb = job.target_bytes / 1024

        if reached:
            return f"Compressed to {size_kb:.1f} KB at quality {best.quality}"
        reason = "Time budget exhausted" if timed_out else "Could not reach target"
        return (
            f"{reason} ({target_kb:.1f} KB). "
            f"Best: {size_kb:.1f} KB at quality {best.quality}"
        )
