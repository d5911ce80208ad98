"""Configuration for the compression pipeline.

Values live in plain dataclasses with sensible defaults. ``load_config`` reads
an optional INI file and overrides whatever options it finds.
"""

from configparser import ConfigParser, Error as ConfigParserError
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Dict, Optional, Tuple, Union

from .errors import ConfigError

MIB = 1024 * 1024


@dataclass
class CompressionSettings:
    """Targets, tolerances and per-job limits.

    Attributes:
        target_bytes: Default output size in bytes
        tolerance_balanced: Allowed distance from target in balanced mode
        tolerance_exact: Allowed distance from target in exact mode
        max_file_size: Largest accepted input in bytes
        max_wall_time_balanced: Search budget in seconds for balanced mode
        max_wall_time_exact: Search budget in seconds for exact mode
        max_concurrent_jobs: Admission ceiling
        memory_limit_per_job: Ceiling on encoded bytes accumulated by one job
    """
    target_bytes: int = 80_000
    tolerance_balanced: int = 10_000
    tolerance_exact: int = 0
    max_file_size: int = 25 * MIB
    max_wall_time_balanced: float = 30.0
    max_wall_time_exact: float = 45.0
    max_concurrent_jobs: int = 20
    memory_limit_per_job: int = 100 * MIB

    def __post_init__(self):
        """Validate settings."""
        if self.target_bytes < 1:
            raise ConfigError(f"target_bytes must be >= 1, got {self.target_bytes}")
        if self.tolerance_balanced < 0 or self.tolerance_exact < 0:
            raise ConfigError("tolerances must be >= 0")
        if self.max_file_size < 1:
            raise ConfigError(f"max_file_size must be >= 1, got {self.max_file_size}")
        if self.max_wall_time_balanced <= 0 or self.max_wall_time_exact <= 0:
            raise ConfigError("wall time budgets must be positive")
        if self.max_concurrent_jobs < 1:
            raise ConfigError(
                f"max_concurrent_jobs must be >= 1, got {self.max_concurrent_jobs}"
            )
        if self.memory_limit_per_job < 1:
            raise ConfigError("memory_limit_per_job must be >= 1")

    def tolerance_for(self, mode) -> int:
        """Get the tolerance for a compression mode."""
        return self.tolerance_exact if _mode_value(mode) == "exact" else self.tolerance_balanced

    def wall_time_for(self, mode) -> float:
        """Get the wall-clock budget in seconds for a compression mode."""
        if _mode_value(mode) == "exact":
            return self.max_wall_time_exact
        return self.max_wall_time_balanced


@dataclass
class AdaptiveSettings:
    """Inputs of the heuristics engine.

    Attributes:
        small_image_threshold: Inputs below this many bytes use the small tier
        medium_image_threshold: Inputs below this many bytes use the medium tier
        max_iterations_small: Base binary-search rounds for small inputs
        max_iterations_medium: Base binary-search rounds for medium inputs
        max_iterations_large: Base binary-search rounds for large inputs
        quality_min: Lower bound of the estimated starting quality
        quality_max: Upper bound of the estimated starting quality
        parallel_tests: Ceiling on concurrent probes per job
    """
    small_image_threshold: int = 1 * MIB
    medium_image_threshold: int = 5 * MIB
    max_iterations_small: int = 5
    max_iterations_medium: int = 8
    max_iterations_large: int = 12
    quality_min: int = 60
    quality_max: int = 95
    parallel_tests: int = 4

    def __post_init__(self):
        """Validate settings."""
        if not 0 < self.small_image_threshold <= self.medium_image_threshold:
            raise ConfigError("size thresholds must satisfy 0 < small <= medium")
        for name in ("max_iterations_small", "max_iterations_medium", "max_iterations_large"):
            if getattr(self, name) < 1:
                raise ConfigError(f"{name} must be >= 1")
        if not 1 <= self.quality_min <= self.quality_max <= 100:
            raise ConfigError(
                f"quality bounds must satisfy 1 <= min <= max <= 100, "
                f"got {self.quality_min}..{self.quality_max}"
            )
        if self.parallel_tests < 2:
            raise ConfigError(f"parallel_tests must be >= 2, got {self.parallel_tests}")

    @property
    def quality_bounds(self) -> Tuple[int, int]:
        """Get (quality_min, quality_max)."""
        return (self.quality_min, self.quality_max)


@dataclass
class CacheSettings:
    """Result cache lifetime.

    Attributes:
        ttl_seconds: Age after which an entry is stale
        cleanup_interval: Run a full sweep every N jobs
    """
    ttl_seconds: float = 24 * 60 * 60
    cleanup_interval: int = 100

    def __post_init__(self):
        """Validate settings."""
        if self.ttl_seconds <= 0:
            raise ConfigError(f"ttl_seconds must be positive, got {self.ttl_seconds}")
        if self.cleanup_interval < 1:
            raise ConfigError(f"cleanup_interval must be >= 1, got {self.cleanup_interval}")


@dataclass
class EncoderSettings:
    """Encoder and search behaviour.

    Attributes:
        effort: Encoder effort (0-10, higher = slower/better)
        feasibility_check: Probe the smallest reachable output before searching
        conservative_search_fraction: Share of the wall budget the binary
            search may use when the heuristics pick the conservative strategy
        calculate_ssim: Score the final output against the source
    """
    effort: int = 4
    feasibility_check: bool = True
    conservative_search_fraction: float = 0.75
    calculate_ssim: bool = False

    def __post_init__(self):
        """Validate settings."""
        if not 0 <= self.effort <= 10:
            raise ConfigError(f"effort must be 0-10, got {self.effort}")
        if not 0 < self.conservative_search_fraction <= 1:
            raise ConfigError("conservative_search_fraction must be in (0, 1]")


@dataclass
class PixelPressConfig:
    """Complete configuration consumed by the service."""
    compression: CompressionSettings = field(default_factory=CompressionSettings)
    adaptive: AdaptiveSettings = field(default_factory=AdaptiveSettings)
    cache: CacheSettings = field(default_factory=CacheSettings)
    encoder: EncoderSettings = field(default_factory=EncoderSettings)
    log_level: str = "INFO"
    log_file: Optional[Path] = None


# INI section name -> (attribute on PixelPressConfig, settings class)
_SECTIONS: Dict[str, Tuple[str, type]] = {
    "Compression": ("compression", CompressionSettings),
    "Adaptive": ("adaptive", AdaptiveSettings),
    "Cache": ("cache", CacheSettings),
    "Encoder": ("encoder", EncoderSettings),
}


def _mode_value(mode) -> str:
    return getattr(mode, "value", mode)


def _read_section(parser: ConfigParser, section: str, settings_cls):
    """Build one settings dataclass from an INI section, keeping defaults."""
    kwargs = {}
    if not parser.has_section(section):
        return settings_cls()

    for f in fields(settings_cls):
        if not parser.has_option(section, f.name):
            continue
        try:
            if f.type in (bool, "bool"):
                kwargs[f.name] = parser.getboolean(section, f.name)
            elif f.type in (int, "int"):
                kwargs[f.name] = parser.getint(section, f.name)
            elif f.type in (float, "float"):
                kwargs[f.name] = parser.getfloat(section, f.name)
            else:
                kwargs[f.name] = parser.get(section, f.name)
        except ValueError as e:
            raise ConfigError(f"[{section}] {f.name}: {e}") from e

    return settings_cls(**kwargs)


def load_config(path: Optional[Union[str, Path]] = None) -> PixelPressConfig:
    """
    Load configuration from an INI file.

    Missing files, sections and options fall back to defaults.

    Args:
        path: Path to the INI file (None = defaults only)

    Returns:
        PixelPressConfig instance

    Raises:
        ConfigError: If the file is malformed or a value is invalid
    """
    if path is None:
        return PixelPressConfig()

    config_path = Path(path)
    if not config_path.exists():
        return PixelPressConfig()

    parser = ConfigParser()
    try:
        parser.read(config_path, encoding="utf-8")
    except ConfigParserError as e:
        raise ConfigError(f"Cannot parse {config_path}: {e}") from e

    settings = {
        attr: _read_section(parser, section, settings_cls)
        for section, (attr, settings_cls) in _SECTIONS.items()
    }

    log_file = parser.get("Logging", "log_file", fallback="").strip()

    return PixelPressConfig(
        log_level=parser.get("Logging", "level", fallback="INFO"),
        log_file=Path(log_file) if log_file else None,
        **settings,
    )
