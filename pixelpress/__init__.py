"""PixelPress: compress JPEG/PNG images to WebP or AVIF at a byte-size target."""

from .config import PixelPressConfig, load_config
from .errors import (
    PixelPressError,
    ValidationError,
    ServerBusyError,
    EncoderError,
    ResourceLimitError,
    CompressionFailedError,
    ConfigError,
)
from .compression import (
    CompressionMode,
    CompressionResult,
    CompressionService,
    OutputFormat,
)

__version__ = "1.0.0"

__all__ = [
    'PixelPressConfig',
    'load_config',
    'PixelPressError',
    'ValidationError',
    'ServerBusyError',
    'EncoderError',
    'ResourceLimitError',
    'CompressionFailedError',
    'ConfigError',
    'CompressionMode',
    'CompressionResult',
    'CompressionService',
    'OutputFormat',
]
