"""Exception types raised by the compression pipeline."""


class PixelPressError(Exception):
    """Base class for all PixelPress errors."""
    pass


class ValidationError(PixelPressError):
    """Input rejected before any encoding work (empty, oversized, bad header)."""
    pass


class ServerBusyError(PixelPressError):
    """Concurrency ceiling reached; the caller should retry later."""
    pass


class EncoderError(PixelPressError):
    """A single encode call failed."""
    pass


class ResourceLimitError(PixelPressError):
    """Per-job memory ceiling exceeded."""
    pass


class CompressionFailedError(PixelPressError):
    """No trial succeeded across all search phases."""
    pass


class ConfigError(PixelPressError, ValueError):
    """Invalid configuration value."""
    pass
