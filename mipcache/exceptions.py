"""
Exceptions raised by the thumbnail pipeline.
"""


class ThumbnailError(Exception):
    """Base class for thumbnail generation failures."""
    pass


class SourceTooLargeError(ThumbnailError):
    """Raised when a source asset exceeds the configured byte ceiling."""

    def __init__(self, limit: int):
        super().__init__(f"source exceeds {limit} bytes")
        self.limit = limit


class EncodeError(ThumbnailError):
    """Raised when the codec cannot encode a rendition at any size."""
    pass


class CodecUnavailableError(ThumbnailError):
    """Raised when no codec capability is configured."""
    pass


class ConfigurationError(Exception):
    """Raised when thumbnail configuration is invalid."""
    pass
