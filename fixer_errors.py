"""
Exceptions raised by the photo date fixer.

Every error is fatal: the first one raised aborts the whole batch.
"""


class PhotoDateFixerError(Exception):
    """Base exception for the photo date fixer."""

    pass


class ConfigurationError(PhotoDateFixerError):
    """Exception raised when command-line input cannot be turned into a run configuration."""

    pass


class TimeParsingError(ConfigurationError):
    """Exception raised when a duration or timestamp cannot be parsed."""

    pass


class MetadataError(PhotoDateFixerError):
    """Exception raised when a file has no readable EXIF capture timestamp."""

    pass


class ProcessingError(PhotoDateFixerError):
    """Exception raised when a corrected file cannot be encoded or written."""

    pass
