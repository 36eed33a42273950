"""Custom exceptions for the bucket-relay application."""


class BucketRelayError(Exception):
    """Base exception for all application-specific errors."""

    pass


class ConfigError(BucketRelayError):
    """
    Raised for configuration-related issues.

    Attributes:
        exit_code (int): The process exit status for this class of failure.
    """

    def __init__(self, message: str, exit_code: int = 1) -> None:
        super().__init__(message)
        self.exit_code: int = exit_code


class ListingError(BucketRelayError):
    """Raised when the source keys cannot be enumerated."""

    exit_code: int = 5


class CopyError(BucketRelayError):
    """Raised when a server-side copy of a single object fails."""

    pass


class ConfirmationError(BucketRelayError):
    """Raised when a copied object cannot be confirmed at the destination."""

    pass


class DeadlineExceeded(BucketRelayError):
    """Raised when the batch deadline fires before an operation completes."""

    pass
