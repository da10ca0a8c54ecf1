"""
Exception types for store and release analytics operations.
"""


class ReleaseHealthException(Exception):
    """Base exception for all release health errors."""

    code = "internal_error"
    retryable = False


class InvalidRequestException(ReleaseHealthException):
    """Raised when the caller sends a request that cannot be served."""

    code = "invalid_request"


class StoreUnavailableException(ReleaseHealthException):
    """Raised when the backing store cannot be reached or a query fails."""

    code = "store_unavailable"
    retryable = True


class AuthenticationException(ReleaseHealthException):
    """Raised when the ingestion key is missing or does not match."""

    code = "unauthorized"
