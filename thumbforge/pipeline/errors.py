"""
Error taxonomy for the thumbnail pipeline.

Entitlement, validation and provider outcomes are carried as typed results
(see ``ErrorCode`` on the result models).  The exceptions below are raised
for the cases the HTTP layer maps straight to a status code.
"""

from enum import Enum


class ErrorCode(str, Enum):
    ENTITLEMENT_DENIED = "ENTITLEMENT_DENIED"
    NOT_FOUND = "NOT_FOUND"
    FORBIDDEN = "FORBIDDEN"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    PROVIDER_ERROR = "PROVIDER_ERROR"
    TIMEOUT = "TIMEOUT"
    NO_OUTPUT_PRODUCED = "NO_OUTPUT_PRODUCED"
    PERSISTENCE_ERROR = "PERSISTENCE_ERROR"


# Upstream failures the caller can simply retry
RETRYABLE_CODES = {
    ErrorCode.PROVIDER_ERROR,
    ErrorCode.TIMEOUT,
    ErrorCode.NO_OUTPUT_PRODUCED,
}

RETRY_MESSAGE = "Thumbnail generation failed. Please try again."


class NotFoundError(LookupError):
    """Missing user, session or result."""


class ForbiddenError(PermissionError):
    """Admin-protected action attempted on an admin, or foreign ownership."""


class PersistenceError(RuntimeError):
    """The record store rejected or failed a read/write."""


class ProviderFailure(RuntimeError):
    """Raised by search/fetch helpers; never escapes the pipeline."""

    def __init__(self, code: ErrorCode, message: str):
        super().__init__(message)
        self.code = code
