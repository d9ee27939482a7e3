"""Shared error classes for the scan pipeline and its repositories."""

from __future__ import annotations


class ScanPipelineError(RuntimeError):
    """Base exception raised by the scan pipeline."""

    code_default = "500_INTERNAL"

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        self.code = code or self.code_default


class InvalidRequestError(ScanPipelineError):
    """Raised when an invocation is missing required input."""

    code_default = "422_INVALID_REQUEST"


class ScanNotFoundError(ScanPipelineError):
    """Raised when the referenced scan does not exist."""

    code_default = "404_SCAN_NOT_FOUND"


class ScanAlreadyProcessedError(ScanPipelineError):
    """Raised when a scan is terminal or already being processed."""

    code_default = "409_SCAN_ALREADY_PROCESSED"


class ServiceUnavailableError(ScanPipelineError):
    """Raised when the fingerprint extraction service is unreachable or malformed."""

    code_default = "502_EXTRACTION_UNAVAILABLE"


class SourceDegradedError(ScanPipelineError):
    """Raised when a single external source fails; never fatal to a run."""

    code_default = "SOURCE_DEGRADED"


class ParseFailureError(SourceDegradedError):
    """Raised when a semi-structured AI response cannot be parsed into candidates."""

    code_default = "SOURCE_PARSE_FAILURE"


class PersistenceFailureError(ScanPipelineError):
    """Raised when the repository fails to read or write scan state."""

    code_default = "500_PERSISTENCE_FAILURE"
