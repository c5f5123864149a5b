"""
Error taxonomy for the draw reconciliation pipeline.

Adapters raise these; the reconciler converts them into per-date warnings and
the orchestrators into counters. Only ConfigurationError is allowed to abort a
whole batch run.
"""

from typing import Optional


class LotterySyncError(Exception):
    """Base class for every pipeline error."""


class InvalidDate(LotterySyncError, ValueError):
    """Malformed date input. Caller error, never retried."""


class ConfigurationError(LotterySyncError, ValueError):
    """Invalid job configuration (e.g. an empty window)."""


class UpstreamHttpError(LotterySyncError):
    """Non-success HTTP status from an upstream source."""

    def __init__(self, message: str, status_code: Optional[int] = None, url: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.url = url


class NotADocument(LotterySyncError):
    """Downloaded bytes do not start with the PDF magic header."""


class NoCandidateAvailable(LotterySyncError):
    """None of the mirror candidates could be downloaded."""

    def __init__(self, message: str, last_error: Optional[BaseException] = None):
        super().__init__(message)
        self.last_error = last_error


class RecognitionFailure(LotterySyncError):
    """OCR submission, polling or read-back failed."""


class PersistenceFailure(LotterySyncError):
    """Record store read or write failed."""
