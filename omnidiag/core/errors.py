"""
omnidiag/core/errors.py
-----------------------
Exception taxonomy shared by the clients, the speech adapter and the session.
"""


class OmniDiagError(Exception):
    """Base class for every error raised by OmniDiag."""
    pass


class MissingCredentialError(OmniDiagError):
    """Raised at startup when the upstream credential is not configured."""
    pass


class EmptySubmissionError(OmniDiagError):
    """Raised when a case is submitted with no description, image or transcript."""
    pass


class DiagnosticError(OmniDiagError):
    """Raised when the report call fails or returns an invalid report."""
    pass


class ChatError(OmniDiagError):
    """Raised when a follow-up reply cannot be streamed."""
    pass


class CapabilityUnavailable(OmniDiagError):
    """Raised when speech recognition is not available on this runtime."""
    pass


class RecognitionError(OmniDiagError):
    """Raised when the recognition engine fails while recording."""
    pass


class HistoryEntryNotFound(OmniDiagError, KeyError):
    """Raised when a history entry id does not exist in the session."""

    def __str__(self) -> str:
        return Exception.__str__(self)
