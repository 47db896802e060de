"""
Standardised error handling for ConversionClient.
"""

from conversion_client.core.constants import ErrorCode, RETRYABLE_ERRORS


class ConversionClientError(Exception):
    """Raised when the client encounters a known error condition."""

    def __init__(self, code: str, message: str, retryable: bool | None = None):
        self.code = code
        self.message = message
        # auto-detect retryable from code if not explicitly set
        self.retryable = retryable if retryable is not None else (code in RETRYABLE_ERRORS)
        super().__init__(f"[{code}] {message}")


class IdentityError(ConversionClientError):
    """An update targeted an identifier the store does not know."""

    def __init__(self, identifier: str, message: str | None = None):
        self.identifier = identifier
        super().__init__(ErrorCode.UNKNOWN_IDENTIFIER,
                         message or f"No task record for identifier {identifier!r}")


class SubmissionError(ConversionClientError):
    """The remote service rejected a file."""

    def __init__(self, message: str, code: str = ErrorCode.SUBMISSION_REJECTED,
                 retryable: bool | None = None):
        super().__init__(code, message, retryable)


class ReconciliationAmbiguity(ConversionClientError):
    """A fuzzy match found several equally good local candidates."""

    def __init__(self, remote_id: str, candidate_ids: list[str]):
        self.remote_id = remote_id
        self.candidate_ids = list(candidate_ids)
        super().__init__(
            ErrorCode.AMBIGUOUS_MATCH,
            f"Remote task {remote_id} fuzzy-matches {len(candidate_ids)} local records",
        )


class IntegrityMismatch(ConversionClientError):
    """A file the store believes is downloaded is gone from disk."""

    def __init__(self, identifier: str, path: str):
        self.identifier = identifier
        self.path = path
        super().__init__(ErrorCode.OUTPUT_MISSING,
                         f"Downloaded output for {identifier} missing: {path}")


class TransportFailure(ConversionClientError):
    """Network, timeout, or unexpected HTTP response from the remote service."""

    def __init__(self, code: str, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(code, message)


def is_retryable(code: str) -> bool:
    return code in RETRYABLE_ERRORS
