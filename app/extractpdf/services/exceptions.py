"""
Shared exceptions for the processing pipeline.
"""


class ProcessingRunError(Exception):
    """
    Raised when a processing run cannot complete.

    ``retryable`` tells the scheduler whether the run may be executed again
    after a backoff delay. Non-retryable errors have already been recorded
    as a terminal ``failed`` state by the run executor.
    """

    def __init__(self, message: str, *, retryable: bool = False):
        super().__init__(message)
        self.message = message
        self.retryable = retryable


class DocumentLoadError(ProcessingRunError):
    """Raised when stored bytes cannot be turned into any document page."""


class TokenLimitExceededError(ProcessingRunError):
    """Raised when the estimated token usage of a run is above its safety limit."""

    def __init__(self, message: str, *, estimate: int, limit: int):
        super().__init__(message, retryable=False)
        self.estimate = estimate
        self.limit = limit
