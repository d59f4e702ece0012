"""
Maps failures of a generation attempt to an ErrorKind.
"""
from core.errors import EmptyOutputError, ErrorKind, GenerationError, StreamIncompleteError

EMPTY_OUTPUT_CODES = frozenset({"EMPTY_CONTENT", "EMPTY_STREAM"})


class ErrorClassifier:
    """Decides whether a failed attempt may be retried automatically.

    Only empty output is retryable; every other failure, model or network,
    is treated as a generation failure needing a manual restart.
    """

    def classify(self, error: BaseException) -> ErrorKind:
        if isinstance(error, GenerationError):
            return error.kind
        if isinstance(error, (EmptyOutputError, StreamIncompleteError)):
            return ErrorKind.TRANSIENT_EMPTY_OUTPUT
        if getattr(error, "code", None) in EMPTY_OUTPUT_CODES:
            return ErrorKind.TRANSIENT_EMPTY_OUTPUT
        return ErrorKind.GENERATION_FAILURE

    def wrap(self, error: BaseException) -> GenerationError:
        """Classify and wrap, keeping the original as ``cause``."""
        if isinstance(error, GenerationError):
            return error
        kind = self.classify(error)
        if kind == ErrorKind.TRANSIENT_EMPTY_OUTPUT:
            message = "The model returned an empty study guide. This usually resolves on retry."
        else:
            message = f"Analysis failed: {error}"
        return GenerationError(kind, message, cause=error)
