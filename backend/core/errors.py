"""
Error taxonomy shared by the generation pipeline and chat sessions.
"""
from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Classification of a failed operation."""
    TRANSIENT_EMPTY_OUTPUT = "TRANSIENT_EMPTY_OUTPUT"
    GENERATION_FAILURE = "GENERATION_FAILURE"
    CHAT_FAILURE = "CHAT_FAILURE"
    PARTIAL_UPLOAD_FAILURE = "PARTIAL_UPLOAD_FAILURE"
    PERSISTENCE_FAILURE = "PERSISTENCE_FAILURE"


class EmptyOutputError(Exception):
    """Raised by a streaming client when the model produced no usable output.

    ``code`` is ``EMPTY_CONTENT`` when text arrived but was too short, or
    ``EMPTY_STREAM`` when no chunk arrived at all.
    """

    def __init__(self, message: str, code: str = "EMPTY_CONTENT"):
        super().__init__(message)
        self.code = code


class GenerationError(Exception):
    """A generation attempt failed; ``kind`` decides whether it is retryable."""

    def __init__(self, kind: ErrorKind, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.kind = kind
        self.cause = cause

    @property
    def retryable(self) -> bool:
        return self.kind == ErrorKind.TRANSIENT_EMPTY_OUTPUT


class OllamaError(Exception):
    """Ollama API error (HTTP failure or malformed stream)."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class StreamIncompleteError(Exception):
    """A stream ended without delivering its terminal event."""


# Caller errors: the orchestration layer refuses the request outright.

class GenerationInProgressError(Exception):
    """A generation is already running for this orchestrator."""


class InvalidTransitionError(Exception):
    """A state machine was asked to take an edge it does not have."""


class SessionBusyError(Exception):
    """A chat turn is already in flight for this session."""


class QuizValidationError(Exception):
    """A quiz action was attempted before its preconditions held."""
