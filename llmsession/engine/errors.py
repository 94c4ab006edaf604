"""Session error taxonomy.

Every failure reported by a backend is translated into one of these kinds
before it leaves the session boundary. Cancellation is not an error: it is a
terminal state of a generation stream.
"""

from __future__ import annotations


class SessionError(Exception):
    """Base class for errors raised by a Session.

    Attributes:
        detail: Human-readable diagnostic.
        operation: Public operation that was running ("generate", "embed"),
            filled in by the Session when the error crosses its boundary.
    """

    def __init__(self, detail: str = "", *, operation: str | None = None) -> None:
        super().__init__(detail)
        self.detail = detail
        self.operation = operation

    def __str__(self) -> str:
        if self.operation:
            return f"{self.operation}: {self.detail}"
        return self.detail


class ModelLoadFailure(SessionError):
    """The model could not be loaded; the session is unusable."""


class ModelNotLoaded(SessionError):
    """An operation was attempted on a session without a loaded model/context."""


ContextNotReady = ModelNotLoaded


class TokenizationFailure(SessionError):
    """The input could not be tokenized (or tokenized to nothing)."""


class ContextOverflow(SessionError):
    """The token sequence does not fit in the context window."""


class DecodeFailure(SessionError):
    """The engine reported an internal failure during decode."""


class EmbeddingExtractionFailure(SessionError):
    """The engine produced no usable embedding vector."""


class InvalidEmbeddingDimension(SessionError):
    """The engine vector length differs from the model's declared dimension."""

    def __init__(self, expected: int, actual: int, *, operation: str | None = None) -> None:
        super().__init__(
            f"Embedding dimension mismatch: model declares {expected}, engine returned {actual}. "
            "Is an embedding model loaded?",
            operation=operation,
        )
        self.expected = expected
        self.actual = actual
