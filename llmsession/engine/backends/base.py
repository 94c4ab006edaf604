"""Base backend interface: the capabilities a Session consumes from an inference engine."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Sequence

from ..types import ChatMessage, ModelInfo


class BaseBackend(ABC):
    """
    Abstract base class for inference engine backends.

    A backend wraps one native engine. Model, context and batch handles are
    opaque to the session: it only passes them back into the backend.

    Thread Safety:
        Backends are NOT thread-safe with respect to a single context. The
        Session serializes every call that touches a context.
    """

    family: str = "base"

    # -------------------------------------------------------------------------
    # Process-wide lifecycle
    # -------------------------------------------------------------------------

    def initialize(self) -> None:
        """
        One-time, process-wide native initialization.

        Called at most once per backend class (see `llmsession.runtime`).
        Default implementation does nothing.
        """
        pass

    def shutdown(self) -> None:
        """
        Process-wide teardown, run at interpreter exit.

        Default implementation does nothing.
        """
        pass

    # -------------------------------------------------------------------------
    # Model / context
    # -------------------------------------------------------------------------

    @abstractmethod
    def load_model(self, model_path: str, **kwargs) -> Any:
        """
        Load model weights (and tokenizer) from a path or hub id.

        Raises:
            ModelLoadFailure: If the model cannot be loaded.
        """
        pass

    @abstractmethod
    def model_info(self, model: Any) -> ModelInfo:
        """Return read-only metadata about a loaded model."""
        pass

    @abstractmethod
    def create_context(self, model: Any, *, context_length: int) -> Any:
        """Create the mutable per-session state (KV cache, position, mode)."""
        pass

    def free_context(self, context: Any) -> None:
        """Release a context. Default implementation does nothing."""
        pass

    def free_model(self, model: Any) -> None:
        """Release a model. Default implementation does nothing."""
        pass

    # -------------------------------------------------------------------------
    # Text <-> tokens
    # -------------------------------------------------------------------------

    @abstractmethod
    def tokenize(self, context: Any, text: str, *, add_special: bool = True) -> list[int]:
        """
        Convert text to token ids.

        Raises:
            TokenizationFailure: If the text cannot be tokenized.
        """
        pass

    @abstractmethod
    def detokenize(self, model: Any, tokens: Sequence[int]) -> str:
        """Convert token ids back to text (special tokens skipped)."""
        pass

    def render_prompt(self, model: Any, messages: Sequence[ChatMessage]) -> str:
        """
        Render chat messages into prompt text using the model's chat template.

        Default implementation is a plain role-prefixed transcript.
        """
        lines = [f"{m.role}: {m.content}" for m in messages]
        lines.append("assistant:")
        return "\n".join(lines)

    @abstractmethod
    def is_end_of_generation(self, model: Any, token: int) -> bool:
        """Return True for end-of-sequence / end-of-turn tokens."""
        pass

    # -------------------------------------------------------------------------
    # Context state
    # -------------------------------------------------------------------------

    @abstractmethod
    def set_embedding_mode(self, context: Any, enabled: bool) -> None:
        """Switch the context between generation and embedding output."""
        pass

    @abstractmethod
    def clear_cache(self, context: Any) -> None:
        """Drop the KV cache and reset the sequence position to 0."""
        pass

    @abstractmethod
    def position(self, context: Any) -> int:
        """
        Position of the next decoded token.

        In generation mode this is the number of tokens held in the KV cache.
        Embedding decodes never read the cache, so it is 0 in embedding mode.
        """
        pass

    # -------------------------------------------------------------------------
    # Decode
    # -------------------------------------------------------------------------

    @abstractmethod
    def create_batch(self, context: Any, tokens: Sequence[int]) -> Any:
        """Allocate a batch holding `tokens` at the context's next positions."""
        pass

    @abstractmethod
    def free_batch(self, batch: Any) -> None:
        """Release a batch created by `create_batch`."""
        pass

    @abstractmethod
    def decode(self, context: Any, batch: Any) -> int:
        """
        Run one forward pass over the batch.

        Returns:
            0 on success, a non-zero engine status code otherwise.
        """
        pass

    @abstractmethod
    def get_logits(self, context: Any) -> Any:
        """Logits for the last decoded position (1-D torch tensor), or None."""
        pass

    @abstractmethod
    def get_embeddings(self, context: Any) -> Any:
        """Pooled embedding of the last decode in embedding mode, or None."""
        pass
