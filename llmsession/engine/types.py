"""Session request and result types.

These types are used by the session, the stream and the backends.
They are independent of any HTTP/API layer.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Literal


FinishReason = Literal["stop", "length", "cancelled", "error"]


class GenerationState(enum.Enum):
    """Lifecycle of a single generation stream."""

    IDLE = "idle"
    GENERATING = "generating"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (GenerationState.COMPLETED, GenerationState.CANCELLED, GenerationState.FAILED)


@dataclass(frozen=True)
class SamplingParameters:
    """Per-call sampling configuration.

    Notes:
    - `repeat_penalty == 1.0` disables the repeat penalty.
    - `top_k == 0` disables top-k filtering; `top_p == 1.0` disables nucleus filtering.
    - `temperature == 0` selects the arg-max token directly.
    - A fixed `seed` makes sampling reproducible.
    """

    temperature: float = 0.8
    repeat_penalty: float = 1.1
    top_p: float = 0.95
    top_k: int = 40
    penalty_last_n: int = 64
    seed: int | None = None

    def validate(self) -> None:
        if self.temperature < 0:
            raise ValueError(f"'temperature' must be >= 0, got {self.temperature}.")
        if self.repeat_penalty < 0:
            raise ValueError(f"'repeat_penalty' must be >= 0, got {self.repeat_penalty}.")
        if not 0 < self.top_p <= 1:
            raise ValueError(f"'top_p' must be in (0, 1], got {self.top_p}.")
        if self.top_k < 0:
            raise ValueError(f"'top_k' must be >= 0, got {self.top_k}.")
        if self.penalty_last_n < 0:
            raise ValueError(f"'penalty_last_n' must be >= 0, got {self.penalty_last_n}.")

    @classmethod
    def greedy(cls, **overrides: Any) -> "SamplingParameters":
        """Deterministic arg-max decoding without a repeat penalty."""
        base: dict[str, Any] = {"temperature": 0.0, "repeat_penalty": 1.0, "top_k": 0, "top_p": 1.0}
        base.update(overrides)
        return cls(**base)


@dataclass(frozen=True)
class ChatMessage:
    """A single message of a chat-formatted prompt."""

    role: Literal["system", "user", "assistant"]
    content: str = ""


@dataclass(frozen=True)
class Prompt:
    """Generation input: plain text, or chat messages rendered by the model's template."""

    text: str = ""
    messages: tuple[ChatMessage, ...] = ()

    @classmethod
    def chat(cls, messages: list[ChatMessage] | tuple[ChatMessage, ...]) -> "Prompt":
        return cls(messages=tuple(messages))

    @property
    def is_chat(self) -> bool:
        return bool(self.messages)


@dataclass(frozen=True)
class ModelInfo:
    """Read-only metadata about a loaded model."""

    model_path: str
    model_family: str
    dtype: str
    device: str
    embedding_dimension: int
    max_context_length: int
    vocab_size: int | None = None
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Usage:
    prompt_tokens: int
    completion_tokens: int

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


@dataclass(frozen=True)
class Timing:
    prefill_s: float | None = None
    decode_s: float | None = None
    total_s: float | None = None
    tok_per_s: float | None = None


@dataclass(frozen=True)
class Completion:
    """Result of a non-streaming generation."""

    text: str
    finish_reason: FinishReason
    usage: Usage
    timing: Timing
    seed: int
