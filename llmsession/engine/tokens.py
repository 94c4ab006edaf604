"""Token helpers shared by generation and embedding."""

from __future__ import annotations

from typing import Any

from .backends.base import BaseBackend
from .errors import SessionError, TokenizationFailure


def tokenize(backend: BaseBackend, context: Any, text: str, *, add_special: bool) -> list[int]:
    """Tokenize through the backend, translating any failure to `TokenizationFailure`."""
    try:
        tokens = backend.tokenize(context, text, add_special=add_special)
    except SessionError:
        raise
    except Exception as exc:
        raise TokenizationFailure(f"Tokenizer raised {type(exc).__name__}: {exc}") from exc

    if not tokens:
        raise TokenizationFailure(f"Text tokenized to an empty sequence: {text[:32]!r}")
    return [int(t) for t in tokens]


class IncrementalDetokenizer:
    """Turns a growing list of token ids into text deltas.

    Detokenizing the whole completion and diffing keeps multi-token characters
    and tokenizer-inserted spaces intact. A trailing U+FFFD means an incomplete
    UTF-8 sequence, so that text is held back until more tokens arrive.
    """

    def __init__(self, backend: BaseBackend, model: Any) -> None:
        self._backend = backend
        self._model = model
        self._tokens: list[int] = []
        self._emitted = ""

    @property
    def text(self) -> str:
        return self._emitted

    def push(self, token: int) -> str:
        self._tokens.append(int(token))
        text = self._backend.detokenize(self._model, self._tokens)
        if text.endswith("�"):
            return ""
        # Emitted text is never retracted; a rewrite of earlier text only affects length.
        delta = text[len(self._emitted) :]
        self._emitted = text
        return delta
