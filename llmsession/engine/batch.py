"""Batch lifecycle: one transient engine batch per decode call."""

from __future__ import annotations

import contextlib
import logging
from dataclasses import dataclass
from typing import Any, Iterator, Sequence

from .backends.base import BaseBackend
from .errors import ContextOverflow, DecodeFailure

logger = logging.getLogger(__name__)

# Engine status codes (llama.cpp convention); anything else is reported as unknown.
_DECODE_ERRORS: dict[int, str] = {
    1: "No KV slot available for the batch",
    2: "Decoding aborted by the engine",
    -1: "Invalid input batch",
    -2: "Could not allocate space for the compute graph",
    -3: "Graph computation failed internally",
}


@dataclass(frozen=True)
class DecodeResult:
    n_tokens: int
    n_past: int


class BatchManager:
    """Acquire a batch, decode it, release it - on every exit path."""

    def __init__(self, backend: BaseBackend, *, context_length: int) -> None:
        self._backend = backend
        self._context_length = int(context_length)
        self._live_batches = 0

    @property
    def context_length(self) -> int:
        return self._context_length

    @property
    def live_batches(self) -> int:
        """Batches currently allocated (0 whenever no decode is running)."""
        return self._live_batches

    def remaining(self, context: Any) -> int:
        """Free positions left in the context window."""
        return self._context_length - self._backend.position(context)

    @contextlib.contextmanager
    def batch(self, context: Any, tokens: Sequence[int]) -> Iterator[Any]:
        """Scoped batch allocation sized for `tokens`."""
        try:
            handle = self._backend.create_batch(context, tokens)
        except Exception as exc:
            raise DecodeFailure(f"Failed to allocate a batch of {len(tokens)} tokens: {exc}") from exc

        self._live_batches += 1
        try:
            yield handle
        finally:
            self._live_batches -= 1
            try:
                self._backend.free_batch(handle)
            except Exception:
                logger.warning("Failed to free batch", exc_info=True)

    def decode(self, context: Any, tokens: Sequence[int]) -> DecodeResult:
        """Decode `tokens` at the context's current position.

        Raises:
            ContextOverflow: If the tokens do not fit in the remaining window.
                Checked before any engine call, so the context is untouched.
            DecodeFailure: If the batch is empty or the engine reports an error.
        """
        n_tokens = len(tokens)
        if n_tokens == 0:
            raise DecodeFailure(_DECODE_ERRORS[-1] + " (no tokens)")

        n_past = self._backend.position(context)
        if n_past + n_tokens > self._context_length:
            raise ContextOverflow(
                f"{n_tokens} tokens at position {n_past} exceed the context length "
                f"limit of {self._context_length}."
            )

        with self.batch(context, tokens) as handle:
            try:
                code = self._backend.decode(context, handle)
            except Exception as exc:
                raise DecodeFailure(f"Engine decode raised {type(exc).__name__}: {exc}") from exc

        if code != 0:
            message = _DECODE_ERRORS.get(code, "Unknown internal error")
            raise DecodeFailure(f"Engine decode failed (code {code}): {message}")

        result = DecodeResult(n_tokens=n_tokens, n_past=self._backend.position(context))
        logger.debug("Decoded %d tokens, n_past=%d", n_tokens, result.n_past)
        return result
