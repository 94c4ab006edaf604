"""Context mode controller.

A context is either generating (the default, idle state) or extracting
embeddings. Switching to embedding mode requires holding a `ModePermit`,
obtained through the scoped `embedding_mode()` acquisition, which puts the
context back into generation mode on every exit path.
"""

from __future__ import annotations

import contextlib
import enum
import logging
import threading
from dataclasses import dataclass
from typing import Any, Iterator

from .backends.base import BaseBackend

logger = logging.getLogger(__name__)


class ContextMode(enum.Enum):
    GENERATION = "generation"
    EMBEDDING = "embedding"


@dataclass(frozen=True)
class ModePermit:
    """Proof that the holder owns the context in `mode`."""

    mode: ContextMode
    context: Any


class ModeController:
    def __init__(self, backend: BaseBackend, context: Any) -> None:
        self._backend = backend
        self._context = context
        self._mode = ContextMode.GENERATION
        self._lock = threading.Lock()

    @property
    def mode(self) -> ContextMode:
        return self._mode

    @contextlib.contextmanager
    def embedding_mode(self) -> Iterator[ModePermit]:
        """Hold the context in embedding mode for the duration of the block."""
        if not self._lock.acquire(blocking=False):
            raise RuntimeError("Context mode is already held by another operation.")
        try:
            try:
                self._backend.set_embedding_mode(self._context, True)
                self._mode = ContextMode.EMBEDDING
                logger.debug("Context mode: generation -> embedding")
                yield ModePermit(mode=ContextMode.EMBEDDING, context=self._context)
            finally:
                self._restore()
        finally:
            self._lock.release()

    def _restore(self) -> None:
        try:
            self._backend.set_embedding_mode(self._context, False)
        finally:
            # The logical mode is always reset so the next operation can retry.
            self._mode = ContextMode.GENERATION
            logger.debug("Context mode: embedding -> generation")

    def ensure_generation(self) -> None:
        """Raise if the context is not in its idle generation mode."""
        if self._mode is not ContextMode.GENERATION:
            raise RuntimeError(f"Context is in {self._mode.value} mode; expected generation.")
