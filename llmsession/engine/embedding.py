"""Embedding extraction: one decode in embedding mode, then L2 normalization."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any, Iterator, Sequence

import torch

from .backends.base import BaseBackend
from .batch import BatchManager
from .errors import (
    EmbeddingExtractionFailure,
    InvalidEmbeddingDimension,
    SessionError,
    TokenizationFailure,
)
from .modes import ModeController
from .tokens import tokenize

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Embedding:
    """A unit-length (or all-zero) embedding vector."""

    vector: tuple[float, ...]
    prompt_tokens: int = 0

    def __len__(self) -> int:
        return len(self.vector)

    def __iter__(self) -> Iterator[float]:
        return iter(self.vector)

    def __getitem__(self, index: int) -> float:
        return self.vector[index]

    @property
    def norm(self) -> float:
        return math.sqrt(sum(v * v for v in self.vector))

    def tolist(self) -> list[float]:
        return list(self.vector)


def l2_normalize(values: Any) -> list[float]:
    """Scale a vector to unit Euclidean norm.

    An all-zero vector is returned unchanged.
    """
    vec = torch.as_tensor(values, dtype=torch.float64).detach().cpu().reshape(-1)
    norm = torch.linalg.vector_norm(vec)
    if float(norm) == 0.0:
        return vec.tolist()
    return (vec / norm).tolist()


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity of two vectors; 0.0 for mismatched lengths or zero vectors."""
    if len(a) != len(b) or not len(a):
        return 0.0
    ta = torch.as_tensor(list(a), dtype=torch.float64)
    tb = torch.as_tensor(list(b), dtype=torch.float64)
    denom = torch.linalg.vector_norm(ta) * torch.linalg.vector_norm(tb)
    if float(denom) == 0.0:
        return 0.0
    return float(torch.dot(ta, tb) / denom)


class EmbeddingExtractor:
    """Extracts normalized embeddings through the shared context."""

    def __init__(
        self,
        backend: BaseBackend,
        *,
        context: Any,
        modes: ModeController,
        batches: BatchManager,
        embedding_dimension: int,
        add_special_tokens: bool = True,
    ) -> None:
        self._backend = backend
        self._context = context
        self._modes = modes
        self._batches = batches
        self._embedding_dimension = int(embedding_dimension)
        self._add_special_tokens = add_special_tokens

    def extract(self, text: str) -> Embedding:
        """Embed `text`.

        Raises:
            TokenizationFailure: For empty input or failed tokenization.
            ContextOverflow: If the text does not fit in one batch.
            DecodeFailure: If the engine decode fails.
            EmbeddingExtractionFailure: If the engine returns no usable vector.
            InvalidEmbeddingDimension: If the vector length differs from the model's dimension.
        """
        if not isinstance(text, str) or text == "":
            raise TokenizationFailure("Cannot embed an empty string.")

        tokens = tokenize(self._backend, self._context, text, add_special=self._add_special_tokens)

        try:
            with self._modes.embedding_mode():
                self._batches.decode(self._context, tokens)
                raw = self._backend.get_embeddings(self._context)
        except SessionError:
            raise
        except Exception as exc:
            raise EmbeddingExtractionFailure(f"{type(exc).__name__}: {exc}") from exc

        if raw is None:
            raise EmbeddingExtractionFailure("Engine returned no embedding (does the model support pooling?).")

        try:
            raw_vec = torch.as_tensor(raw, dtype=torch.float64).detach().cpu().reshape(-1)
        except Exception as exc:
            raise EmbeddingExtractionFailure(f"Unreadable embedding buffer: {exc}") from exc

        if raw_vec.numel() != self._embedding_dimension:
            raise InvalidEmbeddingDimension(self._embedding_dimension, int(raw_vec.numel()))
        if not bool(torch.isfinite(raw_vec).all()):
            raise EmbeddingExtractionFailure("Embedding contains NaN or infinite values.")

        vector = l2_normalize(raw_vec)
        logger.debug("Extracted embedding: tokens=%d dim=%d", len(tokens), len(vector))
        return Embedding(vector=tuple(vector), prompt_tokens=len(tokens))
