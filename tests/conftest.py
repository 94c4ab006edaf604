import os
import sys
import threading
import time
from dataclasses import dataclass, field
from typing import Any

import pytest


# Ensure the repository root is on sys.path so tests can import local entrypoints
# like apps.server.app without requiring an editable install.
_REPO_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if _REPO_ROOT not in sys.path:
    sys.path.insert(0, _REPO_ROOT)

import torch  # noqa: E402

from llmsession.engine.backends.base import BaseBackend  # noqa: E402
from llmsession.engine.config import SessionConfig  # noqa: E402
from llmsession.engine.session import Session  # noqa: E402
from llmsession.engine.types import ModelInfo  # noqa: E402


# Byte-level toy vocabulary: 0 pad, 1 BOS, 2 EOS, 3 + byte value.
BOS = 1
EOS = 2
BYTE_OFFSET = 3
VOCAB_SIZE = BYTE_OFFSET + 256


def encode(text: str) -> list[int]:
    return [BYTE_OFFSET + b for b in text.encode("utf-8")]


@dataclass
class FakeContext:
    context_length: int
    n_past: int = 0
    history: list[int] = field(default_factory=list)
    prompt_len: int | None = None
    embedding_mode: bool = False
    last_logits: Any = None
    last_embedding: Any = None
    freed: bool = False


@dataclass
class FakeBatch:
    tokens: list[int]
    freed: bool = False


class FakeBackend(BaseBackend):
    """Deterministic in-memory engine.

    Generation replays `reply` token by token (then EOS, or `filler` forever).
    Embeddings are a bag of bytes folded into `embedding_dim` buckets.
    """

    family = "fake"

    def __init__(
        self,
        *,
        reply: str = "Hello, world!",
        filler: str | None = None,
        embedding_dim: int = 8,
        reported_dim: int | None = None,
        context_length: int = 64,
        fail_decode_at: int | None = None,
        fail_code: int = -3,
        decode_delay: float = 0.0,
        zero_embedding: bool = False,
        no_logits: bool = False,
        no_embedding: bool = False,
    ) -> None:
        self.reply_tokens = encode(reply)
        self.filler_tokens = encode(filler) if filler else None
        self.embedding_dim = embedding_dim
        self.reported_dim = reported_dim
        self.context_length = context_length
        self.fail_decode_at = fail_decode_at
        self.fail_code = fail_code
        self.decode_delay = decode_delay
        self.zero_embedding = zero_embedding
        self.no_logits = no_logits
        self.no_embedding = no_embedding

        self.load_kwargs: dict[str, Any] = {}
        self.decode_log: list[tuple[str, str, list[int]]] = []
        self.mode_log: list[bool] = []
        self.live_batches = 0
        self.max_concurrent_decodes = 0
        self._active_decodes = 0
        self._lock = threading.Lock()
        self.model_freed = False

    # Model / context

    def load_model(self, model_path: str, **kwargs):
        if model_path == "missing":
            raise FileNotFoundError(model_path)
        self.load_kwargs = dict(kwargs)
        return {"path": model_path}

    def model_info(self, model) -> ModelInfo:
        return ModelInfo(
            model_path=model["path"],
            model_family=self.family,
            dtype="float32",
            device="cpu",
            embedding_dimension=self.embedding_dim,
            max_context_length=self.context_length,
            vocab_size=VOCAB_SIZE,
        )

    def create_context(self, model, *, context_length: int) -> FakeContext:
        return FakeContext(context_length=context_length)

    def free_context(self, context: FakeContext) -> None:
        context.freed = True

    def free_model(self, model) -> None:
        self.model_freed = True

    # Text <-> tokens

    def tokenize(self, context, text: str, *, add_special: bool = True) -> list[int]:
        tokens = encode(text)
        return [BOS] + tokens if add_special else tokens

    def detokenize(self, model, tokens) -> str:
        raw = bytes(t - BYTE_OFFSET for t in tokens if t >= BYTE_OFFSET)
        return raw.decode("utf-8", errors="replace")

    def is_end_of_generation(self, model, token: int) -> bool:
        return token == EOS

    # Context state

    def set_embedding_mode(self, context: FakeContext, enabled: bool) -> None:
        self.mode_log.append(enabled)
        context.embedding_mode = enabled
        context.last_embedding = None

    def clear_cache(self, context: FakeContext) -> None:
        context.n_past = 0
        context.history = []
        context.prompt_len = None
        context.last_logits = None

    def position(self, context: FakeContext) -> int:
        return 0 if context.embedding_mode else context.n_past

    # Decode

    def create_batch(self, context, tokens) -> FakeBatch:
        with self._lock:
            self.live_batches += 1
        return FakeBatch(tokens=list(tokens))

    def free_batch(self, batch: FakeBatch) -> None:
        batch.freed = True
        with self._lock:
            self.live_batches -= 1

    def decode(self, context: FakeContext, batch: FakeBatch) -> int:
        with self._lock:
            self._active_decodes += 1
            self.max_concurrent_decodes = max(self.max_concurrent_decodes, self._active_decodes)
            call = len(self.decode_log)
            mode = "embedding" if context.embedding_mode else "generation"
            self.decode_log.append((threading.current_thread().name, mode, list(batch.tokens)))
        try:
            if self.decode_delay:
                time.sleep(self.decode_delay)
            if self.fail_decode_at is not None and call == self.fail_decode_at:
                return self.fail_code

            if context.embedding_mode:
                dim = self.reported_dim or self.embedding_dim
                vec = torch.zeros(dim, dtype=torch.float32)
                if not self.zero_embedding:
                    for t in batch.tokens:
                        vec[t % dim] += 1.0
                context.last_embedding = vec
                return 0

            if context.prompt_len is None:
                context.prompt_len = len(batch.tokens)
            context.history.extend(batch.tokens)
            context.n_past += len(batch.tokens)
            context.last_logits = None if self.no_logits else self._next_logits(context)
            return 0
        finally:
            with self._lock:
                self._active_decodes -= 1

    def _next_logits(self, context: FakeContext):
        generated = len(context.history) - context.prompt_len
        if generated < len(self.reply_tokens):
            target = self.reply_tokens[generated]
        elif self.filler_tokens:
            target = self.filler_tokens[(generated - len(self.reply_tokens)) % len(self.filler_tokens)]
        else:
            target = EOS
        logits = torch.zeros(VOCAB_SIZE, dtype=torch.float32)
        logits[target] = 20.0
        return logits

    def get_logits(self, context: FakeContext):
        return context.last_logits

    def get_embeddings(self, context: FakeContext):
        if not context.embedding_mode or self.no_embedding:
            return None
        return context.last_embedding


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def make_session():
    """Factory: `make_session(config=None, **backend_kwargs) -> Session`."""
    sessions: list[Session] = []

    def factory(config: SessionConfig | None = None, **backend_kwargs: Any) -> Session:
        session = Session(FakeBackend(**backend_kwargs), "fake-model", config=config)
        sessions.append(session)
        return session

    yield factory

    for session in sessions:
        session.close()


@pytest.fixture
def backend_factory():
    """The FakeBackend class, for tests that need non-default engine behavior."""
    return FakeBackend
