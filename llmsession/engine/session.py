"""Session facade: one loaded model, one context, serialized operations.

A Session owns a model handle and a single inference context. Every operation
that touches the context (generation, embedding, close) takes a turn on a FIFO
queue, so callers on any number of threads observe one operation at a time in
arrival order.

It deliberately contains no HTTP/FastAPI code.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, Iterator, Sequence

from .. import runtime
from .backends.base import BaseBackend
from .batch import BatchManager
from .config import SessionConfig
from .embedding import Embedding, EmbeddingExtractor
from .errors import ModelLoadFailure, ModelNotLoaded, SessionError
from .modes import ContextMode, ModeController
from .registry import get_backend
from .scheduling import OperationQueue
from .streaming import GenerationStream
from .types import ChatMessage, Completion, ModelInfo, Prompt, SamplingParameters

logger = logging.getLogger(__name__)


def _as_prompt(prompt: str | Prompt | Sequence[ChatMessage]) -> Prompt:
    if isinstance(prompt, Prompt):
        return prompt
    if isinstance(prompt, str):
        return Prompt(text=prompt)
    messages = tuple(prompt)
    if not all(isinstance(m, ChatMessage) for m in messages):
        raise TypeError("prompt must be a str, a Prompt or a sequence of ChatMessage.")
    return Prompt(messages=messages)


class Session:
    """Loaded model plus inference context.

    Example:
        >>> with Session.open("Qwen/Qwen2.5-0.5B-Instruct") as session:
        ...     for fragment in session.generate("Hello", max_tokens=16):
        ...         print(fragment, end="", flush=True)
        ...     vector = session.embed("Hello")
    """

    def __init__(
        self,
        backend: BaseBackend,
        model_path: str,
        *,
        config: SessionConfig | None = None,
        **load_kwargs: Any,
    ) -> None:
        self._config = config or SessionConfig()
        self._config.validate()
        self._backend = backend
        self._model_path = model_path
        self._closed = True

        try:
            runtime.ensure_backend_initialized(backend)
        except SessionError as exc:
            exc.operation = exc.operation or "load"
            raise
        except Exception as exc:
            raise ModelLoadFailure(f"Backend initialization failed: {exc}", operation="load") from exc

        if self._config.device is not None:
            load_kwargs.setdefault("device", self._config.device)
        if self._config.dtype is not None:
            load_kwargs.setdefault("dtype", self._config.dtype)
        load_kwargs.setdefault("pooling", self._config.pooling)

        try:
            self._model = backend.load_model(model_path, **load_kwargs)
        except SessionError as exc:
            exc.operation = exc.operation or "load"
            raise
        except Exception as exc:
            raise ModelLoadFailure(f"{type(exc).__name__}: {exc}", operation="load") from exc

        try:
            self._info = backend.model_info(self._model)
            n_ctx = self._info.max_context_length
            if self._config.context_length is not None:
                n_ctx = min(self._config.context_length, n_ctx)
            self._context = backend.create_context(self._model, context_length=n_ctx)
        except Exception as exc:
            backend.free_model(self._model)
            if isinstance(exc, SessionError):
                exc.operation = exc.operation or "load"
                raise
            raise ModelLoadFailure(f"Could not create context: {exc}", operation="load") from exc

        self._context_length = n_ctx
        self._queue = OperationQueue()
        self._modes = ModeController(backend, self._context)
        self._batches = BatchManager(backend, context_length=n_ctx)
        self._embeddings = EmbeddingExtractor(
            backend,
            context=self._context,
            modes=self._modes,
            batches=self._batches,
            embedding_dimension=self._info.embedding_dimension,
            add_special_tokens=self._config.add_special_tokens,
        )
        self._closed = False
        logger.info(
            "Session ready: model=%s family=%s n_ctx=%d dim=%d",
            model_path,
            backend.family,
            n_ctx,
            self._info.embedding_dimension,
        )

    @classmethod
    def open(
        cls,
        model_path: str,
        *,
        family: str = "transformers",
        config: SessionConfig | None = None,
        **load_kwargs: Any,
    ) -> "Session":
        """Create a Session using the backend registered for `family`."""
        config = config or SessionConfig()
        backend_kwargs: dict[str, Any] = {}
        if config.num_threads is not None:
            backend_kwargs["num_threads"] = config.num_threads
        backend = get_backend(family, **backend_kwargs)
        return cls(backend, model_path, config=config, **load_kwargs)

    # -------------------------------------------------------------------------
    # Read-only state
    # -------------------------------------------------------------------------

    @property
    def config(self) -> SessionConfig:
        return self._config

    @property
    def model_info(self) -> ModelInfo:
        return self._info

    @property
    def embedding_dimension(self) -> int:
        return self._info.embedding_dimension

    @property
    def context_length(self) -> int:
        """Effective context window: the configured length capped to the model's."""
        return self._context_length

    @property
    def mode(self) -> ContextMode:
        return self._modes.mode

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def queue(self) -> OperationQueue:
        return self._queue

    @property
    def batches(self) -> BatchManager:
        return self._batches

    # -------------------------------------------------------------------------
    # Scheduling
    # -------------------------------------------------------------------------

    @contextlib.contextmanager
    def _turn(self, operation: str) -> Iterator[None]:
        """Hold the context for one operation, in arrival order."""
        with self._queue.turn(operation):
            if self._closed:
                raise ModelNotLoaded("Session is closed.", operation=operation)
            self._modes.ensure_generation()
            yield

    def _ensure_open(self, operation: str) -> None:
        if self._closed:
            raise ModelNotLoaded("Session is closed.", operation=operation)

    # -------------------------------------------------------------------------
    # Generation
    # -------------------------------------------------------------------------

    def generate(
        self,
        prompt: str | Prompt | Sequence[ChatMessage],
        params: SamplingParameters | None = None,
        *,
        max_tokens: int | None = None,
        stop: Sequence[str] | None = None,
        stop_token_ids: Sequence[int] = (),
    ) -> GenerationStream:
        """Start a lazy generation.

        Nothing runs until the returned stream is iterated (sync or async) or
        subscribed to; at that point the stream joins the operation queue.

        Raises:
            ModelNotLoaded: If the session is closed.
            ValueError: For invalid sampling parameters or limits.
        """
        self._ensure_open("generate")
        params = params or SamplingParameters()
        if max_tokens is None:
            max_tokens = self._config.max_tokens
        if max_tokens is not None and max_tokens <= 0:
            raise ValueError("'max_tokens' must be > 0.")
        stop_sequences = self._config.stop if stop is None else tuple(stop)
        if any(not isinstance(s, str) for s in stop_sequences):
            raise ValueError("'stop' must contain strings.")

        return GenerationStream(
            turn=self._turn,
            backend=self._backend,
            model=self._model,
            context=self._context,
            batches=self._batches,
            prompt=_as_prompt(prompt),
            params=params,
            max_tokens=max_tokens,
            stop=stop_sequences,
            stop_token_ids=stop_token_ids,
            add_special_tokens=self._config.add_special_tokens,
        )

    def complete(
        self,
        prompt: str | Prompt | Sequence[ChatMessage],
        params: SamplingParameters | None = None,
        **kwargs: Any,
    ) -> Completion:
        """Run a generation to the end and return the full text."""
        return self.generate(prompt, params, **kwargs).result()

    async def acomplete(
        self,
        prompt: str | Prompt | Sequence[ChatMessage],
        params: SamplingParameters | None = None,
        **kwargs: Any,
    ) -> Completion:
        return await self.generate(prompt, params, **kwargs).aresult()

    # -------------------------------------------------------------------------
    # Embeddings
    # -------------------------------------------------------------------------

    def embed(self, text: str) -> Embedding:
        """Return the L2-normalized embedding of `text`.

        Waits for any running or queued operation first. The context is back in
        generation mode when this returns or raises.
        """
        self._ensure_open("embed")
        try:
            with self._turn("embed"):
                return self._embeddings.extract(text)
        except SessionError as exc:
            exc.operation = exc.operation or "embed"
            raise

    async def aembed(self, text: str) -> Embedding:
        return await asyncio.to_thread(self.embed, text)

    # -------------------------------------------------------------------------
    # Teardown
    # -------------------------------------------------------------------------

    def close(self) -> None:
        """Release the context and model after the queued operations finish."""
        if self._closed:
            return
        with self._queue.turn("close"):
            if self._closed:
                return
            self._closed = True
            try:
                self._backend.free_context(self._context)
            finally:
                self._backend.free_model(self._model)
        logger.info("Session closed: model=%s", self._model_path)

    def __enter__(self) -> "Session":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()
