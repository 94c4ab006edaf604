"""Cancellable generation stream.

One internal generator runs the decode -> sample -> detokenize loop. Three
thin adapters consume it, so the engine is invoked exactly once per token
whichever one the caller picks:

- pull:       `for fragment in stream` (engine work happens inside `next`)
- async pull: `async for fragment in stream` (each step runs in a worker thread)
- push:       `stream.subscribe(on_fragment)` (a daemon thread drives the loop)

A stream is consumed once. Cancellation is cooperative: `cancel()` sets a
flag checked before every decode; an in-flight decode is never interrupted.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
import uuid
from typing import Any, Callable, ContextManager, Iterator, Sequence

from .backends.base import BaseBackend
from .batch import BatchManager
from .errors import ContextOverflow, DecodeFailure, SessionError, TokenizationFailure
from .sampling import SamplerChain
from .tokens import IncrementalDetokenizer, tokenize
from .types import (
    Completion,
    FinishReason,
    GenerationState,
    Prompt,
    SamplingParameters,
    Timing,
    Usage,
)

logger = logging.getLogger(__name__)

_DONE = object()


def _exhausted() -> Iterator[str]:
    return
    yield


class _StopSequenceFilter:
    """Applies string stop sequences to streamed text.

    A tail of `max(len(stop)) - 1` characters is held back so a stop sequence
    split across tokens is never partially emitted.
    """

    def __init__(self, stop_sequences: Sequence[str]) -> None:
        self._stop_sequences = [s for s in stop_sequences if s]
        self._tail_keep = max((len(s) for s in self._stop_sequences), default=1) - 1
        self._buffer = ""
        self.stopped = False

    def feed(self, text: str) -> str:
        if self.stopped or not text:
            return ""
        if not self._stop_sequences:
            return text

        self._buffer += text
        idx = self._find_earliest_stop(self._buffer)
        if idx is not None:
            out = self._buffer[:idx]
            self._buffer = ""
            self.stopped = True
            return out

        if len(self._buffer) <= self._tail_keep:
            return ""

        safe_end = len(self._buffer) - self._tail_keep
        out = self._buffer[:safe_end]
        self._buffer = self._buffer[safe_end:]
        return out

    def flush(self) -> str:
        out = self._buffer
        self._buffer = ""
        return out

    def _find_earliest_stop(self, text: str) -> int | None:
        earliest: int | None = None
        for s in self._stop_sequences:
            idx = text.find(s)
            if idx == -1:
                continue
            if earliest is None or idx < earliest:
                earliest = idx
        return earliest


class _Outcome:
    """Mutable result of one generation, written by the loop and read by the stream.

    The loop holds this record and never the stream itself, so an unfinished
    stream dropped by its caller is closed by reference counting alone.
    """

    def __init__(self) -> None:
        self.state = GenerationState.IDLE
        self.fragments: list[str] = []
        self.finish_reason: FinishReason | None = None
        self.error: BaseException | None = None
        self.usage = Usage(prompt_tokens=0, completion_tokens=0)
        self.timing = Timing()
        self.cancel = threading.Event()
        self.done = threading.Event()

    def settle(self, state: GenerationState, reason: FinishReason, error: BaseException | None = None) -> None:
        if self.state.is_terminal:
            return
        self.state = state
        self.finish_reason = reason
        self.error = error
        self.done.set()
        logger.debug("Generation settled: state=%s finish_reason=%s", state.value, reason)


class _GenerationLoop:
    """Inputs of one generation and the decode -> sample -> detokenize loop."""

    def __init__(
        self,
        *,
        turn: Callable[[str], ContextManager[Any]],
        backend: BaseBackend,
        model: Any,
        context: Any,
        batches: BatchManager,
        prompt: Prompt,
        sampler: SamplerChain,
        max_tokens: int | None,
        stop: tuple[str, ...],
        stop_token_ids: frozenset[int],
        add_special_tokens: bool,
    ) -> None:
        self.turn = turn
        self.backend = backend
        self.model = model
        self.context = context
        self.batches = batches
        self.prompt = prompt
        self.sampler = sampler
        self.max_tokens = max_tokens
        self.stop = stop
        self.stop_token_ids = stop_token_ids
        self.add_special_tokens = add_special_tokens

    def _prompt_text(self) -> tuple[str, bool]:
        if self.prompt.is_chat:
            return self.backend.render_prompt(self.model, self.prompt.messages), False
        return self.prompt.text, self.add_special_tokens

    def run(self, out: _Outcome) -> Iterator[str]:
        if out.cancel.is_set():
            out.settle(GenerationState.CANCELLED, "cancelled")
            return

        backend = self.backend
        context = self.context
        prompt_tokens = 0
        completion_tokens = 0
        started = time.monotonic()
        first_token_at: float | None = None

        try:
            with self.turn("generate"):
                started = time.monotonic()
                out.state = GenerationState.GENERATING

                text, add_special = self._prompt_text()
                if not text:
                    raise TokenizationFailure("Prompt is empty.")

                backend.clear_cache(context)
                pending = tokenize(backend, context, text, add_special=add_special)
                prompt_tokens = len(pending)
                if prompt_tokens > self.batches.context_length:
                    raise ContextOverflow(
                        f"Prompt has {prompt_tokens} tokens; context length limit is {self.batches.context_length}."
                    )

                detokenizer = IncrementalDetokenizer(backend, self.model)
                stops = _StopSequenceFilter(self.stop)
                reason: FinishReason = "stop"

                while True:
                    if out.cancel.is_set():
                        reason = "cancelled"
                        break

                    try:
                        self.batches.decode(context, pending)
                    except ContextOverflow:
                        if completion_tokens == 0:
                            raise
                        reason = "length"
                        break

                    logits = backend.get_logits(context)
                    if logits is None:
                        raise DecodeFailure("Engine returned no logits (is the model a generation model?).")
                    if first_token_at is None:
                        first_token_at = time.monotonic()

                    token = self.sampler.sample(logits)
                    self.sampler.accept(token)

                    if backend.is_end_of_generation(self.model, token) or token in self.stop_token_ids:
                        break
                    completion_tokens += 1

                    fragment = stops.feed(detokenizer.push(token))
                    if fragment:
                        out.fragments.append(fragment)
                        yield fragment
                    if stops.stopped:
                        break
                    if self.max_tokens is not None and completion_tokens >= self.max_tokens:
                        reason = "length"
                        break
                    pending = [token]

                if reason != "cancelled":
                    tail = stops.flush()
                    if tail:
                        out.fragments.append(tail)
                        yield tail

            if reason == "cancelled":
                out.settle(GenerationState.CANCELLED, reason)
            else:
                out.settle(GenerationState.COMPLETED, reason)
        except GeneratorExit:
            out.settle(GenerationState.CANCELLED, "cancelled")
            raise
        except SessionError as exc:
            if exc.operation is None:
                exc.operation = "generate"
            out.settle(GenerationState.FAILED, "error", exc)
            logger.warning("Generation failed: %s", exc)
            raise
        except Exception as exc:
            err = DecodeFailure(f"{type(exc).__name__}: {exc}", operation="generate")
            out.settle(GenerationState.FAILED, "error", err)
            logger.warning("Generation failed: %s", err)
            raise err from exc
        finally:
            ended = time.monotonic()
            decode_s = None if first_token_at is None else max(ended - first_token_at, 0.0)
            tok_per_s = None
            if decode_s and completion_tokens > 0:
                tok_per_s = completion_tokens / decode_s
            out.usage = Usage(prompt_tokens=prompt_tokens, completion_tokens=completion_tokens)
            out.timing = Timing(
                prefill_s=None if first_token_at is None else max(first_token_at - started, 0.0),
                decode_s=decode_s,
                total_s=max(ended - started, 0.0),
                tok_per_s=tok_per_s,
            )


class GenerationStream:
    """Lazy, cancellable sequence of text fragments for one generation.

    State: IDLE -> GENERATING -> {COMPLETED | CANCELLED | FAILED}. Dropping an
    unfinished stream cancels it and releases the operation queue.
    """

    def __init__(
        self,
        *,
        turn: Callable[[str], ContextManager[Any]],
        backend: BaseBackend,
        model: Any,
        context: Any,
        batches: BatchManager,
        prompt: Prompt,
        params: SamplingParameters,
        max_tokens: int | None = None,
        stop: Sequence[str] = (),
        stop_token_ids: Sequence[int] = (),
        add_special_tokens: bool = True,
    ) -> None:
        self._loop = _GenerationLoop(
            turn=turn,
            backend=backend,
            model=model,
            context=context,
            batches=batches,
            prompt=prompt,
            sampler=SamplerChain(params),
            max_tokens=max_tokens,
            stop=tuple(stop),
            stop_token_ids=frozenset(int(t) for t in stop_token_ids),
            add_special_tokens=add_special_tokens,
        )
        self._out = _Outcome()
        self._claim_lock = threading.Lock()
        self._step_lock = threading.Lock()
        self._consumer: str | None = None
        self._gen: Iterator[str] | None = None
        self._thread: threading.Thread | None = None

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    @property
    def state(self) -> GenerationState:
        return self._out.state

    @property
    def seed(self) -> int:
        """Seed of the sampler RNG (drawn at random when none was given)."""
        return self._loop.sampler.seed

    @property
    def fragments(self) -> list[str]:
        return list(self._out.fragments)

    @property
    def text(self) -> str:
        return "".join(self._out.fragments)

    @property
    def finish_reason(self) -> FinishReason | None:
        return self._out.finish_reason

    @property
    def error(self) -> BaseException | None:
        return self._out.error

    @property
    def usage(self) -> Usage:
        return self._out.usage

    @property
    def timing(self) -> Timing:
        return self._out.timing

    @property
    def done(self) -> bool:
        return self._out.state.is_terminal

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the stream reaches a terminal state."""
        return self._out.done.wait(timeout)

    def result(self) -> Completion:
        """Drain the stream (pull) and return the full completion."""
        if self._consumer is None:
            for _ in self:
                pass
        elif self._consumer == "push":
            self.join()
        if not self.done:
            raise RuntimeError("Stream is still being consumed.")
        if self.error is not None:
            raise self.error
        return self._completion()

    def _completion(self) -> Completion:
        return Completion(
            text=self.text,
            finish_reason=self.finish_reason or "stop",
            usage=self.usage,
            timing=self.timing,
            seed=self.seed,
        )

    # -------------------------------------------------------------------------
    # Cancellation
    # -------------------------------------------------------------------------

    def cancel(self) -> None:
        """Request cancellation; the loop stops before its next decode."""
        self._out.cancel.set()

        with self._claim_lock:
            if self._consumer is None:
                # Never started: settle without touching the queue.
                self._consumer = "cancelled"
                self._out.settle(GenerationState.CANCELLED, "cancelled")
                return
            consumer = self._consumer

        if consumer in ("pull", "async") and self._step_lock.acquire(blocking=False):
            # Idle between pulls: close now so the queue is released immediately.
            try:
                self._close_generator()
            finally:
                self._step_lock.release()

    def cancel_after(self, seconds: float) -> threading.Timer:
        """Cancel the stream once `seconds` have elapsed (timeout as cancellation)."""
        timer = threading.Timer(seconds, self.cancel)
        timer.daemon = True
        timer.start()
        return timer

    @property
    def cancelled(self) -> bool:
        return self._out.cancel.is_set()

    def close(self) -> None:
        """Cancel and release the queue, waiting for an in-flight pull step."""
        self.cancel()
        if self._consumer in ("pull", "async") and self._gen is not None:
            with self._step_lock:
                self._close_generator()
        elif self._consumer == "push" and self._thread is not None:
            self._thread.join()

    def _close_generator(self) -> None:
        # A generator closed before its first step never runs its body.
        self._gen.close()
        self._out.settle(GenerationState.CANCELLED, "cancelled")

    def __enter__(self) -> "GenerationStream":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    # -------------------------------------------------------------------------
    # Pull
    # -------------------------------------------------------------------------

    def _claim(self, consumer: str) -> None:
        with self._claim_lock:
            if self._consumer == consumer:
                return
            if self._consumer == "cancelled":
                self._consumer = consumer
                self._gen = _exhausted()
                return
            if self._consumer is not None:
                raise RuntimeError("GenerationStream can only be consumed once.")
            self._consumer = consumer
            self._gen = self._loop.run(self._out)

    def __iter__(self) -> "GenerationStream":
        self._claim("pull")
        return self

    def __next__(self) -> str:
        self._claim("pull")
        with self._step_lock:
            return next(self._gen)

    # -------------------------------------------------------------------------
    # Async pull
    # -------------------------------------------------------------------------

    def __aiter__(self) -> "GenerationStream":
        self._claim("async")
        return self

    async def __anext__(self) -> str:
        self._claim("async")
        try:
            item = await asyncio.to_thread(self._async_step)
        except asyncio.CancelledError:
            self.cancel()
            raise
        if item is _DONE:
            raise StopAsyncIteration
        return item

    def _async_step(self) -> Any:
        with self._step_lock:
            try:
                fragment = next(self._gen)
            except StopIteration:
                return _DONE
            if self._out.cancel.is_set():
                # Cancelled while this step was running: drop it and release the queue.
                self._out.fragments.pop()
                self._close_generator()
                return _DONE
            return fragment

    async def aresult(self) -> Completion:
        """Async drain; returns the full completion."""
        async for _ in self:
            pass
        if self.error is not None:
            raise self.error
        return self._completion()

    # -------------------------------------------------------------------------
    # Push
    # -------------------------------------------------------------------------

    def subscribe(
        self,
        on_fragment: Callable[[str], Any],
        on_complete: Callable[["GenerationStream"], Any] | None = None,
    ) -> "GenerationStream":
        """Deliver fragments to `on_fragment` from a background thread.

        The loop runs to completion or cancellation regardless of how fast the
        sink is; the sink must buffer if it needs backpressure. `on_complete`
        runs once the stream is terminal. An exception from the sink fails the
        stream.
        """
        self._claim("push")
        out = self._out

        def worker() -> None:
            gen = self._gen
            try:
                for fragment in gen:
                    on_fragment(fragment)
            except BaseException as exc:  # noqa: BLE001 - recorded and re-raised by join()
                if not out.state.is_terminal:
                    gen.close()
                    out.state = GenerationState.FAILED
                    out.finish_reason = "error"
                    out.error = exc
                    out.done.set()
                    logger.warning("Stream subscriber failed: %s", exc)
            finally:
                if on_complete is not None:
                    try:
                        on_complete(self)
                    except Exception:
                        logger.warning("Stream on_complete callback failed", exc_info=True)

        self._thread = threading.Thread(target=worker, name=f"llmsession-gen-{uuid.uuid4().hex}", daemon=True)
        self._thread.start()
        return self

    def join(self, timeout: float | None = None) -> Completion:
        """Wait for a subscribed stream; re-raises its failure."""
        if self._thread is None:
            raise RuntimeError("join() requires subscribe().")
        self._thread.join(timeout)
        if self._thread.is_alive():
            raise TimeoutError(f"Generation still running after {timeout}s.")
        if self.error is not None:
            raise self.error
        return self._completion()
