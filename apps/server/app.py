"""FastAPI app for OpenAI-style Completions and Embeddings.

The HTTP layer lives under `apps/` and can depend on heavier deps (FastAPI, uvicorn).
All model execution is delegated to the session (`llmsession/engine`).
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from typing import Any, AsyncIterator

from fastapi import FastAPI, HTTPException, Request
from starlette.responses import JSONResponse, StreamingResponse

from llmsession import __version__
from llmsession.engine.errors import (
    ContextOverflow,
    InvalidEmbeddingDimension,
    ModelNotLoaded,
    SessionError,
    TokenizationFailure,
)
from llmsession.engine.session import Session
from llmsession.engine.streaming import GenerationStream
from llmsession.engine.types import ChatMessage, Prompt, SamplingParameters, Timing, Usage

logger = logging.getLogger(__name__)


def create_app(
    *,
    session: Session,
    model_id: str,
    http_max_concurrency: int | None = None,
    http_max_completion_tokens: int | None = None,
) -> FastAPI:
    app = FastAPI(title="llmsession Inference Server", version=__version__)

    http_semaphore: asyncio.Semaphore | None = None
    if http_max_concurrency is not None:
        try:
            http_max_concurrency = int(http_max_concurrency)
        except Exception as exc:
            raise ValueError("http_max_concurrency must be an integer") from exc
        if http_max_concurrency > 0:
            http_semaphore = asyncio.Semaphore(http_max_concurrency)
        elif http_max_concurrency < 0:
            raise ValueError("http_max_concurrency must be >= 0")

    if http_max_completion_tokens is not None:
        try:
            http_max_completion_tokens = int(http_max_completion_tokens)
        except Exception as exc:
            raise ValueError("http_max_completion_tokens must be an integer") from exc
        if http_max_completion_tokens <= 0:
            raise ValueError("http_max_completion_tokens must be > 0")

    async def _wait_for_disconnect(request: Request, poll_s: float = 0.1) -> None:
        while True:
            if await request.is_disconnected():
                return
            await asyncio.sleep(poll_s)

    async def _run_with_disconnect_cancellation(request: Request, coro: Any) -> Any:
        task = asyncio.create_task(coro)
        disconnect_task = asyncio.create_task(_wait_for_disconnect(request))
        # Yield to let both tasks start (handles coroutines that return synchronously).
        await asyncio.sleep(0)
        done, pending = await asyncio.wait(
            {task, disconnect_task},
            return_when=asyncio.FIRST_COMPLETED,
        )
        if disconnect_task in done:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            raise HTTPException(status_code=499, detail="Client disconnected")

        disconnect_task.cancel()
        try:
            await disconnect_task
        except asyncio.CancelledError:
            pass
        return task.result()

    async def _try_acquire_semaphore() -> None:
        if http_semaphore is None:
            return
        try:
            await asyncio.wait_for(http_semaphore.acquire(), timeout=0.001)
        except asyncio.TimeoutError as exc:
            raise HTTPException(status_code=429, detail="Server is busy") from exc

    def _release_semaphore() -> None:
        if http_semaphore is not None:
            http_semaphore.release()

    async def _json_dict(request: Request) -> dict[str, Any]:
        try:
            payload = await request.json()
        except Exception as exc:
            raise HTTPException(status_code=400, detail="Request body must be valid JSON.") from exc
        if isinstance(payload, dict):
            return payload
        raise HTTPException(status_code=400, detail="Request body must be a JSON object.")

    def _check_model(payload: dict[str, Any]) -> None:
        req_model = payload.get("model")
        if req_model is not None and req_model != model_id:
            raise HTTPException(status_code=404, detail=f"Unknown model: {req_model}")

    # -------------------------------------------------------------------------
    # Health & Models
    # -------------------------------------------------------------------------

    @app.get("/health")
    async def health() -> dict[str, Any]:
        if session.closed:
            raise HTTPException(status_code=503, detail="Model not loaded")
        return {
            "status": "ok",
            "mode": session.mode.value,
            "busy": session.queue.busy,
            "active_operation": session.queue.active_operation,
        }

    @app.get("/v1/models")
    async def list_models() -> dict[str, Any]:
        now = int(time.time())
        info = session.model_info
        return {
            "object": "list",
            "data": [
                {
                    "id": model_id,
                    "object": "model",
                    "created": now,
                    "owned_by": "llmsession",
                    "family": info.model_family,
                    "embedding_dimension": info.embedding_dimension,
                    "context_length": session.context_length,
                }
            ],
        }

    # -------------------------------------------------------------------------
    # Completions
    # -------------------------------------------------------------------------

    @app.post("/v1/completions")
    async def completions(request: Request) -> Any:
        payload = await _json_dict(request)
        _check_model(payload)

        prompt, params, max_tokens, stop, stream_requested = _parse_completion_request(
            payload, http_max_completion_tokens=http_max_completion_tokens
        )

        try:
            stream = session.generate(prompt, params, max_tokens=max_tokens, stop=stop)
        except SessionError as exc:
            raise _http_error(exc) from exc
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

        created = int(time.time())
        cmpl_id = f"cmpl-{uuid.uuid4().hex}"

        await _try_acquire_semaphore()

        if stream_requested:
            # Pull the first fragment up front so request errors get a real status code.
            try:
                first = await _run_with_disconnect_cancellation(request, _first_fragment(stream))
            except SessionError as exc:
                _release_semaphore()
                raise _http_error(exc) from exc
            except BaseException:
                stream.cancel()
                _release_semaphore()
                raise

            event_iter = _stream_completions(
                stream=stream,
                first=first,
                model_id=model_id,
                created=created,
                cmpl_id=cmpl_id,
                request=request,
                release=_release_semaphore,
            )
            return StreamingResponse(event_iter, media_type="text/event-stream")

        try:
            result = await _run_with_disconnect_cancellation(request, stream.aresult())
        except HTTPException:
            raise
        except SessionError as exc:
            raise _http_error(exc) from exc
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except Exception as exc:
            raise HTTPException(status_code=500, detail=str(exc)) from exc
        finally:
            _release_semaphore()

        resp: dict[str, Any] = {
            "id": cmpl_id,
            "object": "text_completion",
            "created": created,
            "model": model_id,
            "choices": [
                {
                    "index": 0,
                    "text": result.text,
                    "finish_reason": result.finish_reason,
                }
            ],
            "usage": _usage_dict(result.usage),
            "x_llmsession_timing": _timing_dict(result.timing),
            "x_llmsession_seed": result.seed,
        }
        return JSONResponse(resp)

    # -------------------------------------------------------------------------
    # Embeddings
    # -------------------------------------------------------------------------

    @app.post("/v1/embeddings")
    async def embeddings(request: Request) -> Any:
        payload = await _json_dict(request)
        _check_model(payload)

        raw_input = payload.get("input")
        if isinstance(raw_input, str):
            inputs = [raw_input]
        elif isinstance(raw_input, list) and raw_input and all(isinstance(x, str) for x in raw_input):
            inputs = list(raw_input)
        else:
            raise HTTPException(status_code=400, detail="'input' must be a string or a non-empty list of strings.")

        await _try_acquire_semaphore()
        data: list[dict[str, Any]] = []
        prompt_tokens = 0
        try:
            for index, text in enumerate(inputs):
                vector = await _run_with_disconnect_cancellation(request, session.aembed(text))
                prompt_tokens += vector.prompt_tokens
                data.append({"object": "embedding", "index": index, "embedding": vector.tolist()})
        except HTTPException:
            raise
        except SessionError as exc:
            raise _http_error(exc) from exc
        except Exception as exc:
            raise HTTPException(status_code=500, detail=str(exc)) from exc
        finally:
            _release_semaphore()

        return JSONResponse(
            {
                "object": "list",
                "data": data,
                "model": model_id,
                "usage": {"prompt_tokens": prompt_tokens, "total_tokens": prompt_tokens},
            }
        )

    return app


def _http_error(exc: SessionError) -> HTTPException:
    if isinstance(exc, InvalidEmbeddingDimension):
        status = 422
    elif isinstance(exc, (TokenizationFailure, ContextOverflow)):
        status = 400
    elif isinstance(exc, ModelNotLoaded):
        status = 503
    else:
        status = 500
    return HTTPException(status_code=status, detail=str(exc))


def _sse(data: str) -> str:
    return f"data: {data}\n\n"


def _usage_dict(usage: Usage) -> dict[str, int]:
    return {
        "prompt_tokens": usage.prompt_tokens,
        "completion_tokens": usage.completion_tokens,
        "total_tokens": usage.total_tokens,
    }


def _timing_dict(timing: Timing) -> dict[str, float | None]:
    return {
        "prefill_s": timing.prefill_s,
        "decode_s": timing.decode_s,
        "total_s": timing.total_s,
        "tok_per_s": timing.tok_per_s,
    }


async def _first_fragment(stream: GenerationStream) -> str | None:
    try:
        return await stream.__anext__()
    except StopAsyncIteration:
        return None


async def _stream_completions(
    *,
    stream: GenerationStream,
    first: str | None,
    model_id: str,
    created: int,
    cmpl_id: str,
    request: Request,
    release: Any,
) -> AsyncIterator[str]:
    def chunk(text: str, finish_reason: str | None) -> str:
        return _sse(
            json.dumps(
                {
                    "id": cmpl_id,
                    "object": "text_completion",
                    "created": created,
                    "model": model_id,
                    "choices": [{"index": 0, "text": text, "finish_reason": finish_reason}],
                },
                ensure_ascii=False,
            )
        )

    cancelled = False
    try:
        if first:
            yield chunk(first, None)
        if first is not None:
            async for fragment in stream:
                # If the client disconnects mid-stream, stop consuming promptly.
                if await request.is_disconnected():
                    cancelled = True
                    break
                yield chunk(fragment, None)
    except asyncio.CancelledError:
        cancelled = True
        raise
    except Exception as exc:
        error_type = "invalid_request_error" if isinstance(exc, (TokenizationFailure, ContextOverflow)) else "server_error"
        yield _sse(
            json.dumps(
                {"error": {"message": str(exc), "type": error_type, "param": None, "code": None}},
                ensure_ascii=False,
            )
        )
    finally:
        stream.cancel()
        release()

        # Terminal chunk + DONE (skip if the request was cancelled/disconnected).
        if not cancelled:
            terminal: dict[str, Any] = {
                "id": cmpl_id,
                "object": "text_completion",
                "created": created,
                "model": model_id,
                "choices": [{"index": 0, "text": "", "finish_reason": stream.finish_reason or "stop"}],
                "usage": _usage_dict(stream.usage),
                "x_llmsession_timing": _timing_dict(stream.timing),
            }
            yield _sse(json.dumps(terminal, ensure_ascii=False))
            yield "data: [DONE]\n\n"


def _parse_completion_request(
    payload: dict[str, Any], *, http_max_completion_tokens: int | None = None
) -> tuple[Prompt, SamplingParameters, int | None, list[str] | None, bool]:
    raw_prompt = payload.get("prompt")
    raw_messages = payload.get("messages")
    if raw_messages is not None:
        prompt = Prompt.chat(_parse_messages(raw_messages))
    elif isinstance(raw_prompt, str) and raw_prompt:
        prompt = Prompt(text=raw_prompt)
    else:
        raise HTTPException(status_code=400, detail="'prompt' must be a non-empty string (or pass 'messages').")

    max_tokens = payload.get("max_tokens")
    if max_tokens is not None:
        try:
            max_tokens = int(max_tokens)
        except Exception as exc:
            raise HTTPException(status_code=400, detail="'max_tokens' must be an integer.") from exc
        if max_tokens <= 0:
            raise HTTPException(status_code=400, detail="'max_tokens' must be > 0.")
    if http_max_completion_tokens is not None:
        if max_tokens is None:
            max_tokens = http_max_completion_tokens
        elif max_tokens > http_max_completion_tokens:
            raise HTTPException(
                status_code=400,
                detail=f"'max_tokens' must be <= {http_max_completion_tokens}.",
            )

    stop = payload.get("stop")
    if stop is None:
        stop_list: list[str] | None = None
    elif isinstance(stop, str):
        stop_list = [stop]
    elif isinstance(stop, list) and all(isinstance(s, str) for s in stop):
        stop_list = [s for s in stop if s]
    else:
        raise HTTPException(status_code=400, detail="'stop' must be a string or a list of strings.")

    fields: dict[str, Any] = {}
    for name, cast in (
        ("temperature", float),
        ("top_p", float),
        ("top_k", int),
        ("repeat_penalty", float),
        ("penalty_last_n", int),
        ("seed", int),
    ):
        value = payload.get(name)
        if value is None:
            continue
        try:
            fields[name] = cast(value)
        except Exception as exc:
            raise HTTPException(status_code=400, detail=f"'{name}' must be a number.") from exc

    params = SamplingParameters(**fields)
    try:
        params.validate()
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    stream = payload.get("stream", False)
    if not isinstance(stream, bool):
        raise HTTPException(status_code=400, detail="'stream' must be a boolean.")

    return prompt, params, max_tokens, stop_list, stream


def _parse_messages(raw_messages: Any) -> list[ChatMessage]:
    if not isinstance(raw_messages, list) or not raw_messages:
        raise HTTPException(status_code=400, detail="'messages' must be a non-empty list.")

    messages: list[ChatMessage] = []
    for msg in raw_messages:
        if not isinstance(msg, dict):
            raise HTTPException(status_code=400, detail="Each message must be an object.")
        role = msg.get("role")
        if role not in {"system", "user", "assistant"}:
            raise HTTPException(status_code=400, detail=f"Invalid message role: {role!r}.")
        messages.append(ChatMessage(role=role, content=_coerce_content(msg.get("content"))))
    return messages


def _coerce_content(content: Any) -> str:
    if content is None:
        return ""
    if isinstance(content, str):
        return content

    # Minimal support for OpenAI "content parts" format (text-only).
    if isinstance(content, list):
        parts: list[str] = []
        for part in content:
            if not isinstance(part, dict):
                continue
            if part.get("type") != "text":
                continue
            text = part.get("text")
            if isinstance(text, str):
                parts.append(text)
        return "".join(parts)

    raise HTTPException(status_code=400, detail="Unsupported message content type.")
