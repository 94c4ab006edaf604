import asyncio
import gc
import threading

import pytest

from llmsession.engine.errors import ContextOverflow, DecodeFailure
from llmsession.engine.streaming import _StopSequenceFilter
from llmsession.engine.types import ChatMessage, GenerationState, Prompt, SamplingParameters

GREEDY = SamplingParameters.greedy()


def test_stop_filter_holds_back_partial_stop() -> None:
    f = _StopSequenceFilter(["END"])
    out = f.feed("hello E")
    out += f.feed("N")
    assert "E" not in out
    out += f.feed("D tail")
    assert out == "hello "
    assert f.stopped
    assert f.feed("more") == ""


def test_stop_filter_flush_returns_tail() -> None:
    f = _StopSequenceFilter(["END"])
    out = f.feed("abcEN")
    assert out + f.flush() == "abcEN"


def test_stop_filter_without_stops_passes_through() -> None:
    f = _StopSequenceFilter([])
    assert f.feed("abc") == "abc"
    assert f.flush() == ""


def test_pull_iteration_yields_reply(make_session) -> None:
    session = make_session()
    stream = session.generate("Hi", GREEDY)
    assert stream.state is GenerationState.IDLE

    fragments = list(stream)

    assert "".join(fragments) == "Hello, world!"
    assert stream.state is GenerationState.COMPLETED
    assert stream.finish_reason == "stop"
    assert stream.usage.prompt_tokens == 3
    assert stream.usage.completion_tokens == 13
    assert stream.timing.total_s is not None
    assert not session.queue.busy


def test_generation_is_lazy(make_session) -> None:
    session = make_session()
    backend = session._backend
    session.generate("Hi", GREEDY)
    assert backend.decode_log == []
    assert not session.queue.busy


def test_stream_is_consumed_once(make_session) -> None:
    session = make_session()
    stream = session.generate("Hi", GREEDY)
    list(stream)
    with pytest.raises(RuntimeError):
        stream.subscribe(lambda text: None)


def test_max_tokens_finishes_with_length(make_session) -> None:
    session = make_session()
    stream = session.generate("Hi", GREEDY, max_tokens=5)
    assert stream.result().text == "Hello"
    assert stream.finish_reason == "length"
    assert stream.usage.completion_tokens == 5


def test_stop_sequence_ends_generation(make_session) -> None:
    session = make_session()
    completion = session.complete("Hi", GREEDY, stop=[", w"])
    assert completion.text == "Hello"
    assert completion.finish_reason == "stop"


def test_context_limit_finishes_with_length(make_session) -> None:
    session = make_session(context_length=20)
    completion = session.complete("abcdefghij", GREEDY)
    assert completion.finish_reason == "length"
    assert completion.text == "Hello, wor"
    assert completion.usage.prompt_tokens == 11
    assert completion.usage.completion_tokens == 10


def test_overlong_prompt_overflows_then_session_recovers(make_session) -> None:
    session = make_session(context_length=16)
    stream = session.generate("x" * 40, GREEDY)
    with pytest.raises(ContextOverflow) as exc_info:
        list(stream)
    assert exc_info.value.operation == "generate"
    assert stream.state is GenerationState.FAILED
    assert stream.finish_reason == "error"
    assert not session.queue.busy

    assert session.complete("Hi", GREEDY, max_tokens=3).text == "Hel"


def test_decode_failure_mid_stream(make_session) -> None:
    session = make_session(fail_decode_at=3)
    stream = session.generate("Hi", GREEDY)
    received = []
    with pytest.raises(DecodeFailure):
        for fragment in stream:
            received.append(fragment)

    assert "".join(received) == "Hel"
    assert stream.state is GenerationState.FAILED
    assert session.batches.live_batches == 0
    assert not session.queue.busy


def test_missing_logits_is_decode_failure(make_session) -> None:
    session = make_session(no_logits=True)
    with pytest.raises(DecodeFailure):
        session.complete("Hi", GREEDY)


def test_cancel_after_n_fragments(make_session) -> None:
    session = make_session(filler="z")
    stream = session.generate("Hi", GREEDY)

    received = []
    for fragment in stream:
        received.append(fragment)
        if len(received) == 4:
            stream.cancel()

    assert received == ["H", "e", "l", "l"]
    assert stream.fragments == received
    assert stream.state is GenerationState.CANCELLED
    assert stream.finish_reason == "cancelled"
    assert session.batches.live_batches == 0
    assert not session.queue.busy


def test_cancel_before_start(make_session) -> None:
    session = make_session()
    stream = session.generate("Hi", GREEDY)
    stream.cancel()

    assert list(stream) == []
    assert stream.state is GenerationState.CANCELLED
    assert session._backend.decode_log == []


def test_breaking_out_then_close_releases_queue(make_session) -> None:
    session = make_session(filler="z")
    with session.generate("Hi", GREEDY) as stream:
        for fragment in stream:
            break
    assert stream.state is GenerationState.CANCELLED
    assert not session.queue.busy


def test_subscribe_delivers_fragments(make_session) -> None:
    session = make_session()
    received = []
    finished = threading.Event()

    stream = session.generate("Hi", GREEDY)
    stream.subscribe(received.append, on_complete=lambda s: finished.set())
    completion = stream.join(5)

    assert finished.is_set()
    assert "".join(received) == "Hello, world!"
    assert completion.text == "Hello, world!"
    assert completion.finish_reason == "stop"


def test_subscribe_cancel_after_n_fragments(make_session) -> None:
    session = make_session(filler="z")
    stream = session.generate("Hi", GREEDY)
    received = []

    def sink(text: str) -> None:
        received.append(text)
        if len(received) == 3:
            stream.cancel()

    stream.subscribe(sink)
    stream.join(5)

    assert received == ["H", "e", "l"]
    assert stream.state is GenerationState.CANCELLED
    assert session.batches.live_batches == 0
    assert not session.queue.busy


def test_subscriber_error_fails_stream(make_session) -> None:
    session = make_session()
    stream = session.generate("Hi", GREEDY)

    def sink(text: str) -> None:
        raise ValueError("sink broke")

    stream.subscribe(sink)
    with pytest.raises(ValueError, match="sink broke"):
        stream.join(5)
    assert stream.state is GenerationState.FAILED
    assert not session.queue.busy


def test_cancel_after_timeout(make_session) -> None:
    session = make_session(filler="z", decode_delay=0.01)
    stream = session.generate("Hi", GREEDY)
    stream.subscribe(lambda text: None)
    stream.cancel_after(0.05)
    stream.join(5)

    assert stream.state is GenerationState.CANCELLED
    assert stream.usage.completion_tokens > 0


def test_async_iteration(make_session) -> None:
    session = make_session()

    async def run():
        stream = session.generate("Hi", GREEDY)
        return [fragment async for fragment in stream], stream

    fragments, stream = asyncio.run(run())
    assert "".join(fragments) == "Hello, world!"
    assert stream.state is GenerationState.COMPLETED


def test_async_cancel_after_n_fragments(make_session) -> None:
    session = make_session(filler="z")

    async def run():
        stream = session.generate("Hi", GREEDY)
        received = []
        async for fragment in stream:
            received.append(fragment)
            if len(received) == 2:
                stream.cancel()
        return received, stream

    received, stream = asyncio.run(run())
    assert received == ["H", "e"]
    assert stream.state is GenerationState.CANCELLED
    assert not session.queue.busy


def test_acomplete(make_session) -> None:
    session = make_session()
    completion = asyncio.run(session.acomplete("Hi", GREEDY, max_tokens=4))
    assert completion.text == "Hell"
    assert completion.finish_reason == "length"


def test_chat_prompt_uses_rendered_template(make_session) -> None:
    session = make_session()
    prompt = Prompt.chat([ChatMessage(role="user", content="Hi")])
    completion = session.complete(prompt, GREEDY)

    assert completion.text == "Hello, world!"
    # The default transcript rendering, tokenized without BOS.
    assert completion.usage.prompt_tokens == len("user: Hi\nassistant:")


def test_multibyte_characters_are_not_split(make_session) -> None:
    session = make_session(reply="héllo ✓")
    fragments = list(session.generate("Hi", GREEDY))
    assert "".join(fragments) == "héllo ✓"
    assert all("�" not in f for f in fragments)


def test_cancel_after_iter_before_first_pull(make_session) -> None:
    session = make_session()
    stream = session.generate("Hi", GREEDY)
    it = iter(stream)
    stream.cancel()

    assert list(it) == []
    assert stream.state is GenerationState.CANCELLED
    assert stream.wait(0)
    assert stream.result().finish_reason == "cancelled"
    assert session._backend.decode_log == []
    assert not session.queue.busy


def test_close_after_aiter_before_first_pull(make_session) -> None:
    session = make_session()
    stream = session.generate("Hi", GREEDY)
    stream.__aiter__()
    stream.close()

    assert stream.state is GenerationState.CANCELLED
    assert stream.done


def test_dropped_stream_releases_queue_without_gc(make_session) -> None:
    session = make_session(filler="z")
    gc.disable()
    try:
        stream = session.generate("Hi", GREEDY)
        first = next(iter(stream))
        assert first == "H"
        assert session.queue.active_operation == "generate"

        del stream
        assert not session.queue.busy
        assert len(session.embed("x")) == session.embedding_dimension
    finally:
        gc.enable()
