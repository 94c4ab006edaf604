import pytest

from llmsession.engine.batch import BatchManager
from llmsession.engine.errors import ContextOverflow, DecodeFailure


def _manager(backend, context_length: int = 16):
    model = backend.load_model("fake-model")
    context = backend.create_context(model, context_length=context_length)
    return BatchManager(backend, context_length=context_length), context


def test_decode_advances_position_and_frees_batch(backend) -> None:
    batches, context = _manager(backend)

    result = batches.decode(context, [10, 11, 12])

    assert result.n_tokens == 3
    assert result.n_past == 3
    assert batches.remaining(context) == 13
    assert backend.live_batches == 0
    assert batches.live_batches == 0


def test_overflow_is_rejected_before_the_engine_is_called(backend) -> None:
    batches, context = _manager(backend, context_length=4)

    with pytest.raises(ContextOverflow):
        batches.decode(context, [10, 11, 12, 13, 14])

    assert backend.decode_log == []
    assert backend.live_batches == 0


def test_empty_batch_is_a_decode_failure(backend) -> None:
    batches, context = _manager(backend)
    with pytest.raises(DecodeFailure):
        batches.decode(context, [])


@pytest.mark.parametrize(
    "code, fragment",
    [
        (1, "No KV slot"),
        (2, "aborted"),
        (-1, "Invalid input batch"),
        (-2, "compute graph"),
        (-3, "Graph computation failed"),
        (42, "Unknown internal error"),
    ],
)
def test_engine_codes_map_to_messages(backend_factory, code, fragment) -> None:
    backend = backend_factory(fail_decode_at=0, fail_code=code)
    batches, context = _manager(backend)

    with pytest.raises(DecodeFailure) as exc_info:
        batches.decode(context, [10])

    assert fragment in str(exc_info.value)
    assert f"code {code}" in str(exc_info.value)
    assert backend.live_batches == 0


def test_engine_exception_is_translated_and_batch_released(backend) -> None:
    batches, context = _manager(backend)

    def boom(context, batch):
        raise RuntimeError("device lost")

    backend.decode = boom
    with pytest.raises(DecodeFailure) as exc_info:
        batches.decode(context, [10])

    assert isinstance(exc_info.value.__cause__, RuntimeError)
    assert backend.live_batches == 0
    assert batches.live_batches == 0
