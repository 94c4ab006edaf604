import pytest

from llmsession.engine.modes import ContextMode, ModeController


def _controller(backend):
    model = backend.load_model("fake-model")
    context = backend.create_context(model, context_length=16)
    return ModeController(backend, context), context


def test_embedding_mode_is_scoped(backend) -> None:
    modes, context = _controller(backend)
    assert modes.mode is ContextMode.GENERATION

    with modes.embedding_mode() as permit:
        assert permit.mode is ContextMode.EMBEDDING
        assert permit.context is context
        assert modes.mode is ContextMode.EMBEDDING
        assert context.embedding_mode is True

    assert modes.mode is ContextMode.GENERATION
    assert context.embedding_mode is False
    assert backend.mode_log == [True, False]


def test_mode_restored_when_block_raises(backend) -> None:
    modes, context = _controller(backend)

    with pytest.raises(KeyError):
        with modes.embedding_mode():
            raise KeyError("boom")

    assert modes.mode is ContextMode.GENERATION
    assert context.embedding_mode is False
    modes.ensure_generation()


def test_mode_restored_when_switch_fails(backend) -> None:
    modes, context = _controller(backend)
    calls = []

    def flaky(context, enabled):
        calls.append(enabled)
        if enabled:
            raise RuntimeError("switch failed")
        context.embedding_mode = False

    backend.set_embedding_mode = flaky
    with pytest.raises(RuntimeError, match="switch failed"):
        with modes.embedding_mode():
            pass

    assert calls == [True, False]
    assert modes.mode is ContextMode.GENERATION


def test_nested_acquisition_is_refused(backend) -> None:
    modes, _ = _controller(backend)

    with modes.embedding_mode():
        with pytest.raises(RuntimeError):
            with modes.embedding_mode():
                pass
        with pytest.raises(RuntimeError):
            modes.ensure_generation()

    # Still usable afterwards.
    with modes.embedding_mode():
        pass
    assert modes.mode is ContextMode.GENERATION
