import threading
import time

from llmsession.engine.scheduling import OperationQueue


def test_turns_are_exclusive_and_fifo() -> None:
    queue = OperationQueue()
    order: list[int] = []
    inside = 0
    max_inside = 0
    lock = threading.Lock()

    holder_in = threading.Event()
    release = threading.Event()

    def holder() -> None:
        with queue.turn("hold"):
            holder_in.set()
            release.wait(5)

    def worker(i: int) -> None:
        nonlocal inside, max_inside
        with queue.turn(f"op-{i}"):
            with lock:
                inside += 1
                max_inside = max(max_inside, inside)
            order.append(i)
            time.sleep(0.001)
            with lock:
                inside -= 1

    t0 = threading.Thread(target=holder)
    t0.start()
    assert holder_in.wait(5)

    threads = []
    for i in range(8):
        t = threading.Thread(target=worker, args=(i,))
        t.start()
        threads.append(t)
        # Wait until the worker has taken its ticket before starting the next one.
        deadline = time.monotonic() + 5
        while queue.pending < i + 2 and time.monotonic() < deadline:
            time.sleep(0.001)

    assert queue.active_operation == "hold"
    release.set()
    for t in [t0, *threads]:
        t.join(5)

    assert order == list(range(8))
    assert max_inside == 1
    assert not queue.busy
    assert queue.active_operation is None


def test_turn_is_released_on_error() -> None:
    queue = OperationQueue()
    try:
        with queue.turn("fail"):
            raise ValueError("boom")
    except ValueError:
        pass

    assert not queue.busy
    with queue.turn("next"):
        assert queue.active_operation == "next"


def test_turn_can_be_released_from_another_thread() -> None:
    queue = OperationQueue()
    cm = queue.turn("stream")
    cm.__enter__()

    t = threading.Thread(target=lambda: cm.__exit__(None, None, None))
    t.start()
    t.join(5)

    assert not queue.busy
