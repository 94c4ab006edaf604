"""FIFO operation queue: at most one operation touches a context at a time."""

from __future__ import annotations

import contextlib
import logging
import threading
from typing import Iterator

logger = logging.getLogger(__name__)


class OperationQueue:
    """Ticket lock served strictly in arrival order.

    `threading.Lock` makes no fairness promise, so waiters take a ticket and
    are admitted when the serving counter reaches it. Release may happen on a
    different thread than acquisition (streams can be driven from worker
    threads).
    """

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._next_ticket = 0
        self._now_serving = 0
        self._active: str | None = None
        self._abandoned: set[int] = set()

    @property
    def active_operation(self) -> str | None:
        """Name of the operation holding the queue, or None when idle."""
        with self._cond:
            return self._active

    @property
    def pending(self) -> int:
        """Operations waiting or running."""
        with self._cond:
            return self._next_ticket - self._now_serving

    @property
    def busy(self) -> bool:
        return self.pending > 0

    @contextlib.contextmanager
    def turn(self, operation: str) -> Iterator[int]:
        """Wait for this caller's turn, then hold the queue for the block."""
        with self._cond:
            ticket = self._next_ticket
            self._next_ticket += 1
            if ticket != self._now_serving:
                logger.debug("%s waiting for queue (ticket=%d serving=%d)", operation, ticket, self._now_serving)
            try:
                while ticket != self._now_serving:
                    self._cond.wait()
            except BaseException:
                # Interrupted while waiting: give the ticket up so the line keeps moving.
                self._abandoned.add(ticket)
                if ticket == self._now_serving:
                    self._advance()
                raise
            self._active = operation

        try:
            yield ticket
        finally:
            with self._cond:
                self._active = None
                self._advance()

    def _advance(self) -> None:
        self._now_serving += 1
        while self._now_serving in self._abandoned:
            self._abandoned.discard(self._now_serving)
            self._now_serving += 1
        self._cond.notify_all()
