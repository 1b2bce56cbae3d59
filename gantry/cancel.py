"""Per-turn cancellation token and the helpers that wait on it."""

import contextlib
import logging
import queue
import signal
import threading
from collections.abc import Iterable, Iterator
from typing import Any, TypeVar

from .report import TurnCancelled

logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.1  # seconds between cancellation checks at suspend points

T = TypeVar("T")

_DONE = object()


class CancellationToken:
    """One-shot cancellation flag shared by everything working on a turn."""

    def __init__(self):
        self._event = threading.Event()
        self.reason: str | None = None

    def cancel(self, reason: str = "cancelled by user") -> None:
        if not self._event.is_set():
            self.reason = reason
            logger.debug("cancellation requested: %s", reason)
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise TurnCancelled(self.reason or "cancelled")

    def wait(self, timeout: float | None = None) -> bool:
        return self._event.wait(timeout)


class Failure:
    """Wraps an exception raised on a helper thread so the waiter can re-raise it."""

    __slots__ = ("exc",)

    def __init__(self, exc: BaseException):
        self.exc = exc


def iter_with_cancel(
    iterable: Iterable[T],
    token: CancellationToken,
    poll_interval: float = POLL_INTERVAL,
) -> Iterator[T]:
    """Yield items from *iterable*, raising TurnCancelled as soon as *token* fires.

    The source is drained on a daemon thread so a blocked network read never
    delays cancellation by more than *poll_interval*. When an item and the
    cancellation are both ready, cancellation wins. Exceptions raised by the
    source are re-raised in the consumer.
    """
    q: queue.Queue = queue.Queue()
    stop = threading.Event()

    def _producer():
        try:
            for item in iterable:
                if stop.is_set():
                    break
                q.put(item)
        except BaseException as e:  # forwarded to the consumer
            q.put(Failure(e))
        finally:
            q.put(_DONE)

    threading.Thread(target=_producer, daemon=True, name="stream-reader").start()

    try:
        while True:
            token.raise_if_cancelled()
            try:
                item = q.get(timeout=poll_interval)
            except queue.Empty:
                continue
            token.raise_if_cancelled()
            if item is _DONE:
                return
            if isinstance(item, Failure):
                raise item.exc
            yield item
    finally:
        stop.set()


def wait_for_reply(
    q: "queue.Queue[Any]",
    token: CancellationToken,
    poll_interval: float = POLL_INTERVAL,
) -> Any:
    """Block on *q* until a reply arrives; raise TurnCancelled if *token* fires first."""
    while True:
        token.raise_if_cancelled()
        try:
            reply = q.get(timeout=poll_interval)
        except queue.Empty:
            continue
        token.raise_if_cancelled()
        if isinstance(reply, Failure):
            raise reply.exc
        return reply


@contextlib.contextmanager
def cancel_on_sigint(token: CancellationToken):
    """Route Ctrl-C to *token* instead of raising KeyboardInterrupt.

    Only installs the handler from the main thread; elsewhere it is a no-op.
    """
    if threading.current_thread() is not threading.main_thread():
        yield token
        return

    def _handler(signum, frame):
        token.cancel("interrupted")

    previous = signal.signal(signal.SIGINT, _handler)
    try:
        yield token
    finally:
        signal.signal(signal.SIGINT, previous)
