"""
Bounded Event Channel

Decouples the blocking binlog reader from the processing loop so a run can
be cancelled between events even while the reader waits for the server.
"""

import contextvars
import logging
import queue
import threading
from typing import Any, Iterable, Iterator, Optional

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 1000
POLL_INTERVAL = 0.5


class CancellationToken:
    """Explicit cancellation signal shared between the caller and a run."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._event.wait(timeout)


class _EndOfStream:
    pass


class _Failure:
    def __init__(self, error: BaseException):
        self.error = error


_END = _EndOfStream()


class EventChannel:
    """
    Bounded FIFO fed by a reader thread.

    The reader thread iterates ``source`` and blocks when the channel is
    full. Errors raised by the source are re-raised in the consumer. The
    thread runs in a copy of the creating context, so the run id reaches
    log records written while reading.
    """

    def __init__(
        self,
        source: Iterable[Any],
        capacity: int = DEFAULT_CAPACITY,
        poll_interval: float = POLL_INTERVAL
    ):
        self._source = source
        self._queue: "queue.Queue[Any]" = queue.Queue(maxsize=capacity)
        self._poll_interval = poll_interval
        self._stopped = threading.Event()
        self._thread = threading.Thread(
            target=contextvars.copy_context().run,
            args=(self._pump,),
            name="binlog-reader",
            daemon=True
        )

    def start(self) -> "EventChannel":
        self._thread.start()
        return self

    def _put(self, item: Any) -> bool:
        while not self._stopped.is_set():
            try:
                self._queue.put(item, timeout=self._poll_interval)
                return True
            except queue.Full:
                continue
        return False

    def _pump(self) -> None:
        try:
            for item in self._source:
                if not self._put(item):
                    return
        except Exception as e:
            self._put(_Failure(e))
            return
        self._put(_END)

    def drain(self, cancel: Optional[CancellationToken] = None) -> Iterator[Any]:
        """
        Yield items in order until the source ends or ``cancel`` fires.

        Raises:
            Exception: Whatever the source raised while being read
        """
        while True:
            if cancel is not None and cancel.cancelled:
                logger.info("Event channel drain cancelled")
                return
            try:
                item = self._queue.get(timeout=self._poll_interval)
            except queue.Empty:
                continue

            if item is _END:
                return
            if isinstance(item, _Failure):
                raise item.error
            yield item

    def close(self, join_timeout: float = 2.0) -> None:
        """Stop the reader thread; the source must be disconnected separately."""
        self._stopped.set()
        if self._thread.is_alive():
            self._thread.join(join_timeout)
