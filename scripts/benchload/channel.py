"""
Bounded batch channel between producer threads and the consumer.

Producers block in push() while the channel is full; the consumer blocks in
pop() while it is empty and at least one producer is still running. Once
every producer has called producer_done() and the queue is drained, pop()
returns None. Either side may abort() the channel, which wakes everyone
and makes further push()/pop() calls raise ChannelClosedError.
"""
import threading
from collections import deque
from typing import Deque, Iterator, Optional

from .config import ERR_CHANNEL_CLOSED
from .encoding import Batch
from .metrics import RowCounter


class ChannelClosedError(RuntimeError):
    """Push after close, or the channel was aborted by a failing peer."""


class BoundedChannel:
    """Fixed-capacity multi-producer FIFO of batches."""

    def __init__(self, capacity: int, producers: int):
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        if producers < 0:
            raise ValueError(f"producers must be >= 0, got {producers}")
        self.capacity = capacity
        self.high_water = 0
        self._items: Deque[Batch] = deque()
        self._open_producers = producers
        self._abort_reason: Optional[BaseException] = None
        self._cond = threading.Condition()

    def __len__(self) -> int:
        with self._cond:
            return len(self._items)

    @property
    def closed(self) -> bool:
        """True once every producer is done (items may still be queued)."""
        with self._cond:
            return self._open_producers == 0

    @property
    def abort_reason(self) -> Optional[BaseException]:
        with self._cond:
            return self._abort_reason

    def _raise_if_aborted(self):
        if self._abort_reason is not None:
            raise ChannelClosedError(
                f"Channel aborted: {self._abort_reason}"
            ) from self._abort_reason

    def push(self, batch: Batch) -> None:
        """Enqueue a batch, waiting while the channel is full."""
        with self._cond:
            while len(self._items) >= self.capacity and self._abort_reason is None:
                self._cond.wait()
            self._raise_if_aborted()
            if self._open_producers == 0:
                raise ChannelClosedError(ERR_CHANNEL_CLOSED)
            self._items.append(batch)
            self.high_water = max(self.high_water, len(self._items))
            self._cond.notify_all()

    def producer_done(self) -> None:
        """Release one producer handle; the last one closes the channel."""
        with self._cond:
            if self._open_producers == 0:
                raise ChannelClosedError("producer_done called on a closed channel")
            self._open_producers -= 1
            self._cond.notify_all()

    def try_pop(self) -> Optional[Batch]:
        """Take a batch if one is queued right now, else None."""
        with self._cond:
            self._raise_if_aborted()
            if not self._items:
                return None
            batch = self._items.popleft()
            self._cond.notify_all()
            return batch

    def pop(self) -> Optional[Batch]:
        """
        Take the next batch, suspending while the channel is empty and open.
        Returns None at end of stream.
        """
        with self._cond:
            while not self._items:
                self._raise_if_aborted()
                if self._open_producers == 0:
                    return None
                self._cond.wait()
            self._raise_if_aborted()
            batch = self._items.popleft()
            self._cond.notify_all()
            return batch

    def abort(self, reason: BaseException) -> bool:
        """
        Close the channel on failure and wake all waiters.
        Returns True if this call recorded the root cause.
        """
        with self._cond:
            first = self._abort_reason is None
            if first:
                self._abort_reason = reason
                self._items.clear()
            self._cond.notify_all()
            return first

    def __iter__(self) -> Iterator[Batch]:
        while True:
            batch = self.pop()
            if batch is None:
                return
            yield batch


class ChannelReader:
    """
    Pull-based byte stream over a channel, for use as a request or COPY body.

    read() serves bytes from the current batch; when it runs out it tries a
    non-blocking pop, and if the channel is empty but still open it suspends
    in pop() until a producer pushes or the channel closes. At end of stream
    the optional suffix is served, then b"".
    """

    def __init__(
        self,
        channel: BoundedChannel,
        counter: Optional[RowCounter] = None,
        prefix: bytes = b"",
        suffix: bytes = b"",
        chunk_size: int = 1024 * 1024
    ):
        self.channel = channel
        self.counter = counter
        self.suffix = suffix
        self.chunk_size = chunk_size
        self.rows = 0
        self.bytes_served = 0
        self._current = memoryview(prefix)
        self._pos = 0
        self._exhausted = False

    def _advance(self) -> bool:
        if self._exhausted:
            return False

        batch = self.channel.try_pop()
        if batch is None:
            batch = self.channel.pop()

        if batch is not None:
            self._current = memoryview(batch.data)
            self._pos = 0
            self.rows += batch.rows
            if self.counter is not None:
                self.counter.add(batch.rows)
            return True

        self._exhausted = True
        self._current = memoryview(self.suffix)
        self._pos = 0
        return len(self.suffix) > 0

    def read(self, size: Optional[int] = -1) -> bytes:
        if size is None or size < 0:
            return b"".join(iter(lambda: self.read(self.chunk_size), b""))
        if size == 0:
            return b""

        while self._pos >= len(self._current):
            if not self._advance():
                return b""

        end = min(len(self._current), self._pos + size)
        chunk = self._current[self._pos:end].tobytes()
        self._pos = end
        self.bytes_served += len(chunk)
        return chunk

    def readable(self) -> bool:
        return True

    def __iter__(self) -> Iterator[bytes]:
        while True:
            chunk = self.read(self.chunk_size)
            if not chunk:
                return
            yield chunk
