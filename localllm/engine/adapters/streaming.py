"""Bridging blocking engine calls into async token streams."""

from __future__ import annotations

import asyncio
import logging
import threading
import uuid
from typing import AsyncIterator, Callable, Sequence

logger = logging.getLogger(__name__)

# Signature of the blocking producer run on the worker thread:
#   producer(emit, cancel) calls emit(token) for each token and should
#   return early once cancel is set.
Producer = Callable[[Callable[[str], None], threading.Event], None]


class _Failure:
    __slots__ = ("exc",)

    def __init__(self, exc: BaseException) -> None:
        self.exc = exc


async def iterate_in_thread(producer: Producer, *, name: str = "localllm-gen") -> AsyncIterator[str]:
    """Run `producer` on a worker thread and yield its tokens on the event loop.

    Tokens cross into the loop with `call_soon_threadsafe`, so they arrive in
    emission order with one await per token. An exception raised by the
    producer is re-raised here after any tokens emitted before it. If the
    consumer stops early (generator closed or task cancelled) the cancel
    event is set so the producer can stop pulling from the engine.
    """
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue[str | _Failure | None] = asyncio.Queue()
    cancel = threading.Event()

    def emit(token: str) -> None:
        if token and not cancel.is_set():
            loop.call_soon_threadsafe(queue.put_nowait, token)

    def worker() -> None:
        try:
            producer(emit, cancel)
        except Exception as exc:
            loop.call_soon_threadsafe(queue.put_nowait, _Failure(exc))
        finally:
            try:
                loop.call_soon_threadsafe(queue.put_nowait, None)
            except RuntimeError:
                # Event loop already closed; nobody is listening.
                pass

    thread = threading.Thread(target=worker, name=f"{name}-{uuid.uuid4().hex[:8]}", daemon=True)
    thread.start()

    try:
        while True:
            item = await queue.get()
            if item is None:
                break
            if isinstance(item, _Failure):
                raise item.exc
            yield item
    finally:
        # If the consumer stops early (disconnect / generator close), cancel generation promptly.
        cancel.set()


class StopSequenceFilter:
    """Incremental stop-sequence cutter for streamed text.

    Holds back just enough trailing characters to recognize a stop sequence
    split across chunks. Once a stop sequence is seen, everything from it on
    is dropped and `stopped` becomes true.
    """

    def __init__(self, stop_sequences: Sequence[str]) -> None:
        self._stop_sequences = [s for s in stop_sequences if s]
        self._tail_keep = max((len(s) - 1 for s in self._stop_sequences), default=0)
        self._buffer = ""
        self.stopped = False

    def feed(self, text: str) -> str:
        """Add a chunk; return the text that is now safe to emit."""
        if not text or self.stopped:
            return ""

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

    def finish(self) -> str:
        """Flush whatever is still held back at end-of-generation."""
        if self.stopped:
            return ""
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


def cut_at_stop(text: str, stop_sequences: Sequence[str]) -> str:
    """Truncate a complete text at its earliest stop sequence."""
    f = StopSequenceFilter(stop_sequences)
    return f.feed(text) + f.finish()
