"""Stream sinks and the per-stream output fan-out.

VoidSink is the default destination for stdin/stdout/stderr when the caller
supplies none: every chunk written to it is re-emitted to ``data`` listeners
and then dropped.

FanOut copies one child output stream into two places: the caller-visible
sink and the engine's accumulation buffers.
"""

from __future__ import annotations

import codecs
import inspect
import io
import logging
import threading
from typing import Any, Callable, Literal

__all__ = ["VoidSink", "FanOut", "write_chunk"]

logger = logging.getLogger(__name__)

SinkEvent = Literal["data", "end"]


class VoidSink:
    """Pass-through writable that surfaces data as notifications.

    Example:
        sink = VoidSink()
        sink.on("data", lambda chunk: print(len(chunk)))
        sink.write(b"hello")   # prints 5, the bytes are discarded
        sink.end()
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._listeners: dict[str, list[Callable[..., None]]] = {"data": [], "end": []}
        self._ended = False

    @property
    def closed(self) -> bool:
        return self._ended

    def writable(self) -> bool:
        return not self._ended

    def on(self, event: SinkEvent, listener: Callable[..., None]) -> Callable[..., None]:
        """Subscribe to ``data`` (called with the chunk) or ``end`` (no args)."""
        if event not in self._listeners:
            raise ValueError(f"unknown sink event: {event}")
        with self._lock:
            self._listeners[event].append(listener)
        return listener

    def off(self, event: SinkEvent, listener: Callable[..., None]) -> bool:
        with self._lock:
            listeners = self._listeners.get(event, [])
            if listener in listeners:
                listeners.remove(listener)
                return True
        return False

    def write(self, chunk: bytes | str) -> int:
        """Emit ``chunk`` to data listeners and discard it.

        Raises:
            ValueError: If the sink has already ended
        """
        if self._ended:
            raise ValueError("write to ended VoidSink")
        with self._lock:
            listeners = list(self._listeners["data"])
        for listener in listeners:
            listener(chunk)
        return len(chunk)

    def flush(self) -> None:
        pass

    def end(self) -> None:
        """Mark the sink finished and notify ``end`` listeners once."""
        with self._lock:
            if self._ended:
                return
            self._ended = True
            listeners = list(self._listeners["end"])
        for listener in listeners:
            listener()

    close = end

    def __repr__(self) -> str:
        return f"VoidSink(ended={self._ended})"


def write_chunk(sink: Any, chunk: bytes, decoder: codecs.IncrementalDecoder | None = None) -> Any:
    """Write a raw chunk to an arbitrary sink.

    Text streams (``io.TextIOBase``) receive decoded text; everything else
    gets bytes. The return value of ``sink.write`` is passed back so async
    sinks can be awaited.
    """
    if isinstance(sink, io.TextIOBase):
        text = decoder.decode(chunk) if decoder is not None else chunk.decode("utf-8", "replace")
        if not text:
            return None
        return sink.write(text)
    return sink.write(chunk)


class FanOut:
    """One source, two sinks: the caller's sink and the capture buffers.

    Each pushed chunk goes to ``sink`` and is appended to both ``buffer``
    (this stream only) and ``combined`` (all streams, arrival order). A sink
    that fails is detached; capture continues so the child never blocks on
    a full pipe.

    Attributes:
        sink: Caller-visible destination
        buffer: Per-stream capture
        combined: Shared arrival-order capture
        error: First exception raised by the sink, if any
    """

    def __init__(
        self,
        sink: Any,
        buffer: list[bytes],
        combined: list[bytes],
        encoding: str = "utf-8",
    ) -> None:
        self.sink = sink
        self.buffer = buffer
        self.combined = combined
        self.error: Exception | None = None
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")

    async def push(self, chunk: bytes) -> None:
        self.buffer.append(chunk)
        self.combined.append(chunk)

        if self.sink is None or self.error is not None:
            return
        try:
            written = write_chunk(self.sink, chunk, self._decoder)
            if inspect.isawaitable(written):
                await written
        except Exception as e:
            logger.warning(f"Sink {self.sink!r} failed, detaching it: {e}")
            self.error = e

    def close(self) -> None:
        """Flush the text decoder and end VoidSink destinations.

        Caller-owned files are left open.
        """
        if self.sink is None or self.error is not None:
            return
        try:
            if isinstance(self.sink, io.TextIOBase):
                tail = self._decoder.decode(b"", final=True)
                if tail:
                    self.sink.write(tail)
            elif isinstance(self.sink, VoidSink):
                self.sink.end()
        except Exception as e:
            logger.warning(f"Error closing sink {self.sink!r}: {e}")
            self.error = e
