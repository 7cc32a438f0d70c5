import asyncio
import codecs
import contextlib
import logging
import struct
from collections import deque
from typing import Awaitable, Callable, Optional

from ..config import Settings, settings as default_settings
from .broadcast import Broadcaster, Subscription
from .errors import ServiceError
from .runtime import ContainerRuntime

logger = logging.getLogger(__name__)

# stream type (stdin/stdout/stderr), three zero bytes, big-endian payload length
FRAME_HEADER = struct.Struct(">BxxxL")
_STREAM_TYPES = (0, 1, 2)


class LogBuffer:
    def __init__(self, capacity: int) -> None:
        self._lines: deque[str] = deque(maxlen=capacity)

    def __len__(self) -> int:
        return len(self._lines)

    def append(self, line: str) -> None:
        self._lines.append(line)

    def snapshot(self) -> list[str]:
        return list(self._lines)


class FrameDemuxer:
    """Turns docker log chunks into text lines.

    Containers without a TTY produce multiplexed frames, each prefixed by an
    8-byte header; TTY containers produce raw bytes. The mode is decided from
    the first bytes of the stream. Payloads are decoded incrementally so a
    multi-byte character split across chunks survives, and a line is only
    emitted once its newline arrived.
    """

    def __init__(self, encoding: str = "utf-8") -> None:
        self._pending = b""
        self._framed: Optional[bool] = None
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._partial = ""

    def feed(self, chunk: bytes) -> list[str]:
        self._pending += chunk
        if self._framed is None:
            self._framed = self._detect()
            if self._framed is None:
                return []
        if self._framed:
            payload = self._unframe()
        else:
            payload, self._pending = self._pending, b""
        return self._split(self._decoder.decode(payload))

    def flush(self) -> list[str]:
        # An incomplete frame at end of stream is dropped
        tail = b"" if self._framed else self._pending
        self._pending = b""
        lines = self._split(self._decoder.decode(tail, final=True))
        if self._partial:
            lines.append(self._partial)
            self._partial = ""
        return lines

    def _detect(self) -> Optional[bool]:
        if not self._pending:
            return None
        if self._pending[0] not in _STREAM_TYPES:
            return False
        if len(self._pending) < 4:
            return None
        return self._pending[1:4] == b"\x00\x00\x00"

    def _unframe(self) -> bytes:
        parts = []
        while len(self._pending) >= FRAME_HEADER.size:
            _, length = FRAME_HEADER.unpack_from(self._pending)
            end = FRAME_HEADER.size + length
            if len(self._pending) < end:
                break
            parts.append(self._pending[FRAME_HEADER.size:end])
            self._pending = self._pending[end:]
        return b"".join(parts)

    def _split(self, text: str) -> list[str]:
        if not text:
            return []
        lines = (self._partial + text).split("\n")
        self._partial = lines.pop()
        return [line.rstrip("\r") for line in lines]


class LogStreamManager:
    """Owns the single live log stream of the managed container.

    Every line goes into the bounded history buffer and out to all observers.
    ``on_data``, ``on_end`` and ``on_error`` are the three transitions of the
    stream; anything a superseded stream reports is ignored, which keeps at
    most one stream feeding the buffer.
    """

    def __init__(
        self,
        runtime: ContainerRuntime,
        broadcaster: Broadcaster,
        settings: Optional[Settings] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.settings = settings or default_settings
        self.runtime = runtime
        self.broadcaster = broadcaster
        self.buffer = LogBuffer(self.settings.log_buffer_size)
        self._sleep = sleep
        self._stream = None
        self._demuxer: Optional[FrameDemuxer] = None
        self._pump_task: Optional[asyncio.Task] = None
        self._reattach_task: Optional[asyncio.Task] = None
        self._generation = 0

    @property
    def attached(self) -> bool:
        return self._stream is not None

    def broadcast(self, line: str) -> None:
        self.buffer.append(line)
        self.broadcaster.publish_log(line)

    def subscribe(self) -> tuple[list[str], Subscription]:
        # No await between snapshot and enrolment: no gaps, no duplicates
        return self.buffer.snapshot(), self.broadcaster.subscribe()

    def unsubscribe(self, subscription: Subscription) -> None:
        self.broadcaster.unsubscribe(subscription)

    def recent(self) -> list[str]:
        return self.buffer.snapshot()

    async def attach(self, handle, silent: bool = False) -> bool:
        await self.detach()
        generation = self._generation
        logger.info("Attaching log stream")
        if not silent:
            self.broadcast("[System] Attaching log stream...")
        try:
            stream = await self.runtime.open_log_stream(handle, tail=self.settings.log_tail_lines)
        except ServiceError as exc:
            logger.error("Failed to attach log stream: %s", exc.message)
            self.broadcast(f"[System] Failed to attach logs: {exc.message}")
            return False
        if generation != self._generation:
            # Superseded by another attach/detach while opening
            stream.close()
            return False
        self._stream = stream
        self._demuxer = FrameDemuxer()
        self._pump_task = asyncio.create_task(self._pump(stream, handle, generation))
        return True

    async def detach(self) -> None:
        self._generation += 1
        self._cancel_reattach()
        stream, task = self._stream, self._pump_task
        self._stream = None
        self._pump_task = None
        self._demuxer = None
        if stream is not None:
            stream.close()
            logger.info("Destroyed previous log stream")
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def shutdown(self) -> None:
        await self.detach()

    async def _pump(self, stream, handle, generation: int) -> None:
        while True:
            try:
                chunk = await stream.read()
                if chunk is not None and generation == self._generation:
                    self.on_data(chunk)
            except Exception as exc:
                if generation == self._generation:
                    self.on_error(exc)
                return
            if generation != self._generation:
                return
            if chunk is None:
                self.on_end(handle)
                return

    def on_data(self, chunk: bytes) -> None:
        for line in self._demuxer.feed(chunk):
            self.broadcast(line)

    def on_end(self, handle) -> None:
        for line in self._demuxer.flush():
            self.broadcast(line)
        self._release()
        logger.info("Log stream ended")
        self.broadcast("[System] Log stream ended.")
        self._reattach_task = asyncio.create_task(self._reattach_later(handle, self._generation))

    def on_error(self, exc: BaseException) -> None:
        self._release()
        logger.error("Log stream error: %s", exc)
        self.broadcast(f"[System] Log stream error: {exc}")

    def _release(self) -> None:
        stream = self._stream
        self._stream = None
        self._pump_task = None
        self._demuxer = None
        if stream is not None:
            stream.close()

    def _cancel_reattach(self) -> None:
        task = self._reattach_task
        self._reattach_task = None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _reattach_later(self, handle, generation: int) -> None:
        await self._sleep(self.settings.reattach_delay_seconds)
        if generation != self._generation or self._stream is not None:
            return
        try:
            state = await self.runtime.inspect(handle)
        except ServiceError as exc:
            logger.info("Container no longer available for reattachment: %s", exc.message)
            return
        if generation != self._generation or not state.running:
            return
        self._reattach_task = None
        logger.info("Attempting to reattach log stream")
        await self.attach(handle)
