"""
Serialised command execution over a single half-duplex channel.

The ELM327 processes one command at a time and drops input that arrives while
it is busy, so every request goes through one FIFO queue drained by a single
task: wait out the inter-command gap, write ``payload + CR``, then wait for
the prompt-terminated frame or the command deadline.
"""
from __future__ import annotations

import asyncio
import collections
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict, Optional

from .errors import CommandTimeout, SessionClosed, TransportError
from .frames import PromptFrameParser
from .transport import Transport

logger = logging.getLogger(__name__)


class Clock:
    """Time source for spacing and deadlines. Tests may substitute their own."""

    def monotonic(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


@dataclass
class Command:
    payload: str
    issued_at: float
    timeout_ms: float
    future: "asyncio.Future[str]" = field(repr=False)

    @property
    def deadline(self) -> float:
        return self.issued_at + self.timeout_ms / 1000.0


class CommandScheduler:
    """
    FIFO command queue with one command in flight.

    ``last_send`` is recorded when the response (or timeout) for a command is
    observed, so the minimum delay always separates the end of one exchange
    from the next physical write.
    """

    def __init__(
        self,
        min_delay_ms: float = 150.0,
        default_timeout_ms: float = 3000.0,
        terminator: str = ">",
        clock: Optional[Clock] = None,
        on_fatal: Optional[Callable[[BaseException], None]] = None,
    ):
        self.min_delay_ms = float(min_delay_ms)
        self.default_timeout_ms = float(default_timeout_ms)
        self.clock = clock or Clock()
        self.parser = PromptFrameParser(terminator)
        self.on_fatal = on_fatal
        self._transport: Optional[Transport] = None
        self._queue: Deque[Command] = collections.deque()
        self._in_flight: Optional[Command] = None
        self._waiter: Optional["asyncio.Future[str]"] = None
        self._drain_task: Optional[asyncio.Task] = None
        self._closed = True
        self._last_send: Optional[float] = None
        self._stats: Dict[str, int] = {
            "sent": 0,
            "completed": 0,
            "timeouts": 0,
            "expired": 0,
            "unsolicited": 0,
        }

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending(self) -> int:
        return len(self._queue) + (1 if self._in_flight is not None else 0)

    def attach(self, transport: Transport) -> None:
        """Bind the scheduler to an opened transport and accept new commands."""

        self._transport = transport
        self._closed = False
        self.parser.reset()
        self.reset_timing()

    def reset_timing(self) -> None:
        self._last_send = None

    def feed(self, data: bytes | str) -> None:
        """Transport push callback: resolve the in-flight command once per frame."""

        for frame in self.parser.feed(data):
            waiter = self._waiter
            if waiter is not None and not waiter.done():
                waiter.set_result(frame)
            else:
                self._stats["unsolicited"] += 1
                logger.debug("Dropping unsolicited frame: %r", frame)

    async def submit(self, payload: str, timeout_ms: Optional[float] = None) -> str:
        if self._closed:
            raise SessionClosed(f"Cannot send '{payload}': session is not connected")
        loop = asyncio.get_running_loop()
        command = Command(
            payload=payload.strip(),
            issued_at=self.clock.monotonic(),
            timeout_ms=float(timeout_ms if timeout_ms is not None else self.default_timeout_ms),
            future=loop.create_future(),
        )
        self._queue.append(command)
        if self._drain_task is None or self._drain_task.done():
            self._drain_task = loop.create_task(self._drain())
        return await command.future

    send_command = submit

    def close(self, exc: Optional[BaseException] = None) -> None:
        """Reject queued and in-flight commands and stop accepting new ones."""

        if self._closed and not self._queue and self._in_flight is None:
            return
        self._closed = True
        reason = str(exc) if exc else "session closed"
        rejected = 0
        while self._queue:
            command = self._queue.popleft()
            if not command.future.done():
                command.future.set_exception(SessionClosed(f"'{command.payload}' rejected: {reason}"))
                rejected += 1
        if self._in_flight is not None and not self._in_flight.future.done():
            self._in_flight.future.set_exception(
                SessionClosed(f"'{self._in_flight.payload}' aborted: {reason}")
            )
            rejected += 1
        if self._waiter is not None and not self._waiter.done():
            self._waiter.set_exception(SessionClosed(reason))
        if rejected:
            logger.info("Rejected %d pending command(s): %s", rejected, reason)
        self._transport = None
        self.parser.reset()
        self.reset_timing()

    def stats(self) -> Dict[str, int]:
        stats = dict(self._stats)
        stats["queued"] = len(self._queue)
        return stats

    async def _drain(self) -> None:
        try:
            while self._queue and not self._closed:
                command = self._queue.popleft()
                if command.future.done():
                    continue
                self._in_flight = command
                try:
                    await self._execute(command)
                finally:
                    self._in_flight = None
        except TransportError as exc:
            self._handle_fatal(exc)
        except Exception as exc:
            logger.exception("Command drain loop failed")
            self.close(exc)

    async def _execute(self, command: Command) -> None:
        if self._last_send is not None:
            elapsed_ms = (self.clock.monotonic() - self._last_send) * 1000.0
            wait_ms = max(0.0, self.min_delay_ms - elapsed_ms)
            if wait_ms > 0:
                await self.clock.sleep(wait_ms / 1000.0)
        if self._closed or command.future.done():
            return

        remaining = command.deadline - self.clock.monotonic()
        if remaining <= 0:
            # Expired while queued: never reaches the adapter
            self._stats["expired"] += 1
            logger.warning("Command '%s' expired before it was sent", command.payload)
            _fail(command, CommandTimeout(command.payload, command.timeout_ms))
            return

        transport = self._transport
        if transport is None:
            _fail(command, SessionClosed("session is not connected"))
            return

        self.parser.reset()
        waiter: "asyncio.Future[str]" = asyncio.get_running_loop().create_future()
        self._waiter = waiter
        try:
            try:
                await transport.write((command.payload + "\r").encode("ascii"))
            except TransportError as exc:
                _fail(command, exc)
                raise
            self._stats["sent"] += 1
            try:
                frame = await self._wait_frame(waiter, remaining)
            except asyncio.TimeoutError:
                self._last_send = self.clock.monotonic()
                self._stats["timeouts"] += 1
                logger.warning("Timeout waiting for response to '%s'", command.payload)
                _fail(command, CommandTimeout(command.payload, command.timeout_ms))
                return
            except SessionClosed:
                return
        finally:
            self._waiter = None

        self._last_send = self.clock.monotonic()
        self._stats["completed"] += 1
        logger.debug("%s -> %r", command.payload, frame)
        if not command.future.done():
            command.future.set_result(frame)

    async def _wait_frame(self, waiter: "asyncio.Future[str]", remaining: float) -> str:
        # Deadline runs on the scheduler clock so a virtual clock drives timeouts too
        timer = asyncio.ensure_future(self.clock.sleep(remaining))
        try:
            await asyncio.wait({waiter, timer}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            timer.cancel()
        if waiter.done():
            return waiter.result()
        raise asyncio.TimeoutError

    def _handle_fatal(self, exc: TransportError) -> None:
        logger.error("Transport failure, closing session: %s", exc)
        self.close(exc)
        if self.on_fatal is not None:
            self.on_fatal(exc)


def _fail(command: Command, exc: BaseException) -> None:
    if not command.future.done():
        command.future.set_exception(exc)
