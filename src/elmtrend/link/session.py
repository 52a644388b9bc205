from __future__ import annotations

import asyncio
import logging
import re
from typing import Callable, List, Optional

from .config import AdapterConfig, ElmConfig, LinkConfig
from .errors import ElmError, SessionClosed, TransportError
from .scheduler import Clock, CommandScheduler
from .transport import Transport, build_transport

logger = logging.getLogger(__name__)

RESET_COMMAND = "ATZ"
_VERSION_RE = re.compile(r"ELM327\s*v?([0-9][0-9.]*)", re.IGNORECASE)

TransportFactory = Callable[[LinkConfig, Optional[str]], Transport]


class AdapterSession:
    """
    Connection lifecycle for one ELM327 adapter.

    ``connect`` opens the transport, binds it to the command scheduler and runs
    the initialisation sequence; ``disconnect`` rejects everything pending,
    closes the channel and resets timing state. Init steps that fail are
    logged and skipped because clone adapters reject some AT commands.
    """

    def __init__(
        self,
        config: Optional[ElmConfig] = None,
        transport_factory: Optional[TransportFactory] = None,
        clock: Optional[Clock] = None,
    ):
        self.config = config or ElmConfig()
        self._transport_factory = transport_factory or build_transport
        self.clock = clock or Clock()
        adapter: AdapterConfig = self.config.adapter
        self.scheduler = CommandScheduler(
            min_delay_ms=adapter.min_command_delay_ms,
            default_timeout_ms=adapter.command_timeout_ms,
            terminator=adapter.terminator,
            clock=self.clock,
            on_fatal=self._on_fatal,
        )
        self.transport: Optional[Transport] = None
        self.adapter_version: Optional[str] = None
        self.failed_init_steps: List[str] = []
        self._disconnect_task: Optional[asyncio.Task] = None

    @property
    def connected(self) -> bool:
        return self.transport is not None and not self.scheduler.closed

    async def connect(self, transport_kind: Optional[str] = None) -> None:
        if self.connected:
            logger.info("Already connected; reconnecting")
            await self.disconnect()
        transport = self._transport_factory(self.config.link, transport_kind)
        try:
            await transport.open(self.scheduler.feed, self._on_transport_lost)
        except TransportError:
            raise
        except OSError as exc:
            raise TransportError(f"Failed to open {transport.name} transport: {exc}") from exc
        self.transport = transport
        self.scheduler.attach(transport)
        logger.info("Connected via %s", transport.name)
        try:
            await self._initialize()
        except (TransportError, SessionClosed):
            await self.disconnect()
            raise

    async def _initialize(self) -> None:
        adapter = self.config.adapter
        self.adapter_version = None
        self.failed_init_steps = []
        logger.info("Initializing ELM327 adapter...")
        for command in adapter.init_commands:
            try:
                response = await self.scheduler.submit(command, adapter.command_timeout_ms)
            except (TransportError, SessionClosed):
                raise
            except ElmError as exc:
                self.failed_init_steps.append(command)
                logger.warning("Init command %s failed: %s", command, exc)
            else:
                logger.debug("Init %s -> %r", command, response)
                if command.upper() == RESET_COMMAND:
                    self.adapter_version = parse_adapter_version(response)
            delay_ms = adapter.reset_delay_ms if command.upper() == RESET_COMMAND else adapter.init_step_delay_ms
            await self.clock.sleep(delay_ms / 1000.0)
        if self.adapter_version:
            logger.info("ELM327 ready (v%s)", self.adapter_version)
        else:
            logger.warning("ELM327 ready, but no version banner (clone adapter?)")

    async def send_command(self, payload: str, timeout_ms: Optional[float] = None) -> str:
        return await self.scheduler.submit(payload, timeout_ms)

    async def disconnect(self) -> None:
        self.scheduler.close()
        transport, self.transport = self.transport, None
        if transport is None:
            return
        try:
            await transport.close()
        except (TransportError, OSError) as exc:
            logger.warning("Error while closing %s transport: %s", transport.name, exc)
        logger.info("Disconnected")

    def _on_fatal(self, exc: BaseException) -> None:
        self._schedule_disconnect(f"transport failure: {exc}")

    def _on_transport_lost(self, exc: Optional[BaseException]) -> None:
        reason = f"connection lost: {exc}" if exc else "connection lost"
        logger.warning("Adapter %s", reason)
        self.scheduler.close(TransportError(reason))
        self._schedule_disconnect(reason)

    def _schedule_disconnect(self, reason: str) -> None:
        if self.transport is None:
            return
        if self._disconnect_task is not None and not self._disconnect_task.done():
            return
        logger.debug("Scheduling disconnect (%s)", reason)
        self._disconnect_task = asyncio.get_running_loop().create_task(self.disconnect())


def parse_adapter_version(banner: str | None) -> Optional[str]:
    if not banner:
        return None
    match = _VERSION_RE.search(banner)
    return match.group(1) if match else None
