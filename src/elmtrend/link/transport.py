"""
Byte channels to the adapter.

Both transports push received bytes into a callback and accept raw writes.
Neither knows anything about commands or prompts; framing happens in the
scheduler.
"""
from __future__ import annotations

import abc
import asyncio
import logging
from typing import Callable, Optional

try:
    import serial_asyncio  # type: ignore[import]
except ImportError:  # pragma: no cover - optional hardware dependency
    serial_asyncio = None  # type: ignore[assignment]

try:
    import bleak  # type: ignore[import]
    import bleak.exc  # type: ignore[import]
except ImportError:  # pragma: no cover - optional hardware dependency
    bleak = None  # type: ignore[assignment]

from .config import LinkConfig
from .errors import TransportError

logger = logging.getLogger(__name__)

DataCallback = Callable[[bytes], None]
LostCallback = Callable[[Optional[BaseException]], None]


class Transport(abc.ABC):
    """Half-duplex byte channel: open, write, push-receive, close."""

    name = "transport"

    @abc.abstractmethod
    async def open(self, on_data: DataCallback, on_lost: Optional[LostCallback] = None) -> None:
        ...

    @abc.abstractmethod
    async def write(self, data: bytes) -> None:
        ...

    @abc.abstractmethod
    async def close(self) -> None:
        ...

    @property
    @abc.abstractmethod
    def is_open(self) -> bool:
        ...


class SerialTransport(Transport):
    name = "serial"

    def __init__(self, port: str, baudrate: int = 38400, read_size: int = 256):
        self.port = port
        self.baudrate = baudrate
        self.read_size = read_size
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._read_task: Optional[asyncio.Task] = None
        self._on_data: Optional[DataCallback] = None
        self._on_lost: Optional[LostCallback] = None
        self._closing = False

    @property
    def is_open(self) -> bool:
        return self._writer is not None

    async def open(self, on_data: DataCallback, on_lost: Optional[LostCallback] = None) -> None:
        if serial_asyncio is None:
            raise ImportError("pyserial-asyncio is required but not installed. Install extra 'serial'.")
        try:
            self._reader, self._writer = await serial_asyncio.open_serial_connection(
                url=self.port, baudrate=self.baudrate
            )
        except (OSError, ValueError) as exc:
            raise TransportError(f"Failed to open {self.port}: {exc}") from exc
        self._on_data = on_data
        self._on_lost = on_lost
        self._closing = False
        self._read_task = asyncio.create_task(self._read_loop())
        logger.info("Opened serial port %s @ %d baud", self.port, self.baudrate)

    async def write(self, data: bytes) -> None:
        if self._writer is None:
            raise TransportError("Serial port is not open")
        try:
            self._writer.write(data)
            await self._writer.drain()
        except (OSError, ConnectionError) as exc:
            raise TransportError(f"Write to {self.port} failed: {exc}") from exc

    async def close(self) -> None:
        self._closing = True
        if self._read_task is not None:
            self._read_task.cancel()
            try:
                await self._read_task
            except asyncio.CancelledError:
                pass
            self._read_task = None
        if self._writer is not None:
            writer, self._writer = self._writer, None
            writer.close()
            try:
                await writer.wait_closed()
            except OSError as exc:
                logger.debug("Ignoring error while closing %s: %s", self.port, exc)
            logger.info("Closed serial port %s", self.port)
        self._reader = None

    async def _read_loop(self) -> None:
        if self._reader is None:
            return
        error: Optional[BaseException] = None
        try:
            while True:
                chunk = await self._reader.read(self.read_size)
                if not chunk:
                    break
                if self._on_data is not None:
                    self._on_data(chunk)
        except asyncio.CancelledError:
            raise
        except OSError as exc:
            error = exc
            logger.warning("Serial read error (%s): %s", self.port, exc)
        if not self._closing and self._on_lost is not None:
            self._on_lost(error)


class BleTransport(Transport):
    """ELM327 BLE dongle using one notify characteristic and one write characteristic."""

    name = "ble"

    def __init__(
        self,
        address: str,
        notify_uuid: str,
        write_uuid: str,
        timeout: float = 10.0,
    ):
        self.address = address
        self.notify_uuid = notify_uuid
        self.write_uuid = write_uuid
        self.timeout = timeout
        self._client = None
        self._on_lost: Optional[LostCallback] = None
        self._closing = False

    @property
    def is_open(self) -> bool:
        return self._client is not None and bool(self._client.is_connected)

    async def open(self, on_data: DataCallback, on_lost: Optional[LostCallback] = None) -> None:
        if bleak is None:
            raise ImportError("bleak is required but not installed. Install extra 'ble'.")
        self._on_lost = on_lost
        self._closing = False
        client = bleak.BleakClient(
            self.address,
            timeout=self.timeout,
            disconnected_callback=self._handle_disconnect,
        )
        try:
            await client.connect()
        except (bleak.exc.BleakError, OSError, asyncio.TimeoutError) as exc:
            raise TransportError(f"Failed to connect to {self.address}: {exc}") from exc
        try:
            await client.start_notify(self.notify_uuid, lambda _sender, data: on_data(bytes(data)))
        except (bleak.exc.BleakError, OSError, asyncio.TimeoutError) as exc:
            self._closing = True
            try:
                await client.disconnect()
            except (bleak.exc.BleakError, OSError) as close_exc:
                logger.debug("Ignoring error while disconnecting %s: %s", self.address, close_exc)
            raise TransportError(f"Failed to subscribe to {self.notify_uuid}: {exc}") from exc
        self._client = client
        logger.info("Connected to BLE adapter %s", self.address)

    async def write(self, data: bytes) -> None:
        if self._client is None:
            raise TransportError("BLE adapter is not connected")
        try:
            await self._client.write_gatt_char(self.write_uuid, data)
        except (bleak.exc.BleakError, OSError) as exc:
            raise TransportError(f"BLE write failed: {exc}") from exc

    async def close(self) -> None:
        self._closing = True
        if self._client is None:
            return
        client, self._client = self._client, None
        try:
            if client.is_connected:
                await client.stop_notify(self.notify_uuid)
            await client.disconnect()
        except (bleak.exc.BleakError, OSError) as exc:
            logger.debug("Ignoring error while disconnecting %s: %s", self.address, exc)
        logger.info("Disconnected BLE adapter %s", self.address)

    def _handle_disconnect(self, _client) -> None:
        if self._closing:
            return
        logger.warning("BLE adapter %s disconnected", self.address)
        self._client = None
        if self._on_lost is not None:
            self._on_lost(None)


def build_transport(config: LinkConfig, kind: str | None = None) -> Transport:
    kind = (kind or config.transport_kind).lower()
    if kind == "serial":
        return SerialTransport(config.port, config.baudrate)
    if kind == "ble":
        if not config.address:
            raise ValueError("link.address is required for the BLE transport")
        return BleTransport(
            config.address,
            notify_uuid=config.notify_uuid,
            write_uuid=config.write_uuid,
            timeout=config.connect_timeout_sec,
        )
    raise ValueError(f"Unsupported transport '{kind}'")
