from __future__ import annotations

import asyncio
import types

import pytest

from elmtrend.link.config import LinkConfig
from elmtrend.link.errors import TransportError
from elmtrend.link.transport import BleTransport, SerialTransport, build_transport


class FakeWriter:
    def __init__(self):
        self.data = b""
        self.closed = False

    def write(self, data: bytes) -> None:
        self.data += data

    async def drain(self) -> None:
        pass

    def close(self) -> None:
        self.closed = True

    async def wait_closed(self) -> None:
        pass


class FakeSerialAsyncio:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.reader = None
        self.writer = None
        self.calls = []

    async def open_serial_connection(self, url, baudrate):
        self.calls.append((url, baudrate))
        if self.fail:
            raise OSError("could not open port")
        self.reader = asyncio.StreamReader()
        self.writer = FakeWriter()
        return self.reader, self.writer


def test_serial_transport_pushes_bytes_and_reports_loss(monkeypatch):
    fake = FakeSerialAsyncio()
    monkeypatch.setattr("elmtrend.link.transport.serial_asyncio", fake)
    received = []
    lost = []

    async def scenario():
        transport = SerialTransport("/dev/ttyFAKE", 38400)
        await transport.open(received.append, lost.append)
        assert transport.is_open
        await transport.write(b"ATZ\r")
        fake.reader.feed_data(b"ELM327 v1.5\r\r>")
        await asyncio.sleep(0.01)
        fake.reader.feed_eof()
        await asyncio.sleep(0.01)
        await transport.close()
        return transport

    transport = asyncio.run(scenario())
    assert fake.calls == [("/dev/ttyFAKE", 38400)]
    assert fake.writer.data == b"ATZ\r"
    assert b"".join(received) == b"ELM327 v1.5\r\r>"
    assert lost == [None]
    assert fake.writer.closed
    assert not transport.is_open


def test_serial_open_failure_is_transport_error(monkeypatch):
    monkeypatch.setattr("elmtrend.link.transport.serial_asyncio", FakeSerialAsyncio(fail=True))

    async def scenario():
        await SerialTransport("/dev/ttyMISSING").open(lambda data: None)

    with pytest.raises(TransportError):
        asyncio.run(scenario())


def test_serial_write_requires_open_port():
    with pytest.raises(TransportError):
        asyncio.run(SerialTransport("/dev/ttyFAKE").write(b"ATZ\r"))


def test_build_transport():
    assert isinstance(build_transport(LinkConfig()), SerialTransport)
    ble = build_transport(LinkConfig(transport="ble", address="AA:BB:CC:DD:EE:FF"))
    assert isinstance(ble, BleTransport)
    assert ble.notify_uuid == ble.write_uuid
    with pytest.raises(ValueError):
        build_transport(LinkConfig(transport="ble"))
    with pytest.raises(ValueError):
        build_transport(LinkConfig(), "wifi")


class FakeBleakError(Exception):
    pass


class FakeBleakClient:
    instances = []

    def __init__(self, address, timeout, disconnected_callback):
        self.address = address
        self.disconnected_callback = disconnected_callback
        self.is_connected = False
        self.fail_notify = False
        self.notify_handler = None
        self.written = []
        self.disconnects = 0
        FakeBleakClient.instances.append(self)

    async def connect(self):
        self.is_connected = True

    async def start_notify(self, uuid, handler):
        if self.fail_notify:
            raise FakeBleakError("characteristic not found")
        self.notify_handler = handler

    async def stop_notify(self, uuid):
        self.notify_handler = None

    async def write_gatt_char(self, uuid, data):
        self.written.append(bytes(data))

    async def disconnect(self):
        self.disconnects += 1
        self.is_connected = False


def _fake_bleak(monkeypatch, fail_notify=False):
    FakeBleakClient.instances = []

    def client_factory(*args, **kwargs):
        client = FakeBleakClient(*args, **kwargs)
        client.fail_notify = fail_notify
        return client

    fake = types.SimpleNamespace(BleakClient=client_factory, exc=types.SimpleNamespace(BleakError=FakeBleakError))
    monkeypatch.setattr("elmtrend.link.transport.bleak", fake)


def test_ble_transport_notify_and_write(monkeypatch):
    _fake_bleak(monkeypatch)
    received = []

    async def scenario():
        transport = BleTransport("AA:BB:CC:DD:EE:FF", "fff1", "fff2")
        await transport.open(received.append)
        client = FakeBleakClient.instances[0]
        client.notify_handler(None, bytearray(b"41 0D 3C\r>"))
        await transport.write(b"010D\r")
        assert transport.is_open
        await transport.close()
        return transport, client

    transport, client = asyncio.run(scenario())
    assert received == [b"41 0D 3C\r>"]
    assert client.written == [b"010D\r"]
    assert client.disconnects == 1
    assert not transport.is_open


def test_ble_notify_failure_disconnects_client(monkeypatch):
    _fake_bleak(monkeypatch, fail_notify=True)
    lost = []

    async def scenario():
        transport = BleTransport("AA:BB:CC:DD:EE:FF", "fff1", "fff1")
        await transport.open(lambda data: None, lost.append)

    with pytest.raises(TransportError):
        asyncio.run(scenario())
    client = FakeBleakClient.instances[0]
    assert client.disconnects == 1
    assert not client.is_connected
    assert lost == []
