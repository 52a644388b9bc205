from __future__ import annotations

import asyncio
import time
from typing import Callable, Dict, List, Optional, Union

import pytest

from elmtrend.link.config import AdapterConfig, ElmConfig
from elmtrend.link.errors import TransportError
from elmtrend.link.transport import Transport

Reply = Union[str, None, List[Optional[str]], Callable[[str], Optional[str]]]


class ScriptedTransport(Transport):
    """In-memory adapter: answers each written command from a response table.

    A reply of ``None`` means the adapter stays silent. A list is consumed one
    entry per request, the last entry repeating. Unknown AT commands answer
    ``OK`` and unknown OBD requests answer ``NO DATA``.
    """

    name = "scripted"

    def __init__(self, responses: Optional[Dict[str, Reply]] = None, delay: float = 0.0):
        self.responses: Dict[str, Reply] = dict(responses or {})
        self.delay = delay
        self.writes: List[str] = []
        self.write_times: List[float] = []
        self.fail_writes = False
        self.on_data = None
        self.on_lost = None
        self._open = False

    async def open(self, on_data, on_lost=None) -> None:
        self.on_data = on_data
        self.on_lost = on_lost
        self._open = True

    async def write(self, data: bytes) -> None:
        if self.fail_writes:
            raise TransportError("write failed")
        payload = data.decode("ascii").strip()
        self.writes.append(payload)
        self.write_times.append(time.monotonic())
        reply = self._reply(payload)
        if reply is None:
            return
        asyncio.get_running_loop().call_later(self.delay, self.push, f"{reply}\r\r>")

    async def close(self) -> None:
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open

    def push(self, text: str) -> None:
        if self._open and self.on_data is not None:
            self.on_data(text.encode("ascii"))

    def count(self, payload: str) -> int:
        return self.writes.count(payload)

    def _reply(self, payload: str) -> Optional[str]:
        if payload not in self.responses:
            return "OK" if payload.upper().startswith("AT") else "NO DATA"
        reply = self.responses[payload]
        if isinstance(reply, list):
            return reply.pop(0) if len(reply) > 1 else reply[0]
        if callable(reply):
            return reply(payload)
        return reply


def fast_config(**adapter) -> ElmConfig:
    cfg = ElmConfig()
    cfg.adapter = AdapterConfig(
        min_command_delay_ms=adapter.pop("min_command_delay_ms", 5.0),
        command_timeout_ms=adapter.pop("command_timeout_ms", 200.0),
        reset_delay_ms=adapter.pop("reset_delay_ms", 1.0),
        init_step_delay_ms=adapter.pop("init_step_delay_ms", 1.0),
        **adapter,
    )
    cfg.polling.command_timeout_ms = cfg.adapter.command_timeout_ms
    return cfg


@pytest.fixture
def transport() -> ScriptedTransport:
    return ScriptedTransport({"ATZ": "ELM327 v1.5"})


@pytest.fixture
def config() -> ElmConfig:
    return fast_config()
